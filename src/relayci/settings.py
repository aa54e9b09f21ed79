from __future__ import annotations
import os

from .cache import DEFAULT_CACHE_DIR

CACHE_DIR = os.environ.get("RELAYCI_CACHE_DIR", DEFAULT_CACHE_DIR)
CACHE_BACKEND = os.environ.get("RELAYCI_CACHE_BACKEND", "file")  # file | redis | none
REDIS_URL = os.environ.get("RELAYCI_REDIS_URL", "redis://localhost:6379/0")
MAX_PARALLEL = os.environ.get("RELAYCI_MAX_PARALLEL") or None  # validated by the --workers option
SECRET_PREFIX = os.environ.get("RELAYCI_SECRET_PREFIX", "")
SECRETS_FILE = os.environ.get("RELAYCI_SECRETS_FILE") or None
ENV_TAG = os.environ.get("RELAYCI_ENV_TAG") or None
WEBHOOK_URLS = [u for u in os.environ.get("RELAYCI_WEBHOOK_URL", "").split(",") if u.strip()]
