# secretstore.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Protocol

import yaml

from .errors import MalformedDefinition

MASK = "***"


class SecretStore(Protocol):
    def resolve(self, name: str) -> Optional[str]:
        """Return the secret value, or None when the store does not know it."""
        ...


@dataclass
class MappingSecretStore:
    """In-memory secret store."""

    values: Dict[str, str] = field(default_factory=dict)

    def resolve(self, name: str) -> Optional[str]:
        value = self.values.get(name)
        return None if value is None else str(value)


@dataclass
class EnvSecretStore:
    """Reads secrets from environment variables, optionally namespaced by a prefix."""

    prefix: str = ""
    environ: Optional[Mapping[str, str]] = None

    def resolve(self, name: str) -> Optional[str]:
        env = os.environ if self.environ is None else self.environ
        return env.get(f"{self.prefix}{name}")


class ChainSecretStore:
    """First store that knows a name wins."""

    def __init__(self, *stores: SecretStore):
        self.stores: List[SecretStore] = list(stores)

    def resolve(self, name: str) -> Optional[str]:
        for store in self.stores:
            value = store.resolve(name)
            if value is not None:
                return value
        return None


def load_secret_file(path: str | Path) -> MappingSecretStore:
    """
    Load a flat `NAME: value` mapping from a YAML (or JSON) file.
    Values are never echoed in error messages.
    """
    p = Path(path).expanduser()
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        # YAML errors quote the offending line, which may hold a secret
        raise MalformedDefinition(f"Could not load secrets file {p}: {type(e).__name__}") from None
    if not isinstance(raw, dict):
        raise MalformedDefinition(f"Secrets file {p} must contain a mapping of NAME: value")
    return MappingSecretStore({str(k): "" if v is None else str(v) for k, v in raw.items()})


class Redactor:
    """Replaces every occurrence of every known secret value with a fixed mask."""

    def __init__(self, values: Iterable[str] = (), mask: str = MASK):
        # longest first so a secret that contains another is masked whole
        self._values = sorted({v for v in values if v}, key=len, reverse=True)
        self.mask = mask

    def redact(self, text: str) -> str:
        if not text:
            return text
        for value in self._values:
            text = text.replace(value, self.mask)
        return text
