# cache.py
from __future__ import annotations

import hashlib
import io
import itertools
import json
import os
import platform
import tarfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import redis
from redis.exceptions import RedisError

from .errors import CacheUnavailable
from .model import CacheConfig

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Job-level caching:
#   cache_key = "<declared key>-<env tag>-<sha256 of the declared input files>"
#
# Cache payload:
#   a tar.gz containing the declared cache paths, relative to the workdir.
#
# Lookup order at job start:
#   1. exact key
#   2. each restore-key prefix in declared order; newest matching entry wins
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".relayci/cache"
DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".relayci/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]


@dataclass(frozen=True)
class CacheEntry:
    key: str
    blob: bytes
    written_at: float


class CacheStore(Protocol):
    def get(self, key: str, restore_keys: Sequence[str] = ()) -> Optional[CacheEntry]:
        ...

    def put(self, key: str, blob: bytes) -> None:
        ...


def default_env_tag() -> str:
    return f"{platform.system()}-{platform.machine()}".lower()


# ---------------------------------------------------------------------
# Hashing helpers
# ---------------------------------------------------------------------

def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(root: Path, patterns: Iterable[str]) -> List[Path]:
    """
    Expand input patterns into concrete paths.
    Supports:
      - file path: "pyproject.toml"
      - dir path:  "src/"
      - glob:      "backend/**", "tests/**/*.py"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = root / pat
        if p.exists():
            out.append(p)
            continue
        out.extend(m for m in sorted(root.glob(pat)) if m.exists())

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def _hash_inputs(root: Path, inputs: Iterable[str], *, excludes: List[str]) -> str:
    """
    Hash the declared input set deterministically: relative paths plus
    file contents, ordered by path.
    """
    file_fps: List[Tuple[str, str]] = []
    for p in _resolve_globs(root, inputs):
        files = [p] if p.is_file() else list(_iter_files_under(p))
        for f in files:
            rel = _relpath(f, root)
            if _matches_any_glob(rel, excludes):
                continue
            file_fps.append((rel, _hash_file_contents(f)))

    file_fps.sort(key=lambda t: t[0])
    return _sha256_str(_json_dumps_stable({"v": 1, "files": file_fps}))


def compute_cache_key(
    config: CacheConfig,
    *,
    workdir: str | Path = ".",
    env_tag: str | None = None,
) -> str:
    """Same declared key, env tag and input contents always give the same key."""
    root = Path(workdir).resolve()
    try:
        digest = _hash_inputs(root, config.inputs, excludes=list(DEFAULT_CACHE_EXCLUDES))
    except OSError as e:
        raise CacheUnavailable(f"could not hash cache inputs: {e}") from e
    return f"{config.key}-{env_tag or default_env_tag()}-{digest}"


# ---------------------------------------------------------------------
# Payload packing
# ---------------------------------------------------------------------

def _tar_add_path(tar: tarfile.TarFile, root: Path, src: Path, *, exclude_globs: List[str]) -> None:
    """Add src (file/dir) into tar under its path relative to root."""
    src = src.resolve()
    if not src.exists():
        return

    files = [src] if src.is_file() else list(_iter_files_under(src))
    for f in files:
        rel = _relpath(f, root)
        if _matches_any_glob(rel, exclude_globs):
            continue
        tar.add(str(f), arcname=rel, recursive=False)


def pack_paths(paths: Iterable[str], workdir: str | Path = ".") -> bytes:
    """Pack workdir-relative paths into a tar.gz blob. Missing paths are ignored."""
    root = Path(workdir).resolve()
    buf = io.BytesIO()
    try:
        with tarfile.open(fileobj=buf, mode="w:gz") as tar:
            for entry in paths:
                src = (root / entry).resolve()
                if src != root and root not in src.parents:
                    raise CacheUnavailable(f"cache path escapes the workdir: {entry}")
                _tar_add_path(tar, root, src, exclude_globs=list(DEFAULT_CACHE_EXCLUDES))
    except (OSError, tarfile.TarError) as e:
        raise CacheUnavailable(f"could not pack cache paths: {e}") from e
    return buf.getvalue()


def unpack_blob(blob: bytes, workdir: str | Path = ".") -> None:
    """Restore a tar.gz blob into the workdir ("overwrite by extraction")."""
    root = Path(workdir).resolve()
    try:
        with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
            if hasattr(tarfile, "data_filter"):
                tar.extractall(path=str(root), filter="data")
            else:
                tar.extractall(path=str(root))
    except (OSError, tarfile.TarError) as e:
        raise CacheUnavailable(f"could not restore cache payload: {e}") from e


def _pick(index: Iterable[Tuple[str, float | int]], key: str, restore_keys: Sequence[str]) -> Optional[str]:
    """Exact key first, then each prefix in order, newest match per prefix."""
    entries = list(index)
    if any(k == key for k, _ in entries):
        return key
    for prefix in restore_keys:
        matches = [(at, k) for k, at in entries if k.startswith(prefix)]
        if matches:
            return max(matches)[1]
    return None


# ---------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------

class MemoryCacheStore:
    """Process-local store, mostly for tests and nested runs."""

    def __init__(self) -> None:
        self._entries: Dict[str, CacheEntry] = {}
        self._seq = itertools.count(1)
        self._lock = threading.Lock()

    def get(self, key: str, restore_keys: Sequence[str] = ()) -> Optional[CacheEntry]:
        with self._lock:
            chosen = _pick(((k, e.written_at) for k, e in self._entries.items()), key, restore_keys)
            return self._entries[chosen] if chosen is not None else None

    def put(self, key: str, blob: bytes) -> None:
        with self._lock:
            # a counter, not the clock: two puts in the same tick still have an order
            self._entries[key] = CacheEntry(key=key, blob=blob, written_at=float(next(self._seq)))

    def __len__(self) -> int:
        return len(self._entries)


class FileCacheStore:
    """
    File-based cache store:
      root/
        <sha256(key)>/
          blob.tar.gz
          manifest.json   {"key": ..., "written_at_ns": ..., "size": ...}
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).expanduser().resolve()
        self._last_written = 0
        self._lock = threading.Lock()

    def _entry_dir(self, key: str) -> Path:
        return self.root / _sha256_str(key)

    def _manifests(self) -> List[Tuple[str, int]]:
        out: List[Tuple[str, int]] = []
        if not self.root.exists():
            return out
        for man in self.root.glob("*/manifest.json"):
            try:
                data = json.loads(man.read_text(encoding="utf-8"))
                out.append((data["key"], int(data["written_at_ns"])))
            except (OSError, ValueError, KeyError, TypeError):
                # vanished or foreign entry; the other entries are still usable
                continue
        return out

    def get(self, key: str, restore_keys: Sequence[str] = ()) -> Optional[CacheEntry]:
        try:
            exact = self._entry_dir(key) / "manifest.json"
            index = [(key, 0)] if exact.exists() else self._manifests()
            chosen = _pick(index, key, restore_keys)
            if chosen is None:
                return None
            d = self._entry_dir(chosen)
            manifest = json.loads((d / "manifest.json").read_text(encoding="utf-8"))
            return CacheEntry(
                key=manifest["key"],
                blob=(d / "blob.tar.gz").read_bytes(),
                written_at=int(manifest["written_at_ns"]) / 1e9,
            )
        except (OSError, ValueError, KeyError) as e:
            raise CacheUnavailable(f"file cache read failed under {self.root}: {e}") from e

    def put(self, key: str, blob: bytes) -> None:
        with self._lock:
            written_at = max(time.time_ns(), self._last_written + 1)
            self._last_written = written_at

        d = self._entry_dir(key)
        manifest = {"key": key, "written_at_ns": written_at, "size": len(blob)}
        try:
            d.mkdir(parents=True, exist_ok=True)
            # blob first: a manifest only ever points at a complete payload
            _atomic_write(d / "blob.tar.gz", blob)
            _atomic_write(d / "manifest.json", _json_dumps_stable(manifest).encode("utf-8"))
        except OSError as e:
            raise CacheUnavailable(f"file cache write failed under {self.root}: {e}") from e


def _atomic_write(path: Path, data: bytes) -> None:
    """Write via a temp file + rename so readers see the old or the new content, never a partial one."""
    tmp = path.with_name(f"{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
    try:
        tmp.write_bytes(data)
        tmp.replace(path)  # last write wins
    finally:
        if tmp.exists():
            tmp.unlink(missing_ok=True)


class RedisCacheStore:
    """
    Redis-backed store:
      <namespace>:blob:<key>   the tar.gz payload
      <namespace>:index        sorted set, member=key, score=write time
    """

    def __init__(self, url: str | None = None, *, client=None, namespace: str = "relayci:cache"):
        if client is None:
            client = redis.Redis.from_url(url or "redis://localhost:6379/0")
        self.client = client
        self.namespace = namespace
        self._last_score = 0.0
        self._lock = threading.Lock()

    def _blob_key(self, key: str) -> str:
        return f"{self.namespace}:blob:{key}"

    @property
    def _index_key(self) -> str:
        return f"{self.namespace}:index"

    def get(self, key: str, restore_keys: Sequence[str] = ()) -> Optional[CacheEntry]:
        try:
            blob = self.client.get(self._blob_key(key))
            if blob is not None:
                score = self.client.zscore(self._index_key, key)
                return CacheEntry(key=key, blob=bytes(blob), written_at=float(score or 0.0))

            if not restore_keys:
                return None
            ranked = self.client.zrevrange(self._index_key, 0, -1, withscores=True)
            members = [(_text(m), float(s)) for m, s in ranked]
            for prefix in restore_keys:
                for member, score in members:  # newest first
                    if not member.startswith(prefix):
                        continue
                    blob = self.client.get(self._blob_key(member))
                    if blob is not None:
                        return CacheEntry(key=member, blob=bytes(blob), written_at=score)
            return None
        except RedisError as e:
            raise CacheUnavailable(f"redis cache read failed: {e}") from e

    def _next_score(self) -> float:
        with self._lock:
            self._last_score = max(time.time(), self._last_score + 1e-6)
            return self._last_score

    def put(self, key: str, blob: bytes) -> None:
        try:
            pipe = self.client.pipeline()
            pipe.set(self._blob_key(key), blob)
            pipe.zadd(self._index_key, {key: self._next_score()})
            pipe.execute()
        except RedisError as e:
            raise CacheUnavailable(f"redis cache write failed: {e}") from e


def _text(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)
