# cache.py
from __future__ import annotations

import hashlib
import io
import os
import tarfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Dependency caching keyed on (platform, lockfile hash, cache class):
#   key = "{platform}-{variant}-{sha256(lockfile)}-{class}"
#   e.g.  "ubuntu16-None-9f2c...-cargo-registry"
#
# An entry is a tar.gz of the cache class directory. Lookup is exact-match
# only; a miss (or an unreadable backend) degrades to a cold build.
#
# Backends only need get/put of opaque bytes:
#   FileCacheBackend   one file per key, atomic rename on write
#   RedisCacheBackend  one string per key, optional TTL
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".relci/cache"
REDIS_PREFIX = "relci:cache:"
# seconds, for both connecting and each socket read or write
REDIS_TIMEOUT = 60.0


@dataclass(frozen=True)
class CacheKey:
    platform_id: str
    lockfile_hash: str
    cache_class: str
    variant: str = "None"

    def __str__(self) -> str:
        return f"{self.platform_id}-{self.variant}-{self.lockfile_hash}-{self.cache_class}"


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable


def hash_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def hash_lockfile(path: Path) -> str:
    """SHA-256 of the lockfile, or "" when it does not exist."""
    if not path.is_file():
        return ""
    return hash_file(path)


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file() and not p.is_symlink():
            yield p


def pack_dir(src: Path) -> bytes:
    """Tar+gzip the contents of src (paths stored relative to src)."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        if src.is_dir():
            for f in _iter_files_under(src):
                tar.add(str(f), arcname=f.relative_to(src).as_posix(), recursive=False)
    return buf.getvalue()


def unpack_blob(blob: bytes, dest: Path) -> None:
    """Extract a pack_dir() blob into dest, overwriting existing files."""
    dest.mkdir(parents=True, exist_ok=True)
    with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
        tar.extractall(path=str(dest), filter="data")


# ---------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------

class FileCacheBackend:
    """
    Directory-backed store:
      root/
        <key>.tar.gz
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        return self.root / f"{key}.tar.gz"

    def get(self, key: str) -> Optional[bytes]:
        p = self.path_for(key)
        if not p.exists():
            return None
        return p.read_bytes()

    def put(self, key: str, blob: bytes) -> None:
        p = self.path_for(key)
        # unique tmp name so concurrent writers never share a partial file
        tmp = p.with_name(f"{p.name}.{os.getpid()}.{threading.get_ident()}.tmp")
        try:
            tmp.write_bytes(blob)
            tmp.replace(p)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)


class RedisCacheBackend:
    """Redis-backed store; expiry is left to Redis via an optional TTL."""

    def __init__(
        self,
        url: str | None = None,
        *,
        client=None,
        ttl: int | None = None,
        prefix: str = REDIS_PREFIX,
        timeout: float | None = REDIS_TIMEOUT,
    ):
        if client is None:
            if not url:
                raise ValueError("RedisCacheBackend needs a url or a client")
            import redis

            client = redis.Redis.from_url(url, socket_timeout=timeout, socket_connect_timeout=timeout)
        self.client = client
        self.ttl = ttl
        self.prefix = prefix

    def get(self, key: str) -> Optional[bytes]:
        value = self.client.get(self.prefix + key)
        if value is None:
            return None
        return bytes(value)

    def put(self, key: str, blob: bytes) -> None:
        # a single SET replaces the whole value, never a partial one
        self.client.set(self.prefix + key, blob, ex=self.ttl)


# ---------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------

class CacheStore:
    """Key/value facade over a backend, plus restore/save of cache class dirs."""

    def __init__(self, backend=None):
        self.backend = backend if backend is not None else FileCacheBackend()

    def get(self, key: CacheKey | str) -> Optional[bytes]:
        return self.backend.get(str(key))

    def put(self, key: CacheKey | str, blob: bytes) -> None:
        self.backend.put(str(key), blob)

    def restore(self, key: CacheKey, dest: Path) -> CacheHit:
        """
        Unpack the entry for key into dest.

        Never raises: an absent entry or a failing backend is reported as a miss.
        """
        k = str(key)
        try:
            blob = self.get(key)
        except Exception as e:
            return CacheHit(hit=False, key=k, reason=f"cache miss (backend error: {e})")

        if blob is None:
            return CacheHit(hit=False, key=k, reason="cache miss")

        try:
            unpack_blob(blob, dest)
        except (tarfile.TarError, OSError) as e:
            return CacheHit(hit=False, key=k, reason=f"cache exists but restore failed: {e}")

        return CacheHit(hit=True, key=k, reason="cache hit: restored entry")

    def save(self, key: CacheKey, src: Path) -> bool:
        """Pack src and upsert it under key. Returns False if there was nothing to save."""
        if not src.is_dir():
            return False
        self.put(key, pack_dir(src))
        return True


def open_cache(cache_dir: str | Path = DEFAULT_CACHE_DIR, redis_url: str | None = None, ttl: int | None = None) -> CacheStore:
    """Redis when a URL is configured, otherwise a local directory."""
    if redis_url:
        return CacheStore(RedisCacheBackend(redis_url, ttl=ttl))
    return CacheStore(FileCacheBackend(cache_dir))
