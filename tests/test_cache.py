import hashlib
import io
import tarfile
from unittest.mock import MagicMock, patch

import redis

from relci.cache import (
    REDIS_PREFIX,
    CacheKey,
    CacheStore,
    FileCacheBackend,
    RedisCacheBackend,
    hash_lockfile,
    open_cache,
    pack_dir,
)


def test_key_renders_platform_variant_hash_and_class():
    key = CacheKey("ubuntu16", "abc123", "cargo-registry")
    assert str(key) == "ubuntu16-None-abc123-cargo-registry"
    assert str(CacheKey("linux", "abc", "cargo-index", variant="aarch64")) == "linux-aarch64-abc-cargo-index"


def test_hash_lockfile(tmp_path):
    lock = tmp_path / "Cargo.lock"
    assert hash_lockfile(lock) == ""
    lock.write_bytes(b"lock v1\n")
    assert hash_lockfile(lock) == hashlib.sha256(b"lock v1\n").hexdigest()


def test_file_backend_get_put(tmp_path):
    backend = FileCacheBackend(tmp_path / "c")
    assert backend.get("k") is None

    backend.put("k", b"one")
    backend.put("k", b"two")
    assert backend.get("k") == b"two"
    # no temp files left behind
    assert [p.name for p in (tmp_path / "c").iterdir()] == ["k.tar.gz"]


def test_restore_miss_then_save_then_hit(tmp_path):
    store = CacheStore(FileCacheBackend(tmp_path / "c"))
    key = CacheKey("linux", "h", "deps")

    miss = store.restore(key, tmp_path / "cold")
    assert not miss.hit
    assert miss.reason == "cache miss"

    src = tmp_path / "deps"
    (src / "nested").mkdir(parents=True)
    (src / "nested" / "lib.rlib").write_bytes(b"\x00compiled")
    assert store.save(key, src)

    dest = tmp_path / "warm"
    hit = store.restore(key, dest)
    assert hit.hit
    assert hit.key == "linux-None-h-deps"
    assert (dest / "nested" / "lib.rlib").read_bytes() == b"\x00compiled"


def test_save_without_directory_reports_nothing_saved(tmp_path, cache):
    assert not cache.save(CacheKey("linux", "h", "deps"), tmp_path / "missing")
    assert cache.get(CacheKey("linux", "h", "deps")) is None


def test_backend_error_degrades_to_miss(tmp_path):
    class Broken:
        def get(self, key):
            raise ConnectionError("backend down")

        def put(self, key, blob):
            raise ConnectionError("backend down")

    hit = CacheStore(Broken()).restore(CacheKey("linux", "h", "deps"), tmp_path / "d")
    assert not hit.hit
    assert "backend down" in hit.reason


def test_corrupt_entry_degrades_to_miss(tmp_path, cache):
    key = CacheKey("linux", "h", "deps")
    cache.put(key, b"not a tarball")
    hit = cache.restore(key, tmp_path / "d")
    assert not hit.hit
    assert "restore failed" in hit.reason


def test_entries_cannot_escape_the_destination(tmp_path, cache):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        data = b"owned"
        info = tarfile.TarInfo("../escaped.txt")
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))

    key = CacheKey("linux", "h", "deps")
    cache.put(key, buf.getvalue())
    hit = cache.restore(key, tmp_path / "dest")

    assert not hit.hit
    assert not (tmp_path / "escaped.txt").exists()


def test_pack_dir_of_missing_directory_is_an_empty_archive(tmp_path):
    blob = pack_dir(tmp_path / "nope")
    with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
        assert tar.getnames() == []


def test_redis_backend_uses_prefixed_keys_and_ttl():
    client = MagicMock()
    client.get.return_value = None
    backend = RedisCacheBackend(client=client, ttl=3600)

    assert backend.get("ubuntu16-None-h-cargo-registry") is None
    client.get.assert_called_once_with(REDIS_PREFIX + "ubuntu16-None-h-cargo-registry")

    backend.put("k", b"blob")
    client.set.assert_called_once_with(REDIS_PREFIX + "k", b"blob", ex=3600)

    client.get.return_value = b"blob"
    assert backend.get("k") == b"blob"


def test_open_cache_picks_backend(tmp_path):
    assert isinstance(open_cache(tmp_path / "c").backend, FileCacheBackend)
    # the client connects lazily, so no server is needed here
    assert isinstance(open_cache(tmp_path / "c", redis_url="redis://localhost:6379/0").backend, RedisCacheBackend)


def test_redis_client_from_url_has_socket_deadlines():
    with patch("redis.Redis.from_url") as from_url:
        RedisCacheBackend("redis://cache.internal:6379/0", timeout=5)
    from_url.assert_called_once_with("redis://cache.internal:6379/0", socket_timeout=5, socket_connect_timeout=5)


def test_stalled_redis_restore_is_a_miss(tmp_path):
    client = MagicMock()
    client.get.side_effect = redis.exceptions.TimeoutError("Timeout reading from socket")
    store = CacheStore(RedisCacheBackend(client=client))

    hit = store.restore(CacheKey("ubuntu16", "h", "cargo-registry"), tmp_path / "dest")

    assert not hit.hit
    assert "Timeout reading from socket" in hit.reason
