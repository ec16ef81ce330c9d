import os
import stat

from vaultp2p.identity_cache import IdentityCache


def test_store_load_clear(tmp_path) -> None:
    cache = IdentityCache(str(tmp_path / "state" / "identity_cache"))
    assert cache.load() is None

    cache.store("abcd1234", "key-material")
    cached = cache.load()
    assert cached is not None
    assert cached.identity == "abcd1234"
    assert cached.key_material == "key-material"

    mode = stat.S_IMODE(os.stat(cache.path).st_mode)
    assert mode & 0o077 == 0

    cache.clear()
    assert cache.load() is None
    cache.clear()


def test_corrupt_cache_is_ignored(tmp_path) -> None:
    path = tmp_path / "identity_cache"
    path.write_bytes(b"\xff\x00garbage")
    assert IdentityCache(str(path)).load() is None
