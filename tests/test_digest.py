"""Test module for the digest registry, pooled hashers and MultiDigest."""

import hashlib
import io
import threading
import pytest
from ocflstore.digest import DigestRegistry
from ocflstore.ocfl_exceptions import UnsupportedAlgorithm

# pylint: disable=W0212


def test_algorithms_registered(registry):
    """Confirm the OCFL content and fixity algorithms are registered."""
    for algorithm in [
        "sha256",
        "sha512",
        "md5",
        "sha1",
        "blake2b-512",
        "blake2b-160",
        "blake2b-256",
        "blake2b-384",
        "sha512/256",
        "size",
        "crc32",
    ]:
        assert algorithm in registry.algorithms


@pytest.mark.parametrize(
    "algorithm", ["sha1", "sha256", "sha512", "md5", "blake2b-160", "crc32"]
)
def test_digest_single_algorithm(registry, contents, algorithm):
    """Check digest of a string with a single algorithm returns the hex digest."""
    assert registry.digest(algorithm, "hello") == contents["hello"][algorithm]


def test_digest_size(registry):
    """Check the size algorithm returns the decimal byte count."""
    assert registry.digest("size", b"hello world") == "11"
    assert registry.digest("size", b"") == "0"


def test_digest_multiple_algorithms(registry, contents):
    """Check digest with a list of algorithms returns a dictionary."""
    digests = registry.digest(["sha512", "md5"], b"hello world")
    assert digests == {
        "sha512": contents["hello world"]["sha512"],
        "md5": contents["hello world"]["md5"],
    }


def test_digest_stream_and_chunks(registry, contents):
    """Check digest of a stream and of chunks equals digest of the whole content."""
    expected = contents["hello world"]["sha256"]
    assert registry.digest("sha256", io.BytesIO(b"hello world")) == expected
    assert registry.digest("sha256", [b"hello", " ", b"world"]) == expected


def test_clean_algorithm(registry):
    """Check hyphenated and upper case spellings are normalized."""
    assert registry.clean_algorithm("SHA-256") == "sha256"
    assert registry.clean_algorithm("sha512") == "sha512"
    assert registry.clean_algorithm("BLAKE2B-512") == "blake2b-512"
    assert registry.clean_algorithm("SHA512/256") == "sha512/256"


def test_clean_algorithm_unsupported(registry):
    """Check an unknown algorithm raises UnsupportedAlgorithm."""
    with pytest.raises(UnsupportedAlgorithm):
        registry.clean_algorithm("sha3-1024")
    with pytest.raises(UnsupportedAlgorithm):
        registry.clean_algorithm(None)
    assert not registry.is_supported("whirlpool")


def test_check_content_algorithm(registry):
    """Only sha256 and sha512 may address content."""
    assert registry.check_content_algorithm("SHA-512") == "sha512"
    with pytest.raises(UnsupportedAlgorithm):
        registry.check_content_algorithm("md5")


def test_check_fixity_algorithm(registry):
    """Only OCFL fixity algorithms may be recorded in the fixity block."""
    assert registry.check_fixity_algorithm("MD5") == "md5"
    assert registry.check_fixity_algorithm("crc32") == "crc32"
    registry.register("sha3-256", hashlib.sha3_256)
    with pytest.raises(UnsupportedAlgorithm):
        registry.check_fixity_algorithm("sha3-256")
    with pytest.raises(UnsupportedAlgorithm):
        registry.check_fixity_algorithm("whirlpool")


def test_register_custom_algorithm(registry):
    """Check a registered algorithm can be used for digests."""

    class ConstantHash:
        def update(self, data):
            pass

        def hexdigest(self):
            return "cafe"

        def copy(self):
            return ConstantHash()

    registry.register("Constant", ConstantHash)
    assert registry.is_supported("constant")
    assert registry.digest("constant", b"anything") == "cafe"


def test_hex_length(registry):
    """Check hex digest lengths."""
    assert registry.hex_length("sha256") == 64
    assert registry.hex_length("sha512") == 128
    assert registry.hex_length("md5") == 32
    assert registry.hex_length("blake2b-160") == 40


def test_hasher_pool_reuses_released_hashers(registry, contents):
    """Check a finalized hasher goes back to the pool and is reused."""
    hasher = registry.create_hasher("sha256")
    hasher.update(b"hello")
    assert hasher.hexdigest() == contents["hello"]["sha256"]
    second = registry.create_hasher("sha256")
    assert second is hasher
    assert second.update(b"world").hexdigest() == contents["world"]["sha256"]
    assert registry.pool_size("sha256") == 1


def test_hasher_pool_busy_hashers_not_shared(registry, contents):
    """Check concurrent hashers of the same algorithm never share state."""
    first = registry.create_hasher("sha256")
    second = registry.create_hasher("sha256")
    assert first is not second
    first.update(b"hello")
    second.update(b"world")
    assert first.hexdigest() == contents["hello"]["sha256"]
    assert second.hexdigest() == contents["world"]["sha256"]
    assert registry.pool_size("sha256") == 2


def test_hasher_finalized_cannot_update(registry):
    """Check a finalized hasher refuses more data."""
    hasher = registry.create_hasher("md5")
    hasher.hexdigest()
    with pytest.raises(ValueError):
        hasher.update(b"late")


def test_multi_digest_forwards_to_target(registry, contents):
    """Check MultiDigest writes through to its target while hashing."""
    target = io.BytesIO()
    multi_digest = registry.create_multi_digest(["sha512", "SHA-256"], target)
    multi_digest.write(b"hello ")
    multi_digest.write("world")
    assert target.getvalue() == b"hello world"
    assert multi_digest.size == 11
    assert multi_digest.digest() == {
        "sha512": contents["hello world"]["sha512"],
        "sha256": contents["hello world"]["sha256"],
    }
    # The digest is computed once
    assert multi_digest.digest()["sha256"] == contents["hello world"]["sha256"]
    with pytest.raises(ValueError):
        multi_digest.write(b"more")


def test_multi_digest_abort_releases_hashers(registry):
    """Check aborting a MultiDigest returns its hashers to the pool."""
    multi_digest = registry.create_multi_digest(["sha256"])
    multi_digest.write(b"partial")
    multi_digest.abort()
    registry.create_hasher("sha256").release()
    assert registry.pool_size("sha256") == 1


def test_digest_threads(contents):
    """Check digests computed from many threads are all correct."""
    registry = DigestRegistry()
    results = []
    lock = threading.Lock()

    def digest_wrapper(data):
        value = registry.digest("sha512", data)
        with lock:
            results.append((data, value))

    threads = [
        threading.Thread(target=digest_wrapper, args=(data,))
        for data in ["hello", "world", "hello world"] * 10
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert len(results) == 30
    for data, value in results:
        assert value == contents[data]["sha512"]
