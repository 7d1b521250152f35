"""Pytest overall configuration file for fixtures"""

import pytest
from ocflstore.digest import DigestRegistry
from ocflstore.filestore import FileSystemStore
from ocflstore.ocflobject import OcflObject
from ocflstore.storage import OcflStorage


def pytest_addoption(parser):
    """Run slow tests only when a flag is set on pytest."""
    parser.addoption(
        "--run-slow",
        action="store_true",
        default=False,
        help="Run slow tests",
    )


@pytest.fixture(name="props")
def init_props(tmp_path):
    """Properties to initialize an OcflStorage."""
    # Note, storage roots generated via tests are placed in a temporary folder
    properties = {
        "storage_root": (tmp_path / "ocfl" / "storage").as_posix(),
        "workspace": (tmp_path / "ocfl" / "workspace").as_posix(),
        "layout": "0004-hashed-n-tuple-storage-layout",
        "digest_algorithm": "sha512",
        "fixity_algorithms": ["md5"],
    }
    return properties


@pytest.fixture(name="registry")
def init_registry():
    """Digest registry shared by the objects of a test."""
    return DigestRegistry()


@pytest.fixture(name="fs")
def init_fs():
    """Filesystem store."""
    return FileSystemStore()


@pytest.fixture(name="storage")
def init_storage(props):
    """Create an initialized OcflStorage for all tests."""
    storage = OcflStorage(props)
    storage.create()
    return storage


@pytest.fixture(name="obj")
def init_object(tmp_path, fs, registry):
    """An OCFL object that has no version yet, staged through a workspace."""
    properties = {
        "root": (tmp_path / "object").as_posix(),
        "id": "http://example.org/object-01",
        "workspace": (tmp_path / "workspace").as_posix(),
    }
    return OcflObject(properties, fs, registry)


@pytest.fixture(name="contents")
def init_contents():
    """Shared test data: content and its digests."""
    test_contents = {
        "hello": {
            "size": 5,
            "md5": "5d41402abc4b2a76b9719d911017c592",
            "sha1": "aaf4c61ddcc5e8a2dabede0f3b482cd9aea9434d",
            "sha256": "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824",
            "sha512": "9b71d224bd62f3785d96d46ad3ea3d73319bfbc2890caadae2dff72519673ca72323c3d99ba5c11d7c7acc6e14b8c5da0c4663475c2e5c3adef46f73bcdec043",
            "blake2b-160": "b5531c7037f06c9f2947132a6a77202c308e8939",
            "crc32": "3610a686",
        },
        "world": {
            "size": 5,
            "md5": "7d793037a0760186574b0282f2f435e7",
            "sha1": "7c211433f02071597741e6ff5a8ea34789abbf43",
            "sha256": "486ea46224d1bb4fb680f34f7c9ad96a8f24ec88be73ea8e5a6c65260e9cb8a7",
            "sha512": "11853df40f4b2b919d3815f64792e58d08663767a494bcbb38c0b2389d9140bbb170281b4a847be7757bde12c9cd0054ce3652d0ad3a1a0c92babb69798246ee",
        },
        "hello world": {
            "size": 11,
            "md5": "5eb63bbbe01eeed093cb22bb8f5acdc3",
            "sha1": "2aae6c35c94fcfb415dbe95f408b9ce91ee846ed",
            "sha256": "b94d27b9934d3e08a52e52d7da7dabfac484efe37a5380ee9088f7ace2efcde9",
            "sha512": "309ecc489c12d6eb4cc40f50c902f2b4d0ed77ee511a7c7a9bcd3ca86d4cd86f989dd35bc5ff499670da34255b45b0cfd830e81f605dcf7dc5542e93ae9cd76f",
        },
        "": {
            "size": 0,
            "sha512": "cf83e1357eefb8bdf1542850d66d8007d620e4050b5715dc83f4a921d36ce9ce47d0d13c5d85f2b0ff8318d2877eec2f63b931bd47417a81a538327af927da3e",
        },
    }
    return test_contents
