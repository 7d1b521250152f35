"""Test module for OcflStorage: storage root creation, loading and object access."""

import json
import os
import threading
import pytest
from ocflstore.filestore import FileSystemStore
from ocflstore.layout import (
    FlatDirectStorageLayout,
    HashedNTupleStorageLayout,
    PathDirectStorageLayout,
)
from ocflstore.ocfl_exceptions import (
    InvalidLayoutConfiguration,
    NestedObjectNotAllowed,
    NonEmptyDirectoryConflict,
)
from ocflstore.storage import OcflStorage

# Define a mark to be used to label slow tests
slow_test = pytest.mark.skipif(
    "not config.getoption('--run-slow')",
    reason="Only run when --run-slow is given",
)


def test_init_properties(storage, props):
    """Check storage properties are set."""
    assert storage.root == props["storage_root"]
    assert storage.workspace == props["workspace"]
    assert storage.digest_algorithm == "sha512"
    assert storage.fixity_algorithms == ["md5"]
    assert isinstance(storage.layout, HashedNTupleStorageLayout)
    assert isinstance(storage.store, FileSystemStore)


def test_init_missing_storage_root():
    """Check the storage root is required."""
    with pytest.raises(KeyError):
        OcflStorage({"workspace": "/tmp/ws"})
    with pytest.raises(ValueError):
        OcflStorage({"storage_root": None})


def test_init_workspace_inside_root(props):
    """Check the workspace cannot be the storage root or inside it."""
    props["workspace"] = props["storage_root"]
    with pytest.raises(ValueError):
        OcflStorage(props)
    props["workspace"] = props["storage_root"] + "/workspace"
    with pytest.raises(ValueError):
        OcflStorage(props)
    # A sibling sharing the name prefix is fine
    props["workspace"] = props["storage_root"] + "-workspace"
    assert OcflStorage(props).workspace == props["workspace"]


def test_init_unknown_layout(props):
    """Check an unknown layout extension is refused."""
    props["layout"] = "0099-unknown-layout"
    with pytest.raises(InvalidLayoutConfiguration):
        OcflStorage(props)


def test_init_layout_instance(props):
    """Check a layout instance is used as given."""
    layout = FlatDirectStorageLayout()
    props["layout"] = layout
    assert OcflStorage(props).layout is layout


def test_init_store_from_factory(props):
    """Check the store is created from its module and class names."""
    props["store_module"] = "ocflstore.filestore"
    props["store_class"] = "FileSystemStore"
    props["store_properties"] = {"file_mode": 0o640}
    storage = OcflStorage(props)
    assert isinstance(storage.store, FileSystemStore)
    assert storage.store.fmode == 0o640


def test_create(storage):
    """Check the storage root declaration and layout description."""
    root = storage.root
    assert sorted(os.listdir(root)) == ["0=ocfl_1.1", "ocfl_layout.json"]
    with open(os.path.join(root, "0=ocfl_1.1"), encoding="utf-8") as file:
        assert file.read() == "ocfl_1.1\n"
    with open(os.path.join(root, "ocfl_layout.json"), encoding="utf-8") as file:
        layout_info = json.load(file)
    assert layout_info["extension"] == "0004-hashed-n-tuple-storage-layout"
    assert layout_info == storage.layout.describe()


def test_create_with_layout_config(props):
    """Check a non-default layout configuration is written to config.json."""
    props["layout_config"] = {"tupleSize": 2, "numberOfTuples": 2}
    storage = OcflStorage(props)
    storage.create()
    config_path = os.path.join(
        storage.root,
        "extensions",
        "0004-hashed-n-tuple-storage-layout",
        "config.json",
    )
    with open(config_path, encoding="utf-8") as file:
        config = json.load(file)
    assert config == {
        "extensionName": "0004-hashed-n-tuple-storage-layout",
        "digestAlgorithm": "sha256",
        "tupleSize": 2,
        "numberOfTuples": 2,
        "shortObjectRoot": False,
    }


def test_create_non_empty_root(storage, props):
    """Check create refuses an existing, non-empty directory."""
    with pytest.raises(NonEmptyDirectoryConflict):
        OcflStorage(props).create()


def test_load(props):
    """Check load reads the declaration and the recorded layout."""
    props["layout"] = "000N-path-direct-storage-layout"
    props["layout_config"] = {"omitSchema": True}
    OcflStorage(props).create()
    storage = OcflStorage({"storage_root": props["storage_root"]})
    assert isinstance(storage.layout, HashedNTupleStorageLayout)
    assert storage.load()
    assert isinstance(storage.layout, PathDirectStorageLayout)
    assert storage.layout.parameters["omitSchema"]
    assert storage.ocfl_version == "1.1"
    assert storage.object_root("https://example.org/a") == os.path.join(
        props["storage_root"], "example.org/a/__object__"
    )


def test_load_not_a_storage_root(props, tmp_path):
    """Check load returns False for missing and foreign directories."""
    storage = OcflStorage(props)
    assert not storage.load()
    (tmp_path / "ocfl" / "storage").mkdir(parents=True)
    (tmp_path / "ocfl" / "storage" / "file.txt").write_bytes(b"x")
    assert not storage.load()


def test_load_invalid_declaration(props, fs):
    """Check a declaration with unexpected content is not accepted."""
    fs.write(os.path.join(props["storage_root"], "0=ocfl_1.1"), "garbage")
    assert not OcflStorage(props).load()


def test_load_without_layout_file(storage, props, fs):
    """Check a root without ocfl_layout.json keeps the configured layout."""
    fs.remove(os.path.join(storage.root, "ocfl_layout.json"))
    props["layout"] = "0002-flat-direct-storage-layout"
    reloaded = OcflStorage(props)
    assert reloaded.load()
    assert isinstance(reloaded.layout, FlatDirectStorageLayout)


def test_object_root(storage):
    """Check object roots follow the layout."""
    assert storage.object_root("object-01") == os.path.join(
        storage.root,
        "3c0/ff4/240/3c0ff4240c1e116dba14c7627f2319b58aa3d77606d0d90dfc6161608ac987d4",
    )


def test_object(storage, props):
    """Check object handles share the storage settings."""
    ocfl_object = storage.object("object-01")
    relative_root = storage.layout.map("object-01")
    assert ocfl_object.root == os.path.join(storage.root, relative_root)
    assert ocfl_object.workspace == os.path.join(props["workspace"], relative_root)
    assert ocfl_object.id == "object-01"
    assert ocfl_object.store is storage.store
    assert ocfl_object.digest_registry is storage.digest_registry
    assert ocfl_object.fixity_algorithms == ["md5"]
    assert ocfl_object.storage_root == storage.root


def test_object_update_and_has(storage, contents):
    """Check an object written through the storage."""
    assert not storage.has("object-01")
    ocfl_object = storage.object("object-01")
    ocfl_object.update(lambda t: t.write("a.txt", "hello"))
    assert storage.has("object-01")
    assert not storage.has("object-02")
    reopened = storage.object("object-01")
    assert reopened.get_file("a.txt").read() == b"hello"
    inventory = reopened.get_inventory()
    assert inventory.fixity == {"md5": {contents["hello"]["md5"]: ["v1/content/a.txt"]}}
    # Nothing is left in the workspace version directory
    assert not os.path.exists(os.path.join(ocfl_object.workspace, "v1"))


def _workspace_entries(workspace):
    """All directories and files left below a workspace."""
    entries = []
    for dir_path, dir_names, file_names in os.walk(workspace):
        for name in dir_names + file_names:
            entries.append(os.path.relpath(os.path.join(dir_path, name), workspace))
    return sorted(entries)


def test_workspace_emptied_after_commit_and_rollback(storage, props):
    """Check no object directories accumulate in the storage workspace."""
    ocfl_object = storage.object("object-01")
    ocfl_object.update(lambda t: t.write("a.txt", "hello"))
    assert _workspace_entries(props["workspace"]) == []
    transaction = storage.object("object-02").update()
    transaction.write("b.txt", "world")
    assert _workspace_entries(props["workspace"]) != []
    transaction.rollback()
    assert _workspace_entries(props["workspace"]) == []
    assert not storage.has("object-02")
    # A failed update of an existing object leaves nothing behind either
    with pytest.raises(RuntimeError):
        with ocfl_object.update() as transaction:
            transaction.write("c.txt", "c")
            raise RuntimeError("stop")
    assert _workspace_entries(props["workspace"]) == []


def test_nested_object_through_layout(props):
    """Check an identifier mapped inside another object is refused."""
    props["layout"] = "000N-path-direct-storage-layout"
    storage = OcflStorage(props)
    storage.create()
    storage.object("https://example.org/a").update(lambda t: t.write("a.txt", "a"))
    nested = storage.object("https://example.org/a/__object__/b")
    with pytest.raises(NestedObjectNotAllowed):
        nested.update(lambda t: t.write("b.txt", "b"))


def test_delete(storage):
    """Check delete removes the object and the emptied layout directories."""
    storage.object("object-01").update(lambda t: t.write("a.txt", "hello"))
    storage.object("object-02").update(lambda t: t.write("a.txt", "hello"))
    assert storage.delete("object-01")
    assert not storage.has("object-01")
    assert not os.path.exists(os.path.join(storage.root, "3c0"))
    assert storage.has("object-02")
    assert not storage.delete("object-01")
    assert storage.delete("object-02")
    assert sorted(os.listdir(storage.root)) == ["0=ocfl_1.1", "ocfl_layout.json"]


def test_objects(storage, fs):
    """Check objects are enumerated from the storage root."""
    assert list(storage.objects()) == []
    object_ids = ["object-01", "object-02", "http://example.org/object-03"]
    for object_id in object_ids:
        storage.object(object_id).update(lambda t: t.write("a.txt", "hello"))
    # Not objects: extension data and directories without a declaration
    fs.write(os.path.join(storage.root, "extensions", "custom", "0=ocfl_object_1.1"), "")
    fs.mkdir(os.path.join(storage.root, "aaa", "bbb"))
    found = list(storage.objects())
    assert len(found) == 3
    assert sorted(ocfl_object.id for ocfl_object in found) == sorted(object_ids)
    assert sorted(ocfl_object.root for ocfl_object in storage) == sorted(
        storage.object_root(object_id) for object_id in object_ids
    )


def test_objects_is_lazy(storage):
    """Check objects are produced one at a time."""
    storage.object("object-01").update(lambda t: t.write("a.txt", "hello"))
    storage.object("object-02").update(lambda t: t.write("a.txt", "hello"))
    iterator = storage.objects()
    first = next(iterator)
    assert first.exists()
    assert next(iterator).exists()
    with pytest.raises(StopIteration):
        next(iterator)


def test_load_properties(tmp_path, props):
    """Check properties are read from a YAML file, ignoring unknown keys."""
    yaml_path = tmp_path / "ocfl.yaml"
    yaml_path.write_text(
        f"storage_root: {props['storage_root']}\n"
        f"workspace: {props['workspace']}\n"
        "layout: 0002-flat-direct-storage-layout\n"
        "digest_algorithm: sha256\n"
        "fixity_algorithms:\n"
        "  - md5\n"
        "  - crc32\n"
        "unknown_key: ignored\n",
        encoding="utf-8",
    )
    properties = OcflStorage.load_properties(yaml_path.as_posix())
    assert properties == {
        "storage_root": props["storage_root"],
        "workspace": props["workspace"],
        "layout": "0002-flat-direct-storage-layout",
        "digest_algorithm": "sha256",
        "fixity_algorithms": ["md5", "crc32"],
    }
    storage = OcflStorage.from_yaml(yaml_path.as_posix())
    assert isinstance(storage.layout, FlatDirectStorageLayout)
    assert storage.digest_algorithm == "sha256"
    storage.create()
    storage.object("object-01").update(lambda t: t.write("a.txt", "hello"))
    assert os.path.exists(
        os.path.join(storage.root, "object-01", "inventory.json.sha256")
    )


def test_load_properties_missing_file(tmp_path):
    """Check a missing properties file raises FileNotFoundError."""
    with pytest.raises(FileNotFoundError):
        OcflStorage.load_properties((tmp_path / "missing.yaml").as_posix())


def test_repr(storage):
    """Check the representation names the root and layout."""
    assert "0004-hashed-n-tuple-storage-layout" in repr(storage)


@slow_test
def test_objects_updated_in_threads(storage, props):
    """Check different objects can be updated from several threads."""

    def update_wrapper(index):
        storage.object(f"object-{index}").update(
            lambda t: t.write("data.txt", f"content {index}")
        )

    threads = [threading.Thread(target=update_wrapper, args=(i,)) for i in range(25)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert len(list(storage.objects())) == 25
    for index in range(25):
        assert storage.object(f"object-{index}").get_file("data.txt").read_text() == (
            f"content {index}"
        )
    # Shared layout directories may survive a race between two objects, files may not
    workspace = props["workspace"]
    assert [
        entry
        for entry in _workspace_entries(workspace)
        if not os.path.isdir(os.path.join(workspace, entry))
    ] == []
