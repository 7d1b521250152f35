"""Object engine: loads and verifies the inventories of one OCFL object, resolves its
files and opens transactions that create new versions."""

import json
import logging
import os
from enum import Enum
from ocflstore import ocfl_config
from ocflstore.digest import DigestRegistry
from ocflstore.filestore import FileSystemStore
from ocflstore.inventory import Inventory, MutableInventory
from ocflstore.ocfl_exceptions import (
    ContentNotFound,
    InventoryCorrupted,
    NestedObjectNotAllowed,
    NonEmptyDirectoryConflict,
    NotAnOcflObjectOrOccupiedDirectory,
    UncommittedChangesDetected,
)
from ocflstore.transaction import Transaction, TransactionState
from ocflstore.utils import (
    find_namaste,
    is_dir_empty,
    namaste_content,
    namaste_name,
    remove_empty_dirs,
)


class UpdateMode(Enum):
    """How a new version starts: MERGE starts from the previous state, REPLACE from an
    empty state (earlier content stays in the manifest and can be reinstated)."""

    MERGE = "MERGE"
    REPLACE = "REPLACE"

    @classmethod
    def of(cls, mode):
        """Return the mode for an `UpdateMode` or a case-insensitive name."""
        if isinstance(mode, cls):
            return mode
        if isinstance(mode, str) and mode.upper() in cls.__members__:
            return cls[mode.upper()]
        exception_string = (
            f"UpdateMode: Invalid update mode: {mode}. Must be one of: MERGE, REPLACE"
        )
        logging.error(exception_string)
        raise ValueError(exception_string)


class OcflFile(object):
    """A file of an OCFL object version, giving access to its content."""

    def __init__(self, ocfl_object, file_ref):
        self._object = ocfl_object
        self.ref = file_ref

    @property
    def logical_path(self):
        return self.ref.logical_path

    @property
    def version(self):
        return self.ref.version

    @property
    def digest(self):
        return self.ref.digest

    @property
    def content_path(self):
        return self.ref.content_path

    @property
    def fixity(self):
        return self.ref.fixity

    @property
    def path(self):
        """Location of the content in the store."""
        return os.path.join(self._object.root, self.ref.content_path)

    @property
    def size(self):
        return self._object.store.stat(self.path).size

    @property
    def last_modified(self):
        return self._object.store.stat(self.path).last_modified

    def read(self):
        """Return the content as bytes."""
        return self._object.store.read(self.path)

    def read_text(self, encoding="utf-8"):
        return self._object.store.read(self.path, encoding=encoding)

    def open(self):
        """Open the content for reading. The caller is responsible for closing it."""
        return self._object.store.open_read(self.path)

    def __repr__(self):
        return (
            f"OcflFile(logical_path={self.logical_path!r}, version={self.version!r},"
            + f" content_path={self.content_path!r})"
        )


class OcflObject(object):
    """OcflObject binds an object root to a store and manages the object's versions.

    Inventories are read through a cache keyed by version name ('latest' for the root
    inventory). Every read verifies the inventory against its digest sidecar. New versions
    are created through `update`.

    :param dict properties: A Python dictionary with the following keys (and values):
        - root (str): Object root directory. Required.
        - id (str): Object identifier. Required to create the object, read from the
          inventory otherwise.
        - workspace (str): Directory where new versions are staged. Without it, a version is
          staged in place as `<root>/vN`.
        - storage_root (str): Storage root containing the object, used to refuse nested
          objects.
        - digest_algorithm (str): 'sha256' or 'sha512' (default) for new objects.
        - content_directory (str): Content directory name for new objects.
        - fixity_algorithms (list): Extra algorithms recorded in the fixity block.
        - ocfl_version (str): OCFL version of new objects.
        - concurrency (int): Threads used for directory imports.
    :param OcflStore store: Storage backend, a `FileSystemStore` by default.
    :param DigestRegistry digest_registry: Digest registry, a new one by default.
    """

    property_required_keys = ["root"]

    def __init__(self, properties, store=None, digest_registry=None):
        self._validate_properties(properties)
        self.store = store or FileSystemStore()
        self.digest_registry = digest_registry or DigestRegistry()
        self.root = self._clean_path(properties["root"])
        workspace = properties.get("workspace")
        self.workspace = self._clean_path(workspace) if workspace else None
        if self.workspace == self.root:
            exception_string = (
                f"OcflObject - root and workspace must be different. Root: {self.root}"
            )
            logging.error(exception_string)
            raise ValueError(exception_string)
        storage_root = properties.get("storage_root")
        self.storage_root = self._clean_path(storage_root) if storage_root else None
        self.digest_algorithm = self.digest_registry.check_content_algorithm(
            properties.get("digest_algorithm") or ocfl_config.DIGEST_ALGORITHM
        )
        self.content_directory = (
            properties.get("content_directory") or ocfl_config.CONTENT_DIRECTORY
        )
        if "/" in self.content_directory or self.content_directory in (".", ".."):
            exception_string = (
                "OcflObject - content_directory must be a single directory name."
                + f" content_directory: {self.content_directory}"
            )
            logging.error(exception_string)
            raise ValueError(exception_string)
        self.ocfl_version = properties.get("ocfl_version") or ocfl_config.OCFL_VERSION
        if self.ocfl_version not in ocfl_config.OCFL_VERSIONS:
            exception_string = (
                f"OcflObject - Unsupported OCFL version: {self.ocfl_version}. Must be one"
                + f" of: {', '.join(ocfl_config.OCFL_VERSIONS)}"
            )
            logging.error(exception_string)
            raise ValueError(exception_string)
        self.fixity_algorithms = [
            self.digest_registry.check_fixity_algorithm(algorithm)
            for algorithm in properties.get("fixity_algorithms") or []
        ]
        self.concurrency = properties.get("concurrency") or ocfl_config.CONCURRENCY
        self._id = properties.get("id")
        self._inventory = {}
        logging.debug("OcflObject - Initialized object at root: %s", self.root)

    def _validate_properties(self, properties):
        """Validate a properties dictionary by checking if it contains all the
        required keys and non-None values.

        :param dict properties: Dictionary containing object properties.

        :raises KeyError: If key is missing from the required keys.
        :raises ValueError: If value is missing for a required key.
        """
        if not isinstance(properties, dict):
            exception_string = (
                "OcflObject - _validate_properties: Invalid argument -"
                + " expected a dictionary."
            )
            logging.debug(exception_string)
            raise ValueError(exception_string)
        for key in self.property_required_keys:
            if key not in properties:
                exception_string = (
                    "OcflObject - _validate_properties: Missing required"
                    + f" key: {key}."
                )
                logging.debug(exception_string)
                raise KeyError(exception_string)
            if properties.get(key) is None:
                exception_string = (
                    "OcflObject - _validate_properties: Value for key:"
                    + f" {key} is none."
                )
                logging.debug(exception_string)
                raise ValueError(exception_string)

    @staticmethod
    def _clean_path(path):
        path = os.fspath(path)
        return path.rstrip("/") or "/"

    @property
    def id(self):
        """Object identifier. For an existing object this is the id in its inventory."""
        inventory = self._inventory.get("latest")
        if inventory is None and self._id is None:
            inventory = self.get_inventory()
        if inventory is not None:
            return inventory.id
        return self._id

    def __repr__(self):
        return f"OcflObject(root={self.root!r}, id={self._id!r})"

    # Inventory

    def get_inventory(self, version="latest", refresh=False):
        """Get the inventory of the object (root inventory) or of a version.

        :param str version: 'latest' or a version name such as 'v2'.
        :param bool refresh: Read from storage even if the inventory is cached.

        :return: The inventory, or `None` if the object (or version) has none yet.
        :rtype: Inventory

        :raises InventoryCorrupted: If the inventory does not match its sidecar digest.
        """
        version = version or "latest"
        if refresh or version not in self._inventory:
            inventory = self._read_inventory(version)
            if inventory is None:
                self._inventory.pop(version, None)
                return None
            self._inventory[version] = inventory
            if version == "latest":
                self._inventory[inventory.head] = inventory
        return self._inventory[version]

    def _set_inventory(self, inventory):
        self._inventory["latest"] = inventory
        self._inventory[inventory.head] = inventory

    def _read_inventory(self, version="latest"):
        """Read and parse an inventory and verify it against its digest sidecar."""
        if version == "latest":
            inventory_path = os.path.join(self.root, ocfl_config.INVENTORY_NAME)
        else:
            inventory_path = os.path.join(self.root, version, ocfl_config.INVENTORY_NAME)
        try:
            content = self.store.read(inventory_path)
        except (FileNotFoundError, NotADirectoryError):
            logging.debug("OcflObject - _read_inventory: No inventory at: %s", inventory_path)
            return None
        try:
            data = json.loads(content.decode("utf-8"))
            digest_algorithm = data["digestAlgorithm"]
        except (ValueError, KeyError, TypeError) as err:
            exception_string = (
                f"OcflObject - _read_inventory: Inventory at {inventory_path} of object"
                + f" root {self.root} cannot be parsed: {err}"
            )
            logging.error(exception_string)
            raise InventoryCorrupted(exception_string)
        sidecar_path = inventory_path + "." + digest_algorithm
        try:
            sidecar = self.store.read(sidecar_path, encoding="utf-8").split()
        except FileNotFoundError:
            sidecar = []
        recorded_digest = sidecar[0].lower() if sidecar else None
        actual_digest = self.digest_registry.digest(digest_algorithm, content)
        if recorded_digest != actual_digest:
            exception_string = (
                f"OcflObject - _read_inventory: Inventory at {inventory_path} is corrupted."
                + f" Sidecar digest: {recorded_digest}, actual digest: {actual_digest}."
            )
            logging.error(exception_string)
            raise InventoryCorrupted(exception_string)
        logging.debug("OcflObject - _read_inventory: Inventory verified: %s", inventory_path)
        return Inventory(data)

    def load(self):
        """(Re)load the root inventory from storage.

        :return: True if the object has an inventory.
        :rtype: bool
        """
        return self.get_inventory(refresh=True) is not None

    def exists(self):
        """Return True if the object root holds a valid object declaration."""
        version, valid = find_namaste(
            self.store, self.root, ocfl_config.NAMASTE_PREFIX_OBJECT
        )
        return bool(version and valid)

    is_object = exists

    # Updates

    def update(self, updater=None, mode=UpdateMode.MERGE):
        """Create a new version of the object.

        With an `updater`, a transaction is opened and passed to it. The transaction is
        committed when the updater returns, or rolled back when it raises, in which case the
        error is raised again. Without an `updater`, the open transaction is returned and the
        caller must commit or roll it back.

        :param callable updater: Function receiving the `Transaction`.
        :param mixed mode: `UpdateMode` or its name; MERGE (default) or REPLACE.

        :return: The transaction.
        :rtype: Transaction

        :raises UncommittedChangesDetected: If another update of the object is in progress
            or a failed one left its workspace behind.
        """
        mode = UpdateMode.of(mode)
        inventory = self.get_inventory()
        if inventory is None:
            self._check_nesting()
        draft = self._create_inventory(inventory, mode == UpdateMode.REPLACE)
        transaction = self._create_transaction(draft)
        if updater is None:
            return transaction
        try:
            updater(transaction)
        except Exception as err:
            logging.error(
                "OcflObject - update: Update of object '%s' failed, rolling back: %s",
                draft.id,
                err,
            )
            if transaction.state == TransactionState.OPEN:
                transaction.rollback()
            raise err
        transaction.commit()
        return transaction

    def _create_inventory(self, inventory, clean_state):
        """Create the draft inventory of the next version."""
        if inventory is not None:
            return MutableInventory.new_version(inventory, clean_state)
        if not self._id:
            exception_string = (
                f"OcflObject - update: An id is required to create the object at {self.root}."
            )
            logging.error(exception_string)
            raise ValueError(exception_string)
        data = {
            "id": self._id,
            "type": ocfl_config.INVENTORY_TYPE.format(self.ocfl_version),
            "digestAlgorithm": self.digest_algorithm,
        }
        if self.content_directory != ocfl_config.CONTENT_DIRECTORY:
            data["contentDirectory"] = self.content_directory
        return MutableInventory.new_version(data, clean_state)

    def _create_transaction(self, inventory):
        rollback_paths = []
        # (directory, top) pairs created for the transaction, removed again while empty
        created_dirs = []
        if self.workspace:
            workspace_version_path = os.path.join(self.workspace, inventory.head)
        else:
            workspace_version_path = os.path.join(self.root, inventory.head)
            namaste_path, created_dir = self._ensure_namaste()
            if namaste_path:
                rollback_paths.append(namaste_path)
            if created_dir:
                created_dirs.append((self.root, created_dir))
        try:
            created_dir = self.store.mkdir(workspace_version_path, exist_ok=False)
        except FileExistsError:
            for path in rollback_paths:
                self.store.remove(path)
            for directory, top in created_dirs:
                remove_empty_dirs(self.store, directory, top)
            exception_string = (
                "OcflObject - update: Uncommitted changes detected. Object"
                + f" '{inventory.id}' at {self.root} is being updated by another process or"
                + " there has been a failed update attempt. Workspace:"
                + f" {workspace_version_path}"
            )
            logging.error(exception_string)
            raise UncommittedChangesDetected(exception_string)
        if (
            self.workspace
            and created_dir
            and created_dir != os.path.normpath(workspace_version_path)
        ):
            created_dirs.append((self.workspace, created_dir))
        rollback_paths.insert(0, workspace_version_path)
        return Transaction(
            self, inventory, workspace_version_path, rollback_paths, created_dirs
        )

    def _ensure_namaste(self):
        """Make sure the object root has a valid object declaration, writing one into an
        empty or missing root.

        :return: The declaration file written and the top-most directory created for it,
            each `None` when nothing had to be written or created.
        :rtype: tuple
        """
        version, valid = find_namaste(
            self.store, self.root, ocfl_config.NAMASTE_PREFIX_OBJECT
        )
        if version:
            if valid:
                return None, None
            exception_string = (
                f"OcflObject - _ensure_namaste: Invalid object declaration in {self.root}."
            )
            logging.error(exception_string)
            raise NotAnOcflObjectOrOccupiedDirectory(exception_string)
        if not is_dir_empty(self.store, self.root):
            exception_string = (
                "OcflObject - _ensure_namaste: Cannot create an OCFL object in the non-empty"
                + f" directory {self.root}."
            )
            logging.error(exception_string)
            raise NotAnOcflObjectOrOccupiedDirectory(exception_string)
        created_dir = self.store.mkdir(self.root)
        namaste_path = os.path.join(
            self.root, namaste_name(ocfl_config.NAMASTE_PREFIX_OBJECT, self.ocfl_version)
        )
        self.store.write(
            namaste_path,
            namaste_content(ocfl_config.NAMASTE_PREFIX_OBJECT, self.ocfl_version),
        )
        logging.debug("OcflObject - _ensure_namaste: Declaration written: %s", namaste_path)
        return namaste_path, created_dir

    def _check_nesting(self):
        """Refuse to create the object inside another object of the storage root."""
        if not self.storage_root:
            return
        current = os.path.dirname(self.root)
        while current.startswith(self.storage_root + "/"):
            version, _ = find_namaste(
                self.store, current, ocfl_config.NAMASTE_PREFIX_OBJECT
            )
            if version:
                exception_string = (
                    f"OcflObject - update: Cannot create object at {self.root} inside the"
                    + f" object at {current}."
                )
                logging.error(exception_string)
                raise NestedObjectNotAllowed(exception_string)
            current = os.path.dirname(current)

    # Content access

    def files(self, version=None):
        """Iterate over the files of a version (default head) in logical path order.

        :return: Generator of `OcflFile`.
        """
        inventory = self.get_inventory()
        if inventory is None:
            return
        for file_ref in inventory.files(version):
            yield OcflFile(self, file_ref)

    def count(self, version=None):
        """Return the number of files in a version (default head)."""
        inventory = self.get_inventory()
        if inventory is None:
            return 0
        return inventory.count(version)

    def get_file(self, logical_path=None, version=None, digest=None, content_path=None):
        """Resolve a file by logical path (and version), by digest or by content path.

        :rtype: OcflFile

        :raises ContentNotFound: If the reference cannot be resolved.
        """
        inventory = self.get_inventory()
        file_ref = None
        if inventory is not None:
            file_ref = inventory.get_file(
                logical_path=logical_path,
                version=None if version == "latest" else version,
                digest=digest,
                content_path=content_path,
            )
        if file_ref is None:
            exception_string = (
                "OcflObject - get_file: Cannot find content"
                + f" '{logical_path or content_path or digest}' in object '{self.id}'"
                + f" version '{version or 'latest'}' at {self.root}."
            )
            logging.error(exception_string)
            raise ContentNotFound(exception_string)
        return OcflFile(self, file_ref)

    def import_path(self, source, target="", mode=UpdateMode.MERGE):
        """Import a file or a directory tree as a new version of the object.

        :param str source: File or directory in the store.
        :param str target: Logical directory (or path, for a file) to import to. Defaults
            to the logical root.
        :param mixed mode: `UpdateMode` or its name.

        :return: The committed transaction.
        :rtype: Transaction
        """
        if not target and not self.store.stat(source).is_dir:
            target = None
        return self.update(lambda t: t.import_path(source, target), mode)

    def export(self, target_dir, version=None):
        """Copy the files of a version (default head) into `target_dir`, laid out by
        logical path. `target_dir` must be missing or empty.

        :return: Number of files exported.
        :rtype: int

        :raises NonEmptyDirectoryConflict: If `target_dir` has entries.
        """
        if not is_dir_empty(self.store, target_dir):
            exception_string = (
                f"OcflObject - export: Target directory {target_dir} is not empty."
            )
            logging.error(exception_string)
            raise NonEmptyDirectoryConflict(exception_string)
        count = 0
        for ocfl_file in self.files(version):
            self.store.copy(
                ocfl_file.path, os.path.join(target_dir, ocfl_file.logical_path)
            )
            count += 1
        logging.debug(
            "OcflObject - export: Exported %s files of object '%s' to: %s",
            count,
            self.id,
            target_dir,
        )
        return count
