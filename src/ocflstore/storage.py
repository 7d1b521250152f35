"""OCFL storage root: declaration, storage layout and object enumeration."""

import json
import logging
import os
import yaml
from ocflstore import ocfl_config
from ocflstore.digest import DigestRegistry
from ocflstore.layout import StorageLayout, create_layout
from ocflstore.ocfl_exceptions import NonEmptyDirectoryConflict
from ocflstore.ocflobject import OcflObject
from ocflstore.store import StoreFactory
from ocflstore.utils import (
    find_namaste,
    is_dir_empty,
    namaste_content,
    namaste_name,
    remove_empty_dirs,
)


class OcflStorage(object):
    """OcflStorage manages an OCFL storage root: a directory holding many OCFL objects,
    each placed at the path its identifier maps to through the storage layout extension.

    To use an existing root, call `load()`; it returns False if the directory is not an
    OCFL storage root yet, in which case `create()` can initialize it.

    :param dict properties: A Python dictionary with the following keys (and values):
        - storage_root (str): Storage root directory. Required.
        - workspace (str): Directory for staging object versions, outside the storage root.
          Each object uses the sub-path its root has in the storage root.
        - layout (mixed): Layout extension name or a `StorageLayout` instance. Used by
          `create()`; `load()` replaces it with the layout recorded in the root.
        - layout_config (dict): Parameters of the layout extension.
        - digest_algorithm (str): Content digest algorithm of new objects.
        - content_directory (str): Content directory name of new objects.
        - fixity_algorithms (list): Extra fixity algorithms of new objects.
        - ocfl_version (str): OCFL version of the storage root and new objects.
        - concurrency (int): Threads used for directory imports.
        - store_module, store_class (str): Backend resolved through `StoreFactory` when no
          `store` is given.
        - store_properties (dict): Properties passed to that backend.
    :param OcflStore store: Storage backend.
    :param DigestRegistry digest_registry: Digest registry shared by the layout and objects.
    """

    property_required_keys = ["storage_root"]
    property_keys = [
        "storage_root",
        "workspace",
        "layout",
        "layout_config",
        "digest_algorithm",
        "content_directory",
        "fixity_algorithms",
        "ocfl_version",
        "concurrency",
        "store_module",
        "store_class",
        "store_properties",
    ]

    def __init__(self, properties, store=None, digest_registry=None):
        self._validate_properties(properties)
        self.root = properties["storage_root"].rstrip("/") or "/"
        workspace = properties.get("workspace")
        self.workspace = workspace.rstrip("/") if workspace else None
        if self.workspace and (
            self.workspace == self.root or self.workspace.startswith(self.root + "/")
        ):
            exception_string = (
                "OcflStorage - Workspace must be outside the storage root. Storage root:"
                + f" {self.root}, workspace: {self.workspace}"
            )
            logging.error(exception_string)
            raise ValueError(exception_string)
        if store is None:
            store = StoreFactory.get_store(
                properties.get("store_module") or ocfl_config.STORE_MODULE,
                properties.get("store_class") or ocfl_config.STORE_CLASS,
                properties.get("store_properties"),
            )
        self.store = store
        self.digest_registry = digest_registry or DigestRegistry()
        self.ocfl_version = properties.get("ocfl_version") or ocfl_config.OCFL_VERSION
        self.digest_algorithm = self.digest_registry.check_content_algorithm(
            properties.get("digest_algorithm") or ocfl_config.DIGEST_ALGORITHM
        )
        self.content_directory = properties.get("content_directory")
        self.fixity_algorithms = list(properties.get("fixity_algorithms") or [])
        self.concurrency = properties.get("concurrency") or ocfl_config.CONCURRENCY
        layout = properties.get("layout")
        if isinstance(layout, StorageLayout):
            self.layout = layout
        else:
            self.layout = create_layout(
                layout, properties.get("layout_config"), self.digest_registry
            )
        logging.debug(
            "OcflStorage - Initialized storage root: %s with layout: %s",
            self.root,
            self.layout.name,
        )

    def _validate_properties(self, properties):
        """Validate a properties dictionary by checking if it contains all the
        required keys and non-None values.

        :param dict properties: Dictionary containing storage properties.

        :raises KeyError: If key is missing from the required keys.
        :raises ValueError: If value is missing for a required key.
        """
        if not isinstance(properties, dict):
            exception_string = (
                "OcflStorage - _validate_properties: Invalid argument -"
                + " expected a dictionary."
            )
            logging.debug(exception_string)
            raise ValueError(exception_string)
        for key in self.property_required_keys:
            if key not in properties:
                exception_string = (
                    "OcflStorage - _validate_properties: Missing required"
                    + f" key: {key}."
                )
                logging.debug(exception_string)
                raise KeyError(exception_string)
            if properties.get(key) is None:
                exception_string = (
                    "OcflStorage - _validate_properties: Value for key:"
                    + f" {key} is none."
                )
                logging.debug(exception_string)
                raise ValueError(exception_string)

    @classmethod
    def load_properties(cls, yaml_path):
        """Read storage properties from a YAML file.

        :param str yaml_path: Path to the YAML file.

        :return: The known storage properties found in the file.
        :rtype: dict

        :raises FileNotFoundError: If the file does not exist.
        """
        if not os.path.exists(yaml_path):
            exception_string = (
                f"OcflStorage - load_properties: Properties file not found: {yaml_path}"
            )
            logging.critical(exception_string)
            raise FileNotFoundError(exception_string)

        with open(yaml_path, "r", encoding="utf-8") as yaml_file:
            yaml_data = yaml.safe_load(yaml_file) or {}

        properties = {}
        for key in cls.property_keys:
            if key in yaml_data:
                properties[key] = yaml_data[key]
        logging.debug(
            "OcflStorage - load_properties: Retrieved properties from: %s", yaml_path
        )
        return properties

    @classmethod
    def from_yaml(cls, yaml_path, store=None, digest_registry=None):
        """Create a storage from a YAML properties file."""
        return cls(cls.load_properties(yaml_path), store, digest_registry)

    def create(self):
        """Initialize the storage root: write its declaration, `ocfl_layout.json` and, when
        the layout is not configured with its defaults, the extension's `config.json`.

        :raises NonEmptyDirectoryConflict: If the storage root directory is not empty.
        """
        if not is_dir_empty(self.store, self.root):
            exception_string = (
                f"OcflStorage - create: Storage root {self.root} is not an empty directory."
            )
            logging.error(exception_string)
            raise NonEmptyDirectoryConflict(exception_string)
        self.store.mkdir(self.root)
        self.store.write(
            os.path.join(
                self.root,
                namaste_name(ocfl_config.NAMASTE_PREFIX_STORAGE, self.ocfl_version),
            ),
            namaste_content(ocfl_config.NAMASTE_PREFIX_STORAGE, self.ocfl_version),
        )
        self.store.write(
            os.path.join(self.root, ocfl_config.OCFL_LAYOUT),
            json.dumps(self.layout.describe(), indent=2),
        )
        if not self.layout.is_default_config():
            self.store.write(
                os.path.join(
                    self.root,
                    ocfl_config.EXTENSIONS_DIR,
                    self.layout.name,
                    ocfl_config.EXTENSION_CONFIG,
                ),
                json.dumps(self.layout.to_config(), indent=2),
            )
        logging.info(
            "OcflStorage - create: Created storage root %s with layout %s",
            self.root,
            self.layout.name,
        )

    def load(self):
        """Read the storage root declaration and its layout.

        :return: True if the directory is an OCFL storage root, False if it is not (yet).
        :rtype: bool
        """
        version, valid = find_namaste(
            self.store, self.root, ocfl_config.NAMASTE_PREFIX_STORAGE
        )
        if not version:
            logging.debug("OcflStorage - load: %s is not an OCFL storage root.", self.root)
            return False
        if not valid:
            logging.warning(
                "OcflStorage - load: Invalid storage root declaration in %s.", self.root
            )
            return False
        self.ocfl_version = version
        try:
            layout_info = json.loads(
                self.store.read(
                    os.path.join(self.root, ocfl_config.OCFL_LAYOUT), encoding="utf-8"
                )
            )
        except FileNotFoundError:
            logging.debug(
                "OcflStorage - load: No %s in %s, keeping layout %s.",
                ocfl_config.OCFL_LAYOUT,
                self.root,
                self.layout.name,
            )
            return True
        name = layout_info["extension"]
        config_path = os.path.join(
            self.root, ocfl_config.EXTENSIONS_DIR, name, ocfl_config.EXTENSION_CONFIG
        )
        try:
            config = json.loads(self.store.read(config_path, encoding="utf-8"))
        except FileNotFoundError:
            config = None
        self.layout = create_layout(name, config, self.digest_registry)
        logging.debug(
            "OcflStorage - load: Loaded storage root %s (OCFL %s) with layout %s",
            self.root,
            version,
            self.layout.name,
        )
        return True

    def object_root(self, object_id):
        """Return the path of an object's root in the store.

        :raises IncompatibleObjectId: If the layout cannot map the identifier.
        """
        return os.path.join(self.root, self.layout.map(object_id))

    def object(self, object_id):
        """Get a handle on an object of the storage, existing or not.

        :param str object_id: Object identifier.

        :rtype: OcflObject
        """
        return self._object_at(self.layout.map(object_id), object_id)

    def _object_at(self, relative_root, object_id=None):
        properties = {
            "root": os.path.join(self.root, relative_root),
            "id": object_id,
            "storage_root": self.root,
            "digest_algorithm": self.digest_algorithm,
            "content_directory": self.content_directory,
            "fixity_algorithms": self.fixity_algorithms,
            "ocfl_version": self.ocfl_version,
            "concurrency": self.concurrency,
        }
        if self.workspace:
            properties["workspace"] = os.path.join(self.workspace, relative_root)
        return OcflObject(properties, self.store, self.digest_registry)

    def has(self, object_id):
        """Return True if an object with this identifier exists in the storage."""
        return self.object(object_id).exists()

    def delete(self, object_id):
        """Remove an object and the directories of the storage left empty by it.

        :return: True if the object existed.
        :rtype: bool
        """
        object_root = self.object_root(object_id)
        if not self.store.exists(object_root):
            return False
        self.store.remove(object_root)
        top = os.path.join(self.root, os.path.relpath(object_root, self.root).split(os.sep)[0])
        remove_empty_dirs(self.store, os.path.dirname(object_root), top)
        logging.info("OcflStorage - delete: Deleted object '%s' at %s", object_id, object_root)
        return True

    def objects(self):
        """Iterate lazily over the objects of the storage root.

        Directories are walked depth-first in name order. A directory with a valid object
        declaration is yielded as an object and not descended into. The extensions
        directory of the storage root is skipped. Yielded objects have no id until their
        inventory is read.

        :return: Generator of `OcflObject`.
        """
        stack = [self.root]
        while stack:
            directory = stack.pop()
            if directory != self.root:
                version, valid = find_namaste(
                    self.store, directory, ocfl_config.NAMASTE_PREFIX_OBJECT
                )
                if version and valid:
                    yield self._object_at(os.path.relpath(directory, self.root))
                    continue
            try:
                entries = list(self.store.opendir(directory))
            except FileNotFoundError:
                continue
            children = [
                entry.path
                for entry in entries
                if entry.is_dir
                and not (
                    directory == self.root and entry.name == ocfl_config.EXTENSIONS_DIR
                )
            ]
            stack.extend(reversed(children))

    def __iter__(self):
        return self.objects()

    def __repr__(self):
        return f"OcflStorage(root={self.root!r}, layout={self.layout.name!r})"
