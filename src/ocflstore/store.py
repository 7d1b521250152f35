"""Abstract Store interface"""
from abc import ABC, abstractmethod
from collections import namedtuple
import importlib.util


class OcflStore(ABC):
    """OcflStore is the minimal set of storage operations that the OCFL engine needs from a
    backend. Inventories, objects and transactions only ever reach storage through this
    interface, so any backend implementing it (local filesystem, object storage, ...) can be
    used without changes to the engine.

    Paths are '/'-separated strings understood by the backend. Directories may be virtual
    in backends that have none; `mkdir` then creates nothing and returns `None`.
    """

    @abstractmethod
    def stat(self, path):
        """Return information about a file or directory.

        :param str path: Path to inspect.

        :return: FileInfo - name, path, size, last modification time and whether the
            path is a directory.

        :raises FileNotFoundError: If nothing exists at the path.
        """
        raise NotImplementedError()

    def exists(self, path):
        """Return True if a file or directory exists at the given path."""
        try:
            self.stat(path)
            return True
        except FileNotFoundError:
            return False

    @abstractmethod
    def read(self, path, encoding=None):
        """Read a whole file.

        :param str path: Path to the file.
        :param str encoding: Text encoding. If `None`, bytes are returned.

        :return: The file content.
        :rtype: bytes or str
        """
        raise NotImplementedError()

    @abstractmethod
    def open_read(self, path):
        """Open a file for reading. The caller is responsible for closing it.

        :return: io.BufferedReader - binary readable stream.
        """
        raise NotImplementedError()

    @abstractmethod
    def write(self, path, data, encoding="utf-8"):
        """Write a whole file, replacing any existing file. Readers never observe a
        partially written file. Missing parent directories are created.

        :param str path: Path to the file.
        :param mixed data: `bytes`, `str`, a readable file-like object or an iterable of
            chunks.
        :param str encoding: Encoding used for `str` data.
        """
        raise NotImplementedError()

    @abstractmethod
    def open_write(self, path):
        """Open a file for writing, creating missing parent directories. The caller is
        responsible for closing it.

        :return: Binary writable stream.
        """
        raise NotImplementedError()

    @abstractmethod
    def copy(self, source, target):
        """Copy a file, or a directory recursively, to `target`."""
        raise NotImplementedError()

    @abstractmethod
    def move(self, source, target):
        """Move (rename) a file or a directory. An existing target file is replaced. When a
        rename is not possible across storage boundaries the backend copies and then deletes
        the source."""
        raise NotImplementedError()

    @abstractmethod
    def remove(self, path):
        """Remove a file or a directory recursively. A missing path is not an error."""
        raise NotImplementedError()

    @abstractmethod
    def mkdir(self, path, exist_ok=True):
        """Create a directory and its missing parents.

        :param str path: Directory to create.
        :param bool exist_ok: If False, raise `FileExistsError` when the directory itself
            already exists. The check and the creation are a single atomic step.

        :return: The first (top-most) directory actually created, or `None` if nothing was
            created. Removing it undoes the call.
        :rtype: str
        """
        raise NotImplementedError()

    def rmdir(self, path):
        """Remove a directory only if it is empty.

        Backends with real directories should override this with an atomic removal.

        :param str path: Directory to remove.

        :return: True if the directory was removed, False if it is missing or not empty.
        :rtype: bool
        """
        try:
            if self.readdir(path):
                return False
        except FileNotFoundError:
            return False
        self.remove(path)
        return True

    @abstractmethod
    def readdir(self, path):
        """Return the sorted entry names of a directory.

        :raises FileNotFoundError: If the directory does not exist.
        """
        raise NotImplementedError()

    @abstractmethod
    def opendir(self, path):
        """Iterate over the entries of a directory as `FileInfo` records."""
        raise NotImplementedError()

    @abstractmethod
    def list(self, path):
        """Recursively iterate over all files (not directories) under a directory as
        `FileInfo` records."""
        raise NotImplementedError()


class StoreFactory:
    """A factory class for creating `OcflStore`-like objects.

    The `StoreFactory` class provides a method to retrieve `OcflStore` backends by module
    and class name, so that backends living in other packages can be configured by name.
    """

    @staticmethod
    def get_store(module_name, class_name, properties=None):
        """Get an `OcflStore`-like object based on the specified `module_name` and `class_name`.

        :param str module_name: Name of the module (e.g., "ocflstore.filestore").
        :param str class_name: Name of the class in the given module (e.g., "FileSystemStore").
        :param dict properties: Backend properties (optional).

        :return: OcflStore - A store object based on the given `module_name` and `class_name`.

        :raises ModuleNotFoundError: If the module is not found.
        :raises AttributeError: If the class does not exist within the module.
        """
        # Validate module
        if importlib.util.find_spec(module_name) is None:
            raise ModuleNotFoundError(f"No module found for '{module_name}'")

        imported_module = importlib.import_module(module_name)

        # If class is not part of module, raise error
        if hasattr(imported_module, class_name):
            store_class = getattr(imported_module, class_name)
            return store_class(properties=properties)
        raise AttributeError(
            f"Class name '{class_name}' is not an attribute of module '{module_name}'"
        )


class FileInfo(
    namedtuple("FileInfo", ["name", "path", "size", "last_modified", "is_dir"])
):
    """Represents a file or directory entry reported by a store.

    :param str name: Base name of the entry.
    :param str path: Full path of the entry.
    :param int size: Size in bytes (0 for directories).
    :param float last_modified: Modification time as a POSIX timestamp.
    :param bool is_dir: Whether the entry is a directory.
    """

    # Default value to prevent dangerous default value
    def __new__(cls, name, path, size=0, last_modified=None, is_dir=False):
        return super(FileInfo, cls).__new__(
            cls, name, path, size, last_modified, is_dir
        )
