"""Local filesystem backend for OcflStore"""

import errno
import io
import logging
import os
import shutil
import stat
from tempfile import NamedTemporaryFile
from ocflstore.store import FileInfo, OcflStore
from ocflstore.utils import iter_chunks


class FileSystemStore(OcflStore):
    """FileSystemStore implements the `OcflStore` interface on top of a local (or mounted)
    filesystem. Paths are ordinary filesystem paths.

    Whole-file writes go to a temporary file in the target directory which is then renamed
    over the target, so a reader sees either the old or the new content.

    :param dict properties: Optional settings:
        - file_mode (int): Permissions of written files. Defaults to 0o664.
        - dir_mode (int): Permissions of created directories. Defaults to 0o755.
    """

    # Permissions settings for writing files and creating directories
    fmode = 0o664
    dmode = 0o755

    def __init__(self, properties=None):
        properties = properties or {}
        self.fmode = properties.get("file_mode", self.fmode)
        self.dmode = properties.get("dir_mode", self.dmode)
        logging.debug(
            "FileSystemStore - Initialized with file mode: %o, dir mode: %o",
            self.fmode,
            self.dmode,
        )

    @staticmethod
    def _file_info(path, file_stat, name=None):
        is_dir = stat.S_ISDIR(file_stat.st_mode)
        return FileInfo(
            name if name is not None else os.path.basename(path),
            path,
            0 if is_dir else file_stat.st_size,
            file_stat.st_mtime,
            is_dir,
        )

    def stat(self, path):
        return self._file_info(path, os.stat(path))

    def read(self, path, encoding=None):
        with open(path, "rb") as file:
            content = file.read()
        if encoding:
            return content.decode(encoding)
        return content

    def open_read(self, path):
        return io.open(path, "rb")

    def write(self, path, data, encoding="utf-8"):
        if isinstance(data, str):
            data = data.encode(encoding)
        parent = os.path.dirname(path) or "."
        self._create_path(parent)
        tmp = NamedTemporaryFile(
            dir=parent, prefix="." + os.path.basename(path) + ".", delete=False
        )
        tmp_file_completion_flag = False
        try:
            with tmp as tmp_file:
                for chunk in iter_chunks(data):
                    tmp_file.write(chunk)
            if self.fmode is not None:
                os.chmod(tmp.name, self.fmode)
            os.replace(tmp.name, path)
            tmp_file_completion_flag = True
        finally:
            if not tmp_file_completion_flag and os.path.exists(tmp.name):
                os.remove(tmp.name)
        logging.debug("FileSystemStore - write: File written: %s", path)

    def open_write(self, path):
        self._create_path(os.path.dirname(path) or ".")
        return io.open(path, "wb")

    def copy(self, source, target):
        if os.path.isdir(source):
            shutil.copytree(source, target, dirs_exist_ok=True)
        else:
            self._create_path(os.path.dirname(target) or ".")
            shutil.copy2(source, target)

    def move(self, source, target):
        self._create_path(os.path.dirname(target) or ".")
        try:
            os.replace(source, target)
        except OSError as err:
            if err.errno != errno.EXDEV:
                raise err
            logging.debug(
                "FileSystemStore - move: Cannot rename across devices, copying %s to %s",
                source,
                target,
            )
            self.copy(source, target)
            self._verify_copy(source, target)
            self.remove(source)

    def _verify_copy(self, source, target):
        """Confirm that every file under `source` arrived at `target` with the same size.

        :param str source: Copied file or directory.
        :param str target: Where it was copied to.

        :raises OSError: If a file is missing at the target or its size differs. The
            source is left in place.
        """
        if os.path.isdir(source):
            pairs = [
                (info.path, os.path.join(target, os.path.relpath(info.path, source)))
                for info in self.list(source)
            ]
        else:
            pairs = [(source, target)]
        for source_path, target_path in pairs:
            source_size = self.stat(source_path).size
            try:
                target_size = self.stat(target_path).size
            except FileNotFoundError:
                target_size = None
            if target_size != source_size:
                exception_string = (
                    f"FileSystemStore - move: Copy of {source_path} to {target_path} is"
                    + f" incomplete (expected {source_size} bytes, found {target_size})."
                    + " Source left in place."
                )
                logging.error(exception_string)
                raise OSError(exception_string)

    def remove(self, path):
        try:
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            else:
                os.remove(path)
        except FileNotFoundError:
            return
        logging.debug("FileSystemStore - remove: Removed: %s", path)

    def mkdir(self, path, exist_ok=True):
        path = os.path.normpath(path)
        # Walk up to the top-most missing directory, which is what this call creates
        first_created = None
        current = path
        while not os.path.exists(current):
            first_created = current
            parent = os.path.dirname(current)
            if parent == current:
                break
            current = parent
        if first_created is None:
            if not os.path.isdir(path):
                raise NotADirectoryError(f"Not a directory: {path}")
            if not exist_ok:
                raise FileExistsError(f"Directory already exists: {path}")
            return None
        try:
            # Creating the leaf separately makes the existence check atomic
            self._create_leaf(path)
        except FileExistsError:
            if not exist_ok:
                raise
            return None
        return first_created

    def _create_leaf(self, path):
        parent = os.path.dirname(path) or "."
        self._create_path(parent)
        try:
            os.mkdir(path, self.dmode)
        except FileNotFoundError:
            # An empty parent was removed by another thread in between
            self._create_path(parent)
            os.mkdir(path, self.dmode)

    def rmdir(self, path):
        try:
            os.rmdir(path)
        except FileNotFoundError:
            return False
        except OSError as err:
            if err.errno in (errno.ENOTEMPTY, errno.EEXIST):
                return False
            raise err
        logging.debug("FileSystemStore - rmdir: Removed empty directory: %s", path)
        return True

    def readdir(self, path):
        return sorted(os.listdir(path))

    def opendir(self, path):
        with os.scandir(path) as entries:
            for entry in sorted(entries, key=lambda e: e.name):
                yield self._file_info(entry.path, entry.stat(), entry.name)

    def list(self, path):
        for dir_path, dir_names, file_names in os.walk(path):
            dir_names.sort()
            for file_name in sorted(file_names):
                file_path = os.path.join(dir_path, file_name)
                yield self._file_info(file_path, os.stat(file_path), file_name)

    def _create_path(self, path):
        """Physically create the folder path (and all intermediate ones) on disk.

        :param str path: The path to create.
        :raises AssertionError: If the path already exists but is not a directory.
        """
        try:
            os.makedirs(path, self.dmode)
        except FileExistsError:
            assert os.path.isdir(path), f"expected {path} to be a directory"
