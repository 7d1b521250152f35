"""Shared helpers for OcflStore: bounded thread parallelism, chunked streams, NAMASTE
declarations and logical path checks."""

import io
import os
import logging
import threading
from collections import namedtuple
from ocflstore import ocfl_config


class WorkResult(namedtuple("WorkResult", ["item", "value", "error"])):
    """Outcome of one item processed by `parallelize`.

    :param item: The work item.
    :param value: What the worker returned, `None` if it raised.
    :param Exception error: The exception raised by the worker, `None` on success.
    """

    def __new__(cls, item, value=None, error=None):
        return super(WorkResult, cls).__new__(cls, item, value, error)


def parallelize(items, worker, max_concurrency=ocfl_config.CONCURRENCY):
    """Run `worker(item)` for every item using at most `max_concurrency` threads.

    The items are put on a shared stack; each thread pops and processes items until the
    stack is empty. An exception raised for one item is recorded for that item only and
    never stops the other items from being processed.

    :param list items: Work items.
    :param callable worker: Function called with a single item.
    :param int max_concurrency: Upper bound on the number of threads.

    :return: One `WorkResult` per item, in the same order as `items`.
    :rtype: list
    """
    items = list(items)
    results = [None] * len(items)
    if not items:
        return results
    if max_concurrency is None or max_concurrency < 1:
        max_concurrency = 1
    # Reversed so that items are popped in their original order
    stack = list(reversed(list(enumerate(items))))
    stack_lock = threading.Lock()

    def run():
        while True:
            with stack_lock:
                if not stack:
                    return
                index, item = stack.pop()
            try:
                results[index] = WorkResult(item, worker(item))
            # pylint: disable=W0718
            except Exception as err:
                logging.debug(
                    "parallelize: worker failed for item: %s. Error: %s", item, err
                )
                results[index] = WorkResult(item, error=err)

    thread_count = min(max_concurrency, len(items))
    threads = [threading.Thread(target=run) for _ in range(thread_count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return results


def cast_to_bytes(data):
    """Convert text to a sequence of bytes using utf-8 encoding.

    :param mixed data: String, bytes or a bytes-like object.
    :return: Bytes with utf-8 encoding.
    :rtype: bytes
    """
    if isinstance(data, str):
        return data.encode("utf-8")
    if isinstance(data, (bytearray, memoryview)):
        return bytes(data)
    return data


def iter_chunks(data):
    """Yield the content of `data` as byte chunks. `data` may be `str`, `bytes`, a readable
    file-like object or an iterable of `str`/`bytes` chunks."""
    if isinstance(data, (str, bytes, bytearray, memoryview)):
        yield cast_to_bytes(data)
    elif hasattr(data, "read"):
        stream = Stream(data)
        try:
            for chunk in stream:
                yield cast_to_bytes(chunk)
        finally:
            stream.close()
    else:
        for chunk in data:
            yield cast_to_bytes(chunk)


class Stream(object):
    """Chunked reader over a file-like object or a path to a local file.

    If `obj` is a path, the file is opened here and closed by :meth:`close`. If `obj` is
    a file-like object, reading starts from its current position (or from the start when it
    is seekable and `rewind` is set) and closing is left to whoever passed it in; only the
    original position is restored.
    """

    def __init__(self, obj, chunk_size=None, rewind=False):
        if hasattr(obj, "read"):
            try:
                pos = obj.tell()
            except (AttributeError, OSError, io.UnsupportedOperation):
                pos = None
            self._owned = False
        elif isinstance(obj, (str, os.PathLike)) and os.path.isfile(obj):
            obj = io.open(obj, "rb")
            pos = None
            self._owned = True
        else:
            raise ValueError("Object must be a valid file path or a readable object")

        if chunk_size is None:
            try:
                chunk_size = os.fstat(obj.fileno()).st_blksize
            except (AttributeError, OSError, io.UnsupportedOperation):
                chunk_size = 8192

        self._obj = obj
        self._pos = pos
        self._rewind = rewind
        self.chunk_size = chunk_size

    def __iter__(self):
        if self._rewind and self._pos is not None:
            self._obj.seek(0)
        while True:
            data = self._obj.read(self.chunk_size)
            if not data:
                break
            yield data

    def close(self):
        """Close the underlying object if it was opened here, else return it to its
        original position when possible."""
        if self._owned:
            self._obj.close()
        elif self._pos is not None and self._rewind:
            self._obj.seek(self._pos)


def namaste_name(prefix, version):
    """Return the file name of a NAMASTE declaration, e.g. `0=ocfl_object_1.1`."""
    return ocfl_config.NAMASTE_T + prefix + version


def namaste_content(prefix, version):
    """Return the exact content of a NAMASTE declaration, e.g. `ocfl_object_1.1\\n`."""
    return prefix + version + "\n"


def find_namaste(store, directory, prefix):
    """Look for a NAMASTE declaration with the given prefix in a directory.

    :param OcflStore store: Store to read from.
    :param str directory: Directory to inspect.
    :param str prefix: `ocfl_object_` or `ocfl_`.

    :return: tuple - (version, valid). `version` is the OCFL version named by the first
        declaration file found, or `None` when there is none; `valid` tells whether the file
        content matches its name.
    :rtype: tuple
    """
    try:
        names = store.readdir(directory)
    except (FileNotFoundError, NotADirectoryError):
        return None, False
    for version in ocfl_config.OCFL_VERSIONS:
        file_name = namaste_name(prefix, version)
        if file_name in names:
            content = store.read(os.path.join(directory, file_name), encoding="utf-8")
            return version, content.strip() == (prefix + version)
    return None, False


def is_dir_empty(store, directory):
    """Return True if a directory does not exist or has no entries."""
    try:
        return len(store.readdir(directory)) == 0
    except FileNotFoundError:
        return True


def remove_empty_dirs(store, directory, top):
    """Remove `directory` and then its parents, as long as they are empty, without going
    above `top` (which may itself be removed).

    :param OcflStore store: Store holding the directories.
    :param str directory: Deepest directory to remove.
    :param str top: Highest directory that may be removed.

    :return: Number of directories removed.
    :rtype: int
    """
    top = os.path.normpath(top)
    current = os.path.normpath(directory)
    removed = 0
    while current == top or current.startswith(top + os.sep):
        if not store.rmdir(current):
            break
        removed += 1
        current = os.path.dirname(current)
    return removed


def check_logical_path(logical_path, arg="logical_path"):
    """Check that a logical path is a non-empty, relative, '/'-separated path without empty,
    '.' or '..' segments; throw an exception if not.

    :param str logical_path: Value to check.
    :param str arg: Name of the argument, used in the error message.

    :return: The logical path.
    :rtype: str
    """
    if not isinstance(logical_path, str) or logical_path.strip() == "":
        exception_string = (
            f"check_logical_path: {arg} cannot be None or empty, {arg}: {logical_path}."
        )
        logging.error(exception_string)
        raise ValueError(exception_string)
    segments = logical_path.split("/")
    if logical_path.startswith("/") or any(
        segment in ("", ".", "..") for segment in segments
    ):
        exception_string = (
            f"check_logical_path: {arg} must be a relative path without empty, '.' or"
            + f" '..' segments, {arg}: {logical_path}."
        )
        logging.error(exception_string)
        raise ValueError(exception_string)
    return logical_path
