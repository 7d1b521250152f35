"""Write side of an OCFL object.

A `Transaction` stages every change of a new version in a workspace version directory and
records it in a draft inventory. `commit` turns the workspace into the next version of the
object and replaces the root inventory; `rollback` removes the workspace and leaves the
object as it was.
"""

import datetime
import logging
import os
import threading
import uuid
from enum import Enum
from ocflstore import ocfl_config
from ocflstore.inventory import Inventory
from ocflstore.ocfl_exceptions import (
    ImportFailed,
    PurgeRequiresForce,
    TransactionAlreadyCommitted,
    UncommittedChangesDetected,
    UnfinishedOperationsDetected,
)
from ocflstore.utils import (
    cast_to_bytes,
    check_logical_path,
    iter_chunks,
    parallelize,
    remove_empty_dirs,
)


class TransactionState(Enum):
    OPEN = "open"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled back"


def _utc_now():
    """Current time as ISO 8601 in UTC with millisecond precision and a 'Z' suffix."""
    now = datetime.datetime.now(datetime.timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class Transaction(object):
    """An update of one OCFL object, producing exactly one new version.

    Transactions are created by `OcflObject.update`. All operations are thread-safe: several
    threads may write to the same transaction, and each operation is counted as pending
    until it finishes. A transaction ends in exactly one of two terminal states, committed
    or rolled back; calling the terminal operation again is a no-op, and any other use
    afterwards raises `TransactionAlreadyCommitted`.

    Used as a context manager, the transaction commits when the block exits normally and
    rolls back when it raises.

    :param OcflObject ocfl_object: Object being updated.
    :param MutableInventory inventory: Draft inventory of the new version.
    :param str workspace_version_path: Directory staging the new version.
    :param list rollback_paths: Paths created when the transaction was opened, removed
        again on rollback.
    :param list created_dirs: `(directory, top)` pairs of directories created for the
        transaction. Each is removed, with its parents up to `top`, once it is empty again
        after a commit or a rollback.
    """

    def __init__(
        self,
        ocfl_object,
        inventory,
        workspace_version_path,
        rollback_paths=None,
        created_dirs=None,
    ):
        self._object = ocfl_object
        self._store = ocfl_object.store
        self._registry = ocfl_object.digest_registry
        self._inventory = inventory
        self.workspace_version_path = workspace_version_path
        self._staging_path = os.path.join(workspace_version_path, ocfl_config.STAGING_DIR)
        self._rollback_paths = list(rollback_paths or [])
        self._created_dirs = list(created_dirs or [])
        self._content_algorithm = inventory.digest_algorithm
        self._algorithms = [self._content_algorithm] + [
            algorithm
            for algorithm in ocfl_object.fixity_algorithms
            if algorithm != self._content_algorithm
        ]
        # Synchronization of pending operations and terminal state changes
        self._lock = threading.Lock()
        self._condition = threading.Condition(self._lock)
        self._pending = 0
        self._closing = False
        self._writers = []
        # Serializes changes of the draft inventory together with their file actions
        self._inventory_lock = threading.RLock()
        # Committed content dropped by a purge, deleted once the commit succeeded
        self._deferred_removals = []
        self.state = TransactionState.OPEN
        logging.debug(
            "Transaction - Opened %s for object: %s. Workspace: %s",
            inventory.head,
            inventory.id,
            workspace_version_path,
        )

    @property
    def inventory(self):
        """The draft inventory of the new version."""
        return self._inventory

    @property
    def head(self):
        return self._inventory.head

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        if exc_type is not None:
            if self.state == TransactionState.OPEN:
                self.rollback()
            return False
        if self.state == TransactionState.OPEN:
            self.commit()
        return False

    # Operation bookkeeping

    def _begin_operation(self, method):
        with self._condition:
            if self.state != TransactionState.OPEN or self._closing:
                exception_string = (
                    f"Transaction - {method}: The transaction of object '{self._inventory.id}'"
                    + f" version {self.head} is {self._describe_state()}."
                )
                logging.error(exception_string)
                raise TransactionAlreadyCommitted(exception_string)
            self._pending += 1

    def _end_operation(self):
        with self._condition:
            self._pending -= 1
            self._condition.notify_all()

    def _describe_state(self):
        if self.state == TransactionState.OPEN:
            return "being closed"
        return "already " + self.state.value

    # Path helpers

    def _workspace_path(self, content_path):
        relative_path = content_path[len(self._inventory.head_prefix) :]
        return os.path.join(self.workspace_version_path, relative_path)

    def _apply_actions(self):
        """Carry out the file actions queued by the draft inventory."""
        for action in self._inventory.drain_actions():
            if action[0] == "remove":
                content_path = action[1]
                if self._inventory.is_draft_content(content_path):
                    self._store.remove(self._workspace_path(content_path))
                else:
                    self._deferred_removals.append(content_path)
            else:
                _, old_content_path, new_content_path = action
                self._store.move(
                    self._workspace_path(old_content_path),
                    self._workspace_path(new_content_path),
                )

    # Content

    def write(self, logical_path, data):
        """Write content to a logical path, replacing what the path held before.

        Text and bytes are digested first and only written when the digest is not in the
        manifest yet. Streams and chunk iterables are staged while being digested, then
        moved into place or discarded if the content already exists.

        :param str logical_path: Path of the file in the new version.
        :param mixed data: `str`, `bytes`, a readable file-like object or an iterable of
            chunks.

        :return: True if the version state changed.
        :rtype: bool
        """
        check_logical_path(logical_path)
        self._begin_operation("write")
        try:
            if isinstance(data, (str, bytes, bytearray, memoryview)):
                content = cast_to_bytes(data)
                digests = self._registry.digest(self._algorithms, content)
                return self._place(logical_path, digests, content=content)
            staged_path, digests = self._stage(data)
            return self._place(logical_path, digests, staged_path=staged_path)
        finally:
            self._end_operation()

    def _stage(self, data):
        staged_path = os.path.join(self._staging_path, uuid.uuid4().hex)
        target = self._store.open_write(staged_path)
        multi_digest = self._registry.create_multi_digest(self._algorithms, target)
        completed = False
        try:
            with target:
                for chunk in iter_chunks(data):
                    multi_digest.write(chunk)
            digests = multi_digest.digest()
            completed = True
            return staged_path, digests
        finally:
            if not completed:
                multi_digest.abort()
                self._store.remove(staged_path)

    def _place(self, logical_path, digests, content=None, staged_path=None):
        """Record content in the draft inventory and put it at its content path when new."""
        digest = digests[self._content_algorithm]
        fixity = {
            algorithm: value
            for algorithm, value in digests.items()
            if algorithm != self._content_algorithm
        }
        try:
            with self._inventory_lock:
                is_new = self._inventory.get_content_path(digest) is None
                changed = self._inventory.add(logical_path, digest, fixity)
                self._apply_actions()
                if is_new:
                    target = self._workspace_path(self._inventory.get_content_path(digest))
                    if staged_path is not None:
                        self._store.move(staged_path, target)
                        staged_path = None
                    else:
                        self._store.write(target, content)
                    logging.debug(
                        "Transaction - write: New content %s written for: %s",
                        digest,
                        logical_path,
                    )
                else:
                    logging.debug(
                        "Transaction - write: Content %s already exists, not written again"
                        + " for: %s",
                        digest,
                        logical_path,
                    )
        finally:
            if staged_path is not None:
                self._store.remove(staged_path)
        return changed

    def open_writer(self, logical_path):
        """Open a writer for incremental content of a logical path. The content is added to
        the version when the writer is closed; until then it counts as a pending operation.

        :rtype: ContentWriter
        """
        check_logical_path(logical_path)
        self._begin_operation("open_writer")
        try:
            staged_path = os.path.join(self._staging_path, uuid.uuid4().hex)
            target = self._store.open_write(staged_path)
            multi_digest = self._registry.create_multi_digest(self._algorithms, target)
        except Exception as err:
            self._end_operation()
            raise err
        writer = ContentWriter(self, logical_path, staged_path, target, multi_digest)
        with self._condition:
            self._writers.append(writer)
        return writer

    def _writer_finished(self, writer):
        with self._condition:
            if writer in self._writers:
                self._writers.remove(writer)
                self._pending -= 1
                self._condition.notify_all()

    def import_path(self, source, target=None):
        """Import a file, or a directory recursively, into the object.

        :param str source: File or directory in the store.
        :param str target: Logical path of the file, or logical directory the directory
            content goes to. Defaults to the base name of `source`; use "" to import the
            content of a directory to the logical root.

        :return: Number of files imported.
        :rtype: int

        :raises ImportFailed: If some files could not be imported. The other files of the
            directory are still added.
        """
        self._begin_operation("import_path")
        try:
            source_info = self._store.stat(source)
            if target is None:
                target = os.path.basename(os.path.normpath(source))
            target = target.strip("/")
            if not source_info.is_dir:
                with self._store.open_read(source) as stream:
                    self.write(target, stream)
                return 1

            def import_file(file_info):
                relative_path = os.path.relpath(file_info.path, source).replace(os.sep, "/")
                logical_path = target + "/" + relative_path if target else relative_path
                with self._store.open_read(file_info.path) as stream:
                    return self.write(logical_path, stream)

            results = parallelize(
                self._store.list(source), import_file, self._object.concurrency
            )
            errors = [
                (result.item.path, result.error)
                for result in results
                if result.error is not None
            ]
            if errors:
                exception_string = (
                    f"Transaction - import_path: Cannot add the files: {len(errors)} of"
                    + f" {len(results)} failed to import from {source} into object"
                    + f" '{self._inventory.id}'. "
                    + "; ".join(f"{path}: {error}" for path, error in errors)
                )
                logging.error(exception_string)
                raise ImportFailed(exception_string, errors=errors)
            logging.debug(
                "Transaction - import_path: Imported %s files from: %s", len(results), source
            )
            return len(results)
        finally:
            self._end_operation()

    # Logical path operations

    def _mutate(self, method, mutation):
        self._begin_operation(method)
        try:
            with self._inventory_lock:
                result = mutation()
                self._apply_actions()
            return result
        finally:
            self._end_operation()

    def copy(self, source, target):
        """Make `target` another name of the content of `source` (file or directory prefix).

        :return: Number of logical paths copied.
        :rtype: int
        """
        pairs = self._mutate("copy", lambda: self._inventory.copy(source, target))
        return len(pairs)

    def rename(self, source, target):
        """Rename a logical path or directory prefix. An existing target is overwritten.

        :return: Number of logical paths renamed.
        :rtype: int
        """
        pairs = self._mutate("rename", lambda: self._inventory.rename(source, target))
        return len(pairs)

    def remove(self, logical_path, purge=False):
        """Remove a logical path or directory prefix from the new version. With `purge`, the
        path and its content are removed from every version (see :meth:`purge`).

        :return: Number of logical paths removed.
        :rtype: int
        """
        if purge:
            return self._mutate("purge", lambda: self._inventory.purge(logical_path))
        return self._mutate("remove", lambda: self._inventory.delete(logical_path))

    def purge(self, logical_path):
        """Completely remove a logical path and its content from all versions of the object.
        This rewrites history, which is not part of regular OCFL versioning; the transaction
        must be committed with `force=True`. Inventories of earlier versions are not
        rewritten.

        :return: Number of (version, logical path) entries removed.
        :rtype: int
        """
        return self.remove(logical_path, purge=True)

    def reinstate(self, logical_path, version):
        """Bring back a logical path (or prefix) as it was in an earlier version.

        :return: Number of logical paths reinstated.
        :rtype: int
        """
        return self._mutate(
            "reinstate", lambda: self._inventory.reinstate(logical_path, version)
        )

    # Terminal operations

    def commit(self, message=None, user=None, force=False):
        """Turn the workspace into the next version of the object.

        Nothing is committed if the new state equals the previous version, unless `force`
        is set; the transaction is rolled back instead. On any failure the transaction is
        rolled back and the error is raised again.

        :param str message: Reason for the new version.
        :param dict user: `{"name": ..., "address": ...}` of who made the version.
        :param bool force: Commit even without changes. Required after a purge.

        :return: True if a new version was created.
        :rtype: bool
        """
        with self._condition:
            if self.state == TransactionState.COMMITTED:
                logging.debug("Transaction - commit: Already committed, nothing to do.")
                return False
            if self.state == TransactionState.ROLLED_BACK or self._closing:
                exception_string = (
                    "Transaction - commit: The transaction of object"
                    + f" '{self._inventory.id}' version {self.head} is"
                    + f" {self._describe_state()}."
                )
                logging.error(exception_string)
                raise TransactionAlreadyCommitted(exception_string)
            pending = self._pending
            if not pending:
                self._closing = True
        if pending:
            exception_string = (
                f"Transaction - commit: {pending} operation(s) of object"
                + f" '{self._inventory.id}' version {self.head} have not finished."
                + " The transaction has been rolled back."
            )
            logging.error(exception_string)
            self.rollback()
            raise UnfinishedOperationsDetected(exception_string)

        inventory = self._inventory
        if inventory.purged and not force:
            exception_string = (
                f"Transaction - commit: Object '{inventory.id}' has purged content; commit"
                + " with force=True to rewrite its history. The transaction has been"
                + " rolled back."
            )
            logging.error(exception_string)
            self._discard()
            raise PurgeRequiresForce(exception_string)
        if not force and not inventory.is_changed:
            logging.info(
                "Transaction - commit: No changes for object '%s', %s not created.",
                inventory.id,
                inventory.head,
            )
            self._discard()
            return False

        root = self._object.root
        version_path = os.path.join(root, inventory.head)
        root_inventory = os.path.join(root, ocfl_config.INVENTORY_NAME)
        sidecar_name = ocfl_config.INVENTORY_NAME + "." + inventory.digest_algorithm
        root_sidecar = os.path.join(root, sidecar_name)
        moved = False
        try:
            inventory.set_version_info(_utc_now(), message, user)
            self._store.remove(self._staging_path)
            self._remove_empty_directories(
                os.path.join(self.workspace_version_path, inventory.content_directory)
            )
            content = inventory.serialize()
            sidecar = (
                self._registry.digest(inventory.digest_algorithm, content)
                + " "
                + ocfl_config.INVENTORY_NAME
            )
            self._store.write(
                os.path.join(self.workspace_version_path, ocfl_config.INVENTORY_NAME),
                content,
            )
            self._store.write(
                os.path.join(self.workspace_version_path, sidecar_name), sidecar
            )
            if os.path.normpath(self.workspace_version_path) != os.path.normpath(
                version_path
            ):
                namaste_path, created_dir = self._object._ensure_namaste()
                if namaste_path:
                    self._rollback_paths.append(namaste_path)
                if created_dir:
                    self._created_dirs.append((root, created_dir))
                if self._store.exists(version_path):
                    exception_string = (
                        f"Transaction - commit: Version directory {version_path} already"
                        + f" exists in object '{inventory.id}'."
                    )
                    logging.error(exception_string)
                    raise UncommittedChangesDetected(exception_string)
                self._store.move(self.workspace_version_path, version_path)
                moved = True
            # Write the root inventory next to the old one, then swap
            self._store.copy(
                os.path.join(version_path, ocfl_config.INVENTORY_NAME),
                root_inventory + ".tmp",
            )
            self._store.copy(os.path.join(version_path, sidecar_name), root_sidecar + ".tmp")
            self._store.move(root_inventory + ".tmp", root_inventory)
            self._store.move(root_sidecar + ".tmp", root_sidecar)
        except Exception as err:
            exception_string = (
                f"Transaction - commit: Failed to commit {inventory.head} of object"
                + f" '{inventory.id}' at {root}. Rolling back. Unexpected error: {err}"
            )
            logging.error(exception_string)
            if moved:
                self._store.remove(version_path)
            self._store.remove(root_inventory + ".tmp")
            self._store.remove(root_sidecar + ".tmp")
            self._discard()
            raise err

        for content_path in self._deferred_removals:
            self._store.remove(os.path.join(root, content_path))
        self._remove_created_dirs()
        with self._condition:
            self.state = TransactionState.COMMITTED
        self._object._set_inventory(Inventory(inventory.to_dict()))
        logging.info(
            "Transaction - commit: Committed %s of object '%s' at %s",
            inventory.head,
            inventory.id,
            root,
        )
        return True

    def rollback(self):
        """Discard the transaction: wait for running operations, abort open writers and
        remove everything the transaction created."""
        with self._condition:
            if self.state == TransactionState.ROLLED_BACK:
                return
            if self.state == TransactionState.COMMITTED:
                exception_string = (
                    f"Transaction - rollback: {self.head} of object '{self._inventory.id}'"
                    + " has already been committed."
                )
                logging.error(exception_string)
                raise TransactionAlreadyCommitted(exception_string)
            self._closing = True
            writers = list(self._writers)
        for writer in writers:
            writer.abort()
        with self._condition:
            while self._pending > 0:
                logging.debug(
                    "Transaction - rollback: Waiting for %s pending operation(s).",
                    self._pending,
                )
                self._condition.wait()
        self._discard()

    def _discard(self):
        for path in self._rollback_paths:
            self._store.remove(path)
        self._remove_created_dirs()
        with self._condition:
            self.state = TransactionState.ROLLED_BACK
        logging.info(
            "Transaction - rollback: Rolled back %s of object '%s'",
            self.head,
            self._inventory.id,
        )

    def _remove_empty_directories(self, directory):
        """Remove empty directories below `directory`, and `directory` itself when empty.

        :return: True if `directory` was empty and has been removed.
        :rtype: bool
        """
        try:
            entries = list(self._store.opendir(directory))
        except FileNotFoundError:
            return False
        empty = True
        for entry in entries:
            if not entry.is_dir or not self._remove_empty_directories(entry.path):
                empty = False
        if empty:
            self._store.remove(directory)
        return empty

    def _remove_created_dirs(self):
        """Remove the directories created for this transaction that are empty again."""
        for directory, top in self._created_dirs:
            removed = remove_empty_dirs(self._store, directory, top)
            if removed:
                logging.debug(
                    "Transaction - _remove_created_dirs: Removed %s empty directory(ies)"
                    + " up to: %s",
                    removed,
                    top,
                )


class ContentWriter(object):
    """Incremental writer returned by `Transaction.open_writer`.

    Bytes written are staged and digested in one pass. Closing the writer adds the content
    to the version; aborting it discards the content. It can be used as a context manager,
    which closes it on normal exit and aborts it on error.
    """

    def __init__(self, transaction, logical_path, staged_path, target, multi_digest):
        self.logical_path = logical_path
        self.closed = False
        self.changed = None
        self._transaction = transaction
        self._staged_path = staged_path
        self._target = target
        self._multi_digest = multi_digest

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        if exc_type is not None:
            self.abort()
        else:
            self.close()
        return False

    def write(self, data):
        if self.closed:
            raise ValueError(f"ContentWriter - write: Writer for {self.logical_path} is closed.")
        return self._multi_digest.write(data)

    def close(self):
        """Finish the content and add it to the version.

        :return: True if the version state changed.
        :rtype: bool
        """
        if self.closed:
            return self.changed
        self.closed = True
        try:
            self._target.close()
            digests = self._multi_digest.digest()
            self.changed = self._transaction._place(
                self.logical_path, digests, staged_path=self._staged_path
            )
        except Exception as err:
            self._multi_digest.abort()
            self._transaction._store.remove(self._staged_path)
            raise err
        finally:
            self._transaction._writer_finished(self)
        return self.changed

    def abort(self):
        """Discard the content written so far."""
        if self.closed:
            return
        self.closed = True
        try:
            self._multi_digest.abort()
            self._target.close()
            self._transaction._store.remove(self._staged_path)
        finally:
            self._transaction._writer_finished(self)
