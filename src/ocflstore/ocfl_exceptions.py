"""OcflStore custom exception module."""


class UnsupportedAlgorithm(Exception):
    """Custom exception thrown when a digest algorithm is not known to the digest registry,
    or when an algorithm that cannot address content is requested as a content algorithm."""

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = errors


class InvalidLayoutConfiguration(Exception):
    """Custom exception thrown when a storage layout extension is unknown or is configured
    with parameters it cannot work with (bad digest algorithm, impossible tuple sizing)."""

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = errors


class IncompatibleObjectId(Exception):
    """Custom exception thrown when an object identifier cannot be mapped to a path by the
    active storage layout."""

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = errors


class InventoryCorrupted(Exception):
    """Custom exception thrown when the digest recorded in an inventory sidecar does not match
    the digest of the inventory file, or the sidecar is missing."""

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = errors


class ContentNotFound(Exception):
    """Custom exception thrown when a logical path, digest or content path cannot be resolved
    to content in an object."""

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = errors


class ContentPathConflict(Exception):
    """Custom exception thrown when new content would have to be written to a content path that
    still holds other content of the same version."""

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = errors


class UncommittedChangesDetected(Exception):
    """Custom exception thrown when a transaction is opened while a workspace for the next
    version already exists. Either another writer is updating the object or a previous update
    attempt failed and was never cleaned up."""

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = errors


class TransactionAlreadyCommitted(Exception):
    """Custom exception thrown when a transaction that has already been committed or rolled
    back is used again."""

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = errors


class UnfinishedOperationsDetected(Exception):
    """Custom exception thrown when a transaction is committed while some of its operations
    are still running or some of its content writers are still open. The transaction is rolled
    back before this is raised."""

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = errors


class PurgeRequiresForce(Exception):
    """Custom exception thrown when a transaction containing a purge is committed without
    `force`. Purging rewrites history, so it must be requested explicitly."""

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = errors


class NestedObjectNotAllowed(Exception):
    """Custom exception thrown when an object would be created inside the root of another
    object."""

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = errors


class NonEmptyDirectoryConflict(Exception):
    """Custom exception thrown when a storage root is created in a directory that already
    has content."""

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = errors


class NotAnOcflObjectOrOccupiedDirectory(Exception):
    """Custom exception thrown when writing to an object root that has no valid object
    declaration but is not empty either."""

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = errors


class ImportFailed(Exception):
    """Custom exception thrown when some files of a bulk import could not be added. `errors`
    holds a list of (source path, exception) pairs for every failed file."""

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = errors
