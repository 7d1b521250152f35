"""OcflStore is a versioned object store following the Oxford Common File Layout (OCFL).

An OCFL object keeps every version of a set of files on plain storage, described by a
JSON inventory. Some properties:

- Content is addressed by its digest and stored once per object, whatever the number of
    logical paths or versions referring to it
- Committed versions are immutable; a new version is staged in a workspace and becomes
    visible only when the root inventory is replaced
- Every inventory is verified against its digest sidecar when read
- Objects live in a storage root, at the path a storage layout extension derives from
    their identifier
- Storage goes through a small store interface, so backends other than the local
    filesystem can be plugged in
"""

from ocflstore.ocflobject import OcflFile, OcflObject, UpdateMode
from ocflstore.storage import OcflStorage
from ocflstore.store import OcflStore, StoreFactory
from ocflstore.transaction import Transaction

__all__ = (
    "OcflFile",
    "OcflObject",
    "OcflStorage",
    "OcflStore",
    "StoreFactory",
    "Transaction",
    "UpdateMode",
)
__version__ = "1.0.0"
