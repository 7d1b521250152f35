"""Default configuration variables for OcflStore"""

############### OCFL Versions ###############
# Version written into new storage roots and objects
OCFL_VERSION = "1.1"
# Versions recognised when reading NAMASTE declarations, newest first
OCFL_VERSIONS = ["1.1", "1.0"]

############### NAMASTE Declarations ###############
# Object root:  0=ocfl_object_1.1  containing "ocfl_object_1.1\n"
# Storage root: 0=ocfl_1.1         containing "ocfl_1.1\n"
NAMASTE_T = "0="
NAMASTE_PREFIX_OBJECT = "ocfl_object_"
NAMASTE_PREFIX_STORAGE = "ocfl_"

############### File and Directory Names ###############
INVENTORY_NAME = "inventory.json"
OCFL_LAYOUT = "ocfl_layout.json"
EXTENSIONS_DIR = "extensions"
EXTENSION_CONFIG = "config.json"
# Name of the per-version content subfolder
CONTENT_DIRECTORY = "content"
# Scratch folder inside a workspace version directory for streamed content
STAGING_DIR = ".staging"
# Inventory type URI, formatted with the OCFL version
INVENTORY_TYPE = "https://ocfl.io/{0}/spec/#inventory"

############### Hash Algorithms ###############
# Digest algorithm used for content addressing unless an object specifies otherwise
DIGEST_ALGORITHM = "sha512"
# Only these may address content in a manifest
CONTENT_ALGO_LIST = ["sha256", "sha512"]
# Algorithms that may be recorded in the fixity block
FIXITY_ALGO_LIST = [
    "sha256",
    "sha512",
    "md5",
    "sha1",
    "blake2b-512",
    "blake2b-160",
    "blake2b-256",
    "blake2b-384",
    "sha512/256",
    "size",
    "crc32",
]

############### Storage Layout ###############
# Layout extension used when a storage root is created without one
STORAGE_LAYOUT = "0004-hashed-n-tuple-storage-layout"
# Example (sha256, tupleSize=3, numberOfTuples=3):
#    object-01
#    └── 3c0/ff4/240/3c0ff4240c1e116dba14c7627f2319b58aa3d77606d0d90dfc6161608ac987d4

############### Concurrency ###############
# Maximum number of worker threads used for bulk imports
CONCURRENCY = 10

############### Backend ###############
STORE_MODULE = "ocflstore.filestore"
STORE_CLASS = "FileSystemStore"
