"""Digest registry used for content addressing and fixity.

Hash instances are pooled per algorithm. A pooled `Hasher` is busy from the moment it is
handed out until its digest is finalized, and only then goes back to the free list. When
all instances of an algorithm are busy a new one is created, so concurrent digests of the
same algorithm never share state.
"""

import hashlib
import logging
import threading
import zlib
from ocflstore import ocfl_config
from ocflstore.ocfl_exceptions import UnsupportedAlgorithm
from ocflstore.utils import cast_to_bytes, iter_chunks


class SizeHash(object):
    """hashlib-like object whose digest is the decimal number of bytes seen."""

    name = "size"

    def __init__(self):
        self._size = 0

    def update(self, data):
        self._size += len(data)

    def hexdigest(self):
        return str(self._size)

    def copy(self):
        clone = SizeHash()
        clone._size = self._size
        return clone


class Crc32Hash(object):
    """hashlib-like object computing a CRC-32 as 8 lowercase hex characters."""

    name = "crc32"

    def __init__(self):
        self._crc = 0

    def update(self, data):
        self._crc = zlib.crc32(data, self._crc)

    def hexdigest(self):
        return f"{self._crc & 0xFFFFFFFF:08x}"

    def copy(self):
        clone = Crc32Hash()
        clone._crc = self._crc
        return clone


def _blake2b(digest_size):
    def factory():
        return hashlib.blake2b(digest_size=digest_size)

    return factory


def _sha512_256():
    return hashlib.new("sha512_256")


# Algorithm name (as written in OCFL inventories) -> hashlib-like factory
ALGORITHM_FACTORIES = {
    "sha256": hashlib.sha256,
    "sha512": hashlib.sha512,
    "md5": hashlib.md5,
    "sha1": hashlib.sha1,
    "blake2b-512": _blake2b(64),
    "blake2b-160": _blake2b(20),
    "blake2b-256": _blake2b(32),
    "blake2b-384": _blake2b(48),
    "sha512/256": _sha512_256,
    "size": SizeHash,
    "crc32": Crc32Hash,
}


class Hasher(object):
    """A pooled hash instance handed out by `DigestRegistry.create_hasher`.

    Call :meth:`update` any number of times, then :meth:`hexdigest` exactly once. After the
    digest is returned the instance belongs to the pool again and must not be used.
    """

    def __init__(self, algorithm, registry):
        self.algorithm = algorithm
        self.busy = False
        self._registry = registry
        self._hash = None

    def _acquire(self, prototype):
        self._hash = prototype.copy()
        self.busy = True

    def update(self, data):
        if not self.busy:
            raise ValueError(
                f"Hasher - update: {self.algorithm} hasher has already been finalized."
            )
        self._hash.update(cast_to_bytes(data))
        return self

    def hexdigest(self):
        if not self.busy:
            raise ValueError(
                f"Hasher - hexdigest: {self.algorithm} hasher has already been finalized."
            )
        hex_digest = self._hash.hexdigest()
        self.release()
        return hex_digest

    def release(self):
        """Return the instance to the pool without computing a digest."""
        if self.busy:
            self._hash = None
            self._registry._release(self)


class MultiDigest(object):
    """Writable object computing several digests of the same bytes in a single pass.

    Everything written is fed to one pooled hasher per algorithm and, when a `target`
    file-like object is given, forwarded to it unchanged.

    :param DigestRegistry registry: Registry providing the hashers.
    :param list algorithms: Algorithm names.
    :param target: Optional writable file-like object.
    """

    def __init__(self, registry, algorithms, target=None):
        self.algorithms = []
        for algorithm in algorithms:
            cleaned = registry.clean_algorithm(algorithm)
            if cleaned not in self.algorithms:
                self.algorithms.append(cleaned)
        self._hashers = [registry.create_hasher(algo) for algo in self.algorithms]
        self._target = target
        self._digests = None
        self.size = 0

    def write(self, data):
        if self._digests is not None:
            raise ValueError("MultiDigest - write: digests have already been computed.")
        data = cast_to_bytes(data)
        if self._target is not None:
            self._target.write(data)
        for hasher in self._hashers:
            hasher.update(data)
        self.size += len(data)
        return len(data)

    update = write

    def digest(self):
        """Finalize the hashers (on first call) and return `{algorithm: hex digest}`.

        :rtype: dict
        """
        if self._digests is None:
            self._digests = {
                hasher.algorithm: hasher.hexdigest() for hasher in self._hashers
            }
        return dict(self._digests)

    def abort(self):
        """Release all hashers without computing digests."""
        if self._digests is None:
            for hasher in self._hashers:
                hasher.release()
            self._digests = {}


class DigestRegistry(object):
    """Registry of digest algorithms owning a pool of reusable hash instances.

    One registry is normally created per `OcflStorage` and shared by all of its objects and
    its storage layout.
    """

    def __init__(self):
        self._factories = dict(ALGORITHM_FACTORIES)
        self._prototypes = {}
        self._free = {}
        self._allocated = {}
        self._lock = threading.Lock()

    @property
    def algorithms(self):
        """Sorted list of registered algorithm names."""
        return sorted(self._factories)

    def register(self, algorithm, factory):
        """Register an algorithm.

        :param str algorithm: Name as written in inventories.
        :param callable factory: Returns a fresh object with `update`, `hexdigest` and `copy`.
        """
        with self._lock:
            name = algorithm.lower()
            self._factories[name] = factory
            self._prototypes.pop(name, None)
            self._free.pop(name, None)
        logging.debug("DigestRegistry - register: Registered algorithm: %s", name)

    def is_supported(self, algorithm):
        try:
            self.clean_algorithm(algorithm)
            return True
        except UnsupportedAlgorithm:
            return False

    def clean_algorithm(self, algorithm_string):
        """Format an algorithm name and ensure that it is registered. Besides the OCFL
        names ('sha512', 'blake2b-512'), hyphenated spellings such as 'SHA-256' are accepted.

        :param str algorithm_string: Algorithm to validate.

        :return: Registered algorithm name.
        :rtype: str
        """
        if isinstance(algorithm_string, str):
            cleaned_string = algorithm_string.strip().lower()
            if cleaned_string in self._factories:
                return cleaned_string
            compact_string = cleaned_string.replace("-", "").replace("_", "")
            if compact_string in self._factories:
                return compact_string
        exception_string = (
            f"DigestRegistry - clean_algorithm: Algorithm not supported: {algorithm_string}"
        )
        logging.error(exception_string)
        raise UnsupportedAlgorithm(exception_string)

    def check_content_algorithm(self, algorithm_string):
        """Return the cleaned algorithm name if it may be used to address content
        (sha256 or sha512)."""
        cleaned_string = self.clean_algorithm(algorithm_string)
        if cleaned_string not in ocfl_config.CONTENT_ALGO_LIST:
            exception_string = (
                "DigestRegistry - check_content_algorithm: Invalid digest algorithm:"
                + f" {algorithm_string}. Must be one of:"
                + f" {', '.join(ocfl_config.CONTENT_ALGO_LIST)}"
            )
            logging.error(exception_string)
            raise UnsupportedAlgorithm(exception_string)
        return cleaned_string

    def check_fixity_algorithm(self, algorithm_string):
        """Return the cleaned algorithm name if it is a known OCFL fixity algorithm."""
        cleaned_string = self.clean_algorithm(algorithm_string)
        if cleaned_string not in ocfl_config.FIXITY_ALGO_LIST:
            exception_string = (
                "DigestRegistry - check_fixity_algorithm: Invalid fixity algorithm:"
                + f" {algorithm_string}. Must be one of:"
                + f" {', '.join(ocfl_config.FIXITY_ALGO_LIST)}"
            )
            logging.error(exception_string)
            raise UnsupportedAlgorithm(exception_string)
        return cleaned_string

    def create_hasher(self, algorithm):
        """Get a free pooled hasher for `algorithm`, creating one when all are busy.

        :rtype: Hasher
        """
        name = self.clean_algorithm(algorithm)
        with self._lock:
            prototype = self._prototypes.get(name)
            if prototype is None:
                prototype = self._factories[name]()
                self._prototypes[name] = prototype
            free_list = self._free.setdefault(name, [])
            if free_list:
                hasher = free_list.pop()
            else:
                hasher = Hasher(name, self)
                self._allocated[name] = self._allocated.get(name, 0) + 1
            hasher._acquire(prototype)
        return hasher

    def _release(self, hasher):
        with self._lock:
            hasher.busy = False
            self._free.setdefault(hasher.algorithm, []).append(hasher)

    def pool_size(self, algorithm):
        """Return how many hasher instances have been allocated for an algorithm."""
        return self._allocated.get(self.clean_algorithm(algorithm), 0)

    def digest(self, algorithms, data):
        """Digest `data` with one or several algorithms.

        :param mixed algorithms: An algorithm name or a list of names.
        :param mixed data: `bytes`, `str` (utf-8), a readable file-like object or an
            iterable of chunks.

        :return: The hex digest when a single name is given, otherwise a dictionary of
            algorithm names and hex digests.
        :rtype: str or dict
        """
        single = isinstance(algorithms, str)
        multi_digest = self.create_multi_digest(
            [algorithms] if single else algorithms
        )
        try:
            for chunk in iter_chunks(data):
                multi_digest.write(chunk)
        except Exception:
            multi_digest.abort()
            raise
        hex_digests = multi_digest.digest()
        if single:
            return hex_digests[multi_digest.algorithms[0]]
        return hex_digests

    def create_multi_digest(self, algorithms, target=None):
        """Create a `MultiDigest` for incremental hashing of a byte stream.

        :rtype: MultiDigest
        """
        return MultiDigest(self, algorithms, target)

    def hex_length(self, algorithm):
        """Return the number of characters in a hex digest of `algorithm`."""
        return len(self.digest(algorithm, b""))
