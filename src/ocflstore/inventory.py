"""Inventory model of an OCFL object.

An inventory records the manifest (digest -> content paths), the state of every version
(digest -> logical paths) and optional fixity information. `Inventory` is a read-only view
over a committed inventory. `MutableInventory` is the draft of a new version: it is created
by cloning the latest inventory and is only changed through its mutation methods, which keep
the per-version logical path index in step with the state.
"""

import copy
import functools
import json
import logging
import re
from collections import namedtuple
from ocflstore import ocfl_config
from ocflstore.ocfl_exceptions import ContentNotFound, ContentPathConflict
from ocflstore.utils import check_logical_path


@functools.total_ordering
class VersionNumber(object):
    """An OCFL version name such as `v1`, `v2` or, zero-padded, `v001`.

    :param int number: Version sequence number, starting at 1.
    :param int padding: Number of digits of a zero-padded name, 0 for no padding.
    """

    _pattern = re.compile(r"^v(\d+)$")

    def __init__(self, number=1, padding=0):
        if isinstance(number, bool) or not isinstance(number, int) or number < 1:
            raise ValueError(f"VersionNumber: invalid version number: {number}")
        if padding and len(str(number)) > padding:
            raise ValueError(
                f"VersionNumber: version {number} exceeds the zero-padded width {padding}"
            )
        self.number = number
        self.padding = padding

    @classmethod
    def from_string(cls, name):
        """Parse a version name. A leading zero fixes the padding width.

        :param str name: e.g. "v3" or "v003".
        :rtype: VersionNumber
        """
        match = cls._pattern.match(name or "")
        if not match:
            raise ValueError(f"VersionNumber: invalid version name: {name}")
        digits = match.group(1)
        padding = len(digits) if digits.startswith("0") else 0
        return cls(int(digits), padding)

    def next(self):
        return VersionNumber(self.number + 1, self.padding)

    def previous(self):
        """Return the previous version, or `None` for the first version."""
        if self.number == 1:
            return None
        return VersionNumber(self.number - 1, self.padding)

    def __str__(self):
        return "v" + str(self.number).zfill(self.padding)

    def __repr__(self):
        return f"VersionNumber('{self}')"

    def __eq__(self, other):
        if isinstance(other, str):
            other = VersionNumber.from_string(other)
        return isinstance(other, VersionNumber) and self.number == other.number

    def __lt__(self, other):
        if isinstance(other, str):
            other = VersionNumber.from_string(other)
        return self.number < other.number

    def __hash__(self):
        return hash(self.number)


class FileRef(
    namedtuple("FileRef", ["logical_path", "version", "digest", "content_path", "fixity"])
):
    """Reference to a file of an object.

    :param str logical_path: Path of the file in the version state.
    :param str version: Version the reference was resolved in.
    :param str digest: Content digest.
    :param str content_path: Path of the content relative to the object root.
    :param dict fixity: Fixity algorithms and digests recorded for the content (optional).
    """

    # Default value to prevent dangerous default value
    def __new__(cls, logical_path, version, digest, content_path, fixity=None):
        return super(FileRef, cls).__new__(
            cls, logical_path, version, digest, content_path, fixity or {}
        )


def _version_sort_key(name):
    try:
        return VersionNumber.from_string(name).number
    except ValueError:
        return 0


class Inventory(object):
    """Read-only view of an object inventory.

    :param dict data: Parsed inventory. `id`, `type` and `digestAlgorithm` are required.
    """

    required_keys = ["id", "type", "digestAlgorithm"]

    def __init__(self, data):
        if not isinstance(data, dict):
            raise ValueError("Inventory: Invalid argument - expected a dictionary.")
        for key in self.required_keys:
            if not data.get(key):
                exception_string = (
                    "Inventory: Inventory must have an id, digestAlgorithm and type."
                    + f" Missing: {key}."
                )
                logging.error(exception_string)
                raise ValueError(exception_string)
        data = copy.deepcopy(data)
        data.setdefault("manifest", {})
        data.setdefault("versions", {})
        data.setdefault("fixity", {})
        self._data = data
        self._index = {}
        self._content_index = None
        self._fixity_index = None

    @classmethod
    def from_json(cls, text):
        """Create an inventory from its JSON text (str or utf-8 bytes)."""
        if isinstance(text, bytes):
            text = text.decode("utf-8")
        return cls(json.loads(text))

    # Properties

    @property
    def id(self):
        return self._data["id"]

    @property
    def type(self):
        return self._data["type"]

    @property
    def digest_algorithm(self):
        return self._data["digestAlgorithm"]

    @property
    def head(self):
        return self._data.get("head")

    @property
    def content_directory(self):
        return self._data.get("contentDirectory") or ocfl_config.CONTENT_DIRECTORY

    @property
    def manifest(self):
        return self._data["manifest"]

    @property
    def versions(self):
        return self._data["versions"]

    @property
    def fixity(self):
        return self._data["fixity"]

    # Serialization

    def to_dict(self):
        """Return a copy of the inventory in OCFL key order. `contentDirectory` is left out
        when it is the default and `fixity` when it is empty.

        :rtype: dict
        """
        data = self._data
        result = {
            "id": data["id"],
            "type": data["type"],
            "digestAlgorithm": data["digestAlgorithm"],
            "head": data.get("head"),
        }
        if self.content_directory != ocfl_config.CONTENT_DIRECTORY:
            result["contentDirectory"] = self.content_directory
        result["manifest"] = copy.deepcopy(data["manifest"])
        versions = {}
        for name in self.version_names():
            version = data["versions"][name]
            entry = {"created": version.get("created")}
            for key in ("message", "user"):
                if version.get(key) is not None:
                    entry[key] = copy.deepcopy(version[key])
            entry["state"] = copy.deepcopy(version.get("state", {}))
            versions[name] = entry
        result["versions"] = versions
        if data["fixity"]:
            result["fixity"] = copy.deepcopy(data["fixity"])
        return result

    def to_json(self):
        """Return the inventory as JSON text with 2-space indentation."""
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False)

    def serialize(self):
        """Return the bytes written to `inventory.json`, the input of the sidecar digest."""
        return self.to_json().encode("utf-8")

    # Versions

    def version_names(self):
        """Return the version names in sequence order."""
        return sorted(self._data["versions"], key=_version_sort_key)

    def get_version(self, version=None):
        """Return a copy of a version entry (created, message, user, state)."""
        return copy.deepcopy(self._get_version_entry(version))

    @property
    def previous_version(self):
        """Name of the version before `head`, or `None`."""
        if not self.head:
            return None
        previous = VersionNumber.from_string(self.head).previous()
        if previous is None or str(previous) not in self._data["versions"]:
            return None
        return str(previous)

    def _get_version_entry(self, version=None):
        version = version or self.head
        entry = self._data["versions"].get(version)
        if entry is None:
            exception_string = (
                f"Inventory - Version '{version}' not found in object '{self.id}'."
            )
            logging.error(exception_string)
            raise ContentNotFound(exception_string)
        return entry

    # Indexes

    def _get_index(self, version=None):
        """Return the logical path -> digest index of a version, building it on first use."""
        version = version or self.head
        index = self._index.get(version)
        if index is None:
            state = self._get_version_entry(version).get("state", {})
            index = {}
            for digest, logical_paths in state.items():
                for logical_path in logical_paths:
                    index[logical_path] = digest
            self._index[version] = index
        return index

    def _get_content_index(self):
        if self._content_index is None:
            content_index = {}
            for digest, content_paths in self._data["manifest"].items():
                for content_path in content_paths:
                    content_index[content_path] = digest
            self._content_index = content_index
        return self._content_index

    def _get_fixity_index(self):
        if self._fixity_index is None:
            fixity_index = {}
            for algorithm, block in self._data["fixity"].items():
                for value, content_paths in block.items():
                    for content_path in content_paths:
                        fixity_index.setdefault(content_path, {})[algorithm] = value
            self._fixity_index = fixity_index
        return self._fixity_index

    # Lookups

    def get_digest(self, logical_path, version=None):
        """Return the digest of a logical path in a version (default head), or `None`."""
        return self._get_index(version).get(logical_path)

    def get_content_path(self, digest):
        """Return the first content path of a digest, or `None` if it is not in the
        manifest."""
        content_paths = self._data["manifest"].get(digest)
        if not content_paths:
            return None
        return content_paths[0]

    def get_fixity(self, content_path):
        """Return `{algorithm: digest}` recorded in the fixity block for a content path."""
        return dict(self._get_fixity_index().get(content_path, {}))

    def logical_paths(self, version=None):
        return sorted(self._get_index(version))

    def count(self, version=None):
        """Return the number of logical paths in a version."""
        return len(self._get_index(version))

    def files(self, version=None):
        """Iterate over the files of a version (default head) in logical path order.

        :return: Generator of `FileRef`.
        """
        version = version or self.head
        index = self._get_index(version)
        for logical_path in sorted(index):
            yield self._file_ref(logical_path, version, index[logical_path])

    def _file_ref(self, logical_path, version, digest):
        content_path = self.get_content_path(digest)
        return FileRef(
            logical_path,
            version,
            digest,
            content_path,
            self.get_fixity(content_path) if content_path else None,
        )

    def get_file(self, logical_path=None, version=None, digest=None, content_path=None):
        """Resolve a file by logical path (and version), by digest or by content path.

        :return: The file reference, or `None` if it cannot be resolved.
        :rtype: FileRef
        """
        if content_path:
            return self.get_file_by_content_path(content_path)
        if digest:
            return self.get_file_by_digest(digest, version)
        if logical_path is None:
            raise ValueError(
                "Inventory - get_file: one of logical_path, digest or content_path is required."
            )
        version = version or self.head
        if version not in self._data["versions"]:
            return None
        file_digest = self.get_digest(logical_path, version)
        if file_digest is None or self.get_content_path(file_digest) is None:
            return None
        return self._file_ref(logical_path, version, file_digest)

    def get_file_by_digest(self, digest, version=None):
        content_path = self.get_content_path(digest)
        if content_path is None:
            return None
        version = version or self.head
        logical_path = None
        if version in self._data["versions"]:
            logical_paths = self._get_version_entry(version)["state"].get(digest)
            if logical_paths:
                logical_path = sorted(logical_paths)[0]
        return FileRef(
            logical_path, version, digest, content_path, self.get_fixity(content_path)
        )

    def get_file_by_content_path(self, content_path):
        digest = self._get_content_index().get(content_path)
        if digest is None:
            return None
        return self.get_file_by_digest(digest, content_path.split("/", 1)[0])

    # Comparison

    def diff_state(self, version_a, version_b):
        """Compare the logical path -> digest mappings of two versions.

        :return: tuple - (only_in_a, only_in_b), dictionaries of logical paths and digests
            present in one version but not with the same digest in the other.
        :rtype: tuple
        """
        index_a = self._get_index(version_a)
        index_b = self._get_index(version_b)
        only_in_a = {
            path: digest for path, digest in index_a.items() if index_b.get(path) != digest
        }
        only_in_b = {
            path: digest for path, digest in index_b.items() if index_a.get(path) != digest
        }
        return only_in_a, only_in_b

    @property
    def is_changed(self):
        """True if the head state differs from the previous version, or if there is no
        previous version."""
        previous = self.previous_version
        if previous is None:
            return True
        only_in_previous, only_in_head = self.diff_state(previous, self.head)
        return bool(only_in_previous or only_in_head)


class MutableInventory(Inventory):
    """Draft inventory of a new version.

    Mutations only change the in-memory inventory. Whenever a change requires a file to be
    removed from, or moved within, the draft version's content, a file action is queued:
    ``("remove", content_path)`` or ``("move", old_content_path, new_content_path)``.
    The owner of the draft applies them after calling :meth:`drain_actions`.

    Content added in this version that is no longer referenced by the head state is pruned
    from the manifest and the fixity block right away. Content of committed versions is only
    ever dropped by :meth:`purge`.
    """

    def __init__(self, data):
        super().__init__(data)
        if not self.head or self.head not in self._data["versions"]:
            raise ValueError("MutableInventory: head version entry is required.")
        self._actions = []
        self.purged = False
        self._get_content_index()

    @classmethod
    def new_version(cls, data, clean_state=False):
        """Create the draft of the next version.

        :param mixed data: The latest `Inventory` or its dictionary form; a dictionary
            without `head` starts a new object at `v1`.
        :param bool clean_state: Start from an empty state instead of a copy of the
            previous state.

        :rtype: MutableInventory
        """
        if isinstance(data, Inventory):
            data = data.to_dict()
        data = copy.deepcopy(data)
        versions = data.setdefault("versions", {})
        head = data.get("head")
        if head and head in versions:
            state = {} if clean_state else copy.deepcopy(versions[head].get("state", {}))
            new_head = str(VersionNumber.from_string(head).next())
        else:
            state = {}
            new_head = str(VersionNumber())
        versions[new_head] = {"created": None, "state": state}
        data["head"] = new_head
        logging.debug(
            "MutableInventory - new_version: Created draft %s for object: %s",
            new_head,
            data.get("id"),
        )
        return cls(data)

    @property
    def head_prefix(self):
        """Prefix of all content paths of the draft version, e.g. 'v3/'."""
        return self.head + "/"

    def content_path_for(self, logical_path):
        """Return the content path new content for `logical_path` is written to."""
        return f"{self.head}/{self.content_directory}/{logical_path}"

    def is_draft_content(self, content_path):
        return content_path.startswith(self.head_prefix)

    def drain_actions(self):
        """Return and clear the queued file actions."""
        actions, self._actions = self._actions, []
        return actions

    # Mutations

    def add(self, logical_path, digest, fixity=None):
        """Map a logical path to a digest in the head state.

        If the digest is already in the state, the path becomes another alias of it. If the
        path was mapped to a different digest, that mapping is replaced. If the digest is
        not in the manifest yet, a manifest entry pointing at this version's content path for
        the logical path is added.

        :param str logical_path: Logical path.
        :param str digest: Content digest.
        :param dict fixity: Additional `{algorithm: digest}` to record (optional).

        :return: True if the state changed.
        :rtype: bool
        """
        check_logical_path(logical_path)
        index = self._get_index()
        previous_digest = index.get(logical_path)
        if previous_digest == digest:
            self._add_fixity(self.get_content_path(digest), fixity)
            return False
        if previous_digest is not None:
            self._remove_from_state(logical_path)
            self._prune(previous_digest)
        if digest not in self.manifest:
            content_path = self.content_path_for(logical_path)
            self._claim_content_path(content_path)
            self.manifest[digest] = [content_path]
            self._content_index[content_path] = digest
        self._add_to_state(logical_path, digest)
        self._add_fixity(self.get_content_path(digest), fixity)
        return True

    def rename(self, source, target):
        """Rename a logical path, or every path under a directory-like prefix. An existing
        target is overwritten. A missing source is ignored.

        All sources are taken out of the state before any target is written, so a prefix can
        be renamed into its own subtree (``rename("d", "d/d")``) without one renamed path
        overwriting another source.

        :return: The (source, target) pairs that were renamed.
        :rtype: list
        """
        pairs = [
            (source_path, target_path)
            for source_path, target_path in self._expand_pairs(source, target)
            if source_path != target_path
        ]
        for _, target_path in pairs:
            check_logical_path(target_path, "target")
        index = self._get_index()
        moves = [
            (self._remove_from_state(source_path), source_path, target_path)
            for source_path, target_path in pairs
            if source_path in index
        ]
        overwritten_digests = []
        for digest, _, target_path in moves:
            overwritten = index.get(target_path)
            if overwritten is not None:
                self._remove_from_state(target_path)
                if overwritten != digest:
                    overwritten_digests.append(overwritten)
            self._add_to_state(target_path, digest)
        for overwritten in overwritten_digests:
            self._prune(overwritten)
        # A content path may only free up once a later path has moved out of its way
        pending = moves
        while pending:
            remaining = [move for move in pending if not self._follow_rename(*move)]
            if len(remaining) == len(pending):
                break
            pending = remaining
        return [(source_path, target_path) for _, source_path, target_path in moves]

    def copy(self, source, target):
        """Alias a logical path (or every path under a prefix) under a new path, keeping the
        source. An existing target is overwritten.

        :return: The (source, target) pairs that were copied.
        :rtype: list
        """
        if not target or not target.strip("/"):
            exception_string = "MutableInventory - copy: Target logical path cannot be empty."
            logging.error(exception_string)
            raise ValueError(exception_string)
        pairs = self._expand_pairs(source, target)
        if not pairs:
            exception_string = (
                f"MutableInventory - copy: Source logical path '{source}' does not exist"
                + f" in object '{self.id}'."
            )
            logging.error(exception_string)
            raise ContentNotFound(exception_string)
        for source_path, target_path in pairs:
            check_logical_path(target_path, "target")
            self._set(target_path, self._get_index()[source_path])
        return pairs

    def delete(self, logical_path, version=None):
        """Remove a logical path, or every path under a prefix, from a version's state.
        Digests stay in the manifest. Deleting from a committed version rewrites history and
        marks the draft as purged.

        :return: Number of logical paths removed, 0 if nothing matched.
        :rtype: int
        """
        version = version or self.head
        paths = self._expand(logical_path, self._get_index(version))
        for path in paths:
            digest = self._remove_from_state(path, version)
            if version == self.head:
                self._prune(digest)
        if paths and version != self.head:
            self.purged = True
        return len(paths)

    def reinstate(self, logical_path, version):
        """Copy the mapping of a logical path (or prefix) as it was in `version` into the
        head state, replacing the current mapping.

        :return: Number of logical paths reinstated.
        :rtype: int
        """
        source_index = self._get_index(version)
        paths = self._expand(logical_path, source_index)
        for path in paths:
            digest = source_index[path]
            if digest not in self.manifest:
                exception_string = (
                    f"MutableInventory - reinstate: Content of '{path}' in {version} is no"
                    + f" longer in the manifest of object '{self.id}'."
                )
                logging.error(exception_string)
                raise ContentNotFound(exception_string)
            self._set(path, digest)
        return len(paths)

    def purge(self, logical_path):
        """Remove a logical path (or prefix) from every version, and drop its content from
        the manifest and fixity block when no version references it any more.

        :return: Number of (version, logical path) entries removed.
        :rtype: int
        """
        count = 0
        digests = set()
        for version in self.version_names():
            index = self._get_index(version)
            for path in self._expand(logical_path, index):
                digests.add(self._remove_from_state(path, version))
                count += 1
        for digest in digests:
            if not self._is_referenced(digest):
                self._drop_content(digest)
        if count:
            self.purged = True
        return count

    def set_version_info(self, created, message=None, user=None):
        """Stamp the head version with its creation time and optional message and user.

        :param str created: ISO 8601 timestamp.
        :param str message: Reason for the version.
        :param dict user: `{"name": ..., "address": ...}`, address optional.
        """
        version = self._data["versions"][self.head]
        version["created"] = created
        if message is not None:
            version["message"] = message
        if user is not None:
            if not isinstance(user, dict) or not user.get("name"):
                raise ValueError("MutableInventory - set_version_info: user requires a name.")
            version["user"] = {"name": user["name"]}
            if user.get("address"):
                version["user"]["address"] = user["address"]

    # Internal state helpers

    def _set(self, logical_path, digest):
        previous_digest = self._get_index().get(logical_path)
        if previous_digest == digest:
            return False
        if previous_digest is not None:
            self._remove_from_state(logical_path)
        self._add_to_state(logical_path, digest)
        if previous_digest is not None:
            self._prune(previous_digest)
        return True

    def _add_to_state(self, logical_path, digest):
        state = self._data["versions"][self.head]["state"]
        state.setdefault(digest, []).append(logical_path)
        self._get_index()[logical_path] = digest

    def _remove_from_state(self, logical_path, version=None):
        version = version or self.head
        digest = self._get_index(version).pop(logical_path)
        state = self._data["versions"][version]["state"]
        logical_paths = state[digest]
        logical_paths.remove(logical_path)
        if not logical_paths:
            del state[digest]
        return digest

    def _is_referenced(self, digest):
        return any(
            digest in version.get("state", {})
            for version in self._data["versions"].values()
        )

    def _expand(self, logical_path, index):
        logical_path = (logical_path or "").rstrip("/")
        if not logical_path:
            return []
        if logical_path in index:
            return [logical_path]
        prefix = logical_path + "/"
        return sorted(path for path in index if path.startswith(prefix))

    def _expand_pairs(self, source, target):
        source = (source or "").rstrip("/")
        target = (target or "").rstrip("/")
        index = self._get_index()
        if source in index:
            return [(source, target)]
        prefix = source + "/"
        return [
            (path, target + "/" + path[len(prefix) :])
            for path in self._expand(source, index)
        ]

    # Manifest and fixity helpers

    def _prune(self, digest):
        """Drop draft content that the head state no longer references."""
        if digest in self.head_state or digest not in self.manifest:
            return
        if all(self.is_draft_content(path) for path in self.manifest[digest]):
            logging.debug(
                "MutableInventory - _prune: Dropping unreferenced draft content: %s", digest
            )
            self._drop_content(digest)

    @property
    def head_state(self):
        return self._data["versions"][self.head]["state"]

    def _drop_content(self, digest):
        for content_path in self.manifest.pop(digest):
            self._content_index.pop(content_path, None)
            self._drop_fixity(content_path)
            self._actions.append(("remove", content_path))

    def _claim_content_path(self, content_path):
        """Make `content_path` free for new content, relocating the content that currently
        occupies it to the content path of one of its other logical paths."""
        holder = self._content_index.get(content_path)
        if holder is None:
            return
        for logical_path in sorted(self.head_state.get(holder, [])):
            alternative = self.content_path_for(logical_path)
            if alternative not in self._content_index:
                self._relocate(holder, content_path, alternative)
                return
        exception_string = (
            f"MutableInventory - add: Content path '{content_path}' is still used by other"
            + f" content in object '{self.id}'."
        )
        logging.error(exception_string)
        raise ContentPathConflict(exception_string)

    def _follow_rename(self, digest, source_path, target_path):
        """Move draft content stored under the old logical path to the new one.

        :return: True if the content was moved.
        :rtype: bool
        """
        old_content_path = self.content_path_for(source_path)
        new_content_path = self.content_path_for(target_path)
        if (
            old_content_path in self.manifest.get(digest, [])
            and new_content_path not in self._content_index
        ):
            self._relocate(digest, old_content_path, new_content_path)
            return True
        return False

    def _relocate(self, digest, old_content_path, new_content_path):
        self.manifest[digest] = [
            new_content_path if path == old_content_path else path
            for path in self.manifest[digest]
        ]
        del self._content_index[old_content_path]
        self._content_index[new_content_path] = digest
        for block in self.fixity.values():
            for content_paths in block.values():
                if old_content_path in content_paths:
                    content_paths[content_paths.index(old_content_path)] = new_content_path
        self._fixity_index = None
        self._actions.append(("move", old_content_path, new_content_path))

    def _add_fixity(self, content_path, fixity):
        if not fixity or content_path is None:
            return
        for algorithm, value in fixity.items():
            if algorithm == self.digest_algorithm:
                continue
            content_paths = self.fixity.setdefault(algorithm, {}).setdefault(value, [])
            if content_path not in content_paths:
                content_paths.append(content_path)
        self._fixity_index = None

    def _drop_fixity(self, content_path):
        for algorithm in list(self.fixity):
            block = self.fixity[algorithm]
            for value in list(block):
                if content_path in block[value]:
                    block[value].remove(content_path)
                    if not block[value]:
                        del block[value]
            if not block:
                del self.fixity[algorithm]
        self._fixity_index = None
