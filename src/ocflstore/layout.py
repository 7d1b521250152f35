"""Storage layout extensions mapping OCFL object identifiers to object root paths.

A layout is a pure function from an identifier to a '/'-separated path relative to the
storage root. Its configuration is validated when the layout is constructed, so a layout
that could be created will never fail on configuration at mapping time.
"""

import copy
import logging
import re
from abc import ABC, abstractmethod
from urllib.parse import urlsplit
from ocflstore import ocfl_config
from ocflstore.digest import DigestRegistry
from ocflstore.ocfl_exceptions import (
    IncompatibleObjectId,
    InvalidLayoutConfiguration,
    UnsupportedAlgorithm,
)


class StorageLayout(ABC):
    """Base class of all storage layout extensions.

    :param dict config: Extension parameters, using the keys of the extension's
        `config.json`. Missing keys take the extension defaults.
    :param DigestRegistry digest_registry: Registry used by hashing layouts.
    """

    NAME = None
    DESCRIPTION = None
    DEFAULT_CONFIG = {}

    def __init__(self, config=None, digest_registry=None):
        self.digest_registry = digest_registry or DigestRegistry()
        config = dict(config or {})
        extension_name = config.pop("extensionName", self.NAME)
        if extension_name != self.NAME:
            self._raise_config_error(
                f"configuration is for extension '{extension_name}', not '{self.NAME}'"
            )
        unknown_keys = [key for key in config if key not in self.DEFAULT_CONFIG]
        if unknown_keys:
            self._raise_config_error(f"unknown parameters: {', '.join(unknown_keys)}")
        parameters = copy.deepcopy(self.DEFAULT_CONFIG)
        parameters.update(config)
        self.parameters = parameters
        self._validate()
        logging.debug(
            "%s - Initialized layout with parameters: %s",
            self.__class__.__name__,
            self.parameters,
        )

    @property
    def name(self):
        return self.NAME

    def _validate(self):
        """Check `self.parameters`, raising `InvalidLayoutConfiguration` on a problem."""

    def _raise_config_error(self, reason):
        exception_string = (
            f"{self.__class__.__name__} - Invalid configuration for {self.NAME}: {reason}."
        )
        logging.error(exception_string)
        raise InvalidLayoutConfiguration(exception_string)

    def _raise_id_error(self, object_id, reason):
        exception_string = (
            f"{self.__class__.__name__} - map: The object id <{object_id}> is incompatible"
            + f" with layout extension {self.NAME} because {reason}."
        )
        logging.error(exception_string)
        raise IncompatibleObjectId(exception_string)

    def is_default_config(self):
        return self.parameters == self.DEFAULT_CONFIG

    def describe(self):
        """Return the content of `ocfl_layout.json` for this layout.

        :rtype: dict
        """
        return {"extension": self.NAME, "description": self.DESCRIPTION}

    def to_config(self):
        """Return the content of `extensions/<name>/config.json` for this layout.

        :rtype: dict
        """
        config = {"extensionName": self.NAME}
        config.update(copy.deepcopy(self.parameters))
        return config

    @abstractmethod
    def map(self, object_id):
        """Map an object identifier to the object root path relative to the storage root.

        :param str object_id: OCFL object identifier.

        :return: '/'-separated relative path.
        :rtype: str
        """
        raise NotImplementedError()


class FlatDirectStorageLayout(StorageLayout):
    """Object identifiers are used verbatim as directory names directly under the storage
    root."""

    NAME = "0002-flat-direct-storage-layout"
    DESCRIPTION = (
        "OCFL object identifiers are mapped directly to directory names"
        + " that are direct children of the OCFL storage root."
    )

    def map(self, object_id):
        if not object_id:
            self._raise_id_error(object_id, "it is empty")
        if "/" in object_id:
            self._raise_id_error(object_id, "it contains the path separator character")
        if object_id in (ocfl_config.EXTENSIONS_DIR, ".", ".."):
            self._raise_id_error(object_id, "it conflicts with a reserved directory name")
        if len(object_id) > 255:
            self._raise_id_error(object_id, "it has more than 255 characters")
        return object_id


class _NTupleStorageLayout(StorageLayout):
    """Common parameter checks and tuple splitting of the n-tuple layouts."""

    def _validate(self):
        params = self.parameters
        try:
            params["digestAlgorithm"] = self.digest_registry.clean_algorithm(
                params["digestAlgorithm"]
            )
        except UnsupportedAlgorithm:
            self._raise_config_error(
                f"invalid digestAlgorithm '{params['digestAlgorithm']}'"
            )
        if params["digestAlgorithm"] == "size":
            self._raise_config_error("digestAlgorithm 'size' does not produce hex digests")
        tuple_size = params["tupleSize"]
        number_of_tuples = params["numberOfTuples"]
        for key, value in (("tupleSize", tuple_size), ("numberOfTuples", number_of_tuples)):
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                self._raise_config_error(f"{key} must be a non-negative integer")
        if (tuple_size == 0) != (number_of_tuples == 0):
            self._raise_config_error(
                "tupleSize and numberOfTuples must both be 0 if either one is 0"
            )
        self.digest_length = self.digest_registry.hex_length(params["digestAlgorithm"])
        if tuple_size * number_of_tuples > self.digest_length:
            self._raise_config_error(
                "Product of numberOfTuples and tupleSize is greater than the number of"
                + " characters in the hex encoded digest"
            )

    def _digest(self, object_id):
        return self.digest_registry.digest(
            self.parameters["digestAlgorithm"], object_id
        )

    def _tuples(self, hex_digest):
        size = self.parameters["tupleSize"]
        return [
            hex_digest[size * i : size * (i + 1)]
            for i in range(self.parameters["numberOfTuples"])
        ]


class HashedNTupleStorageLayout(_NTupleStorageLayout):
    """Object identifiers are hashed; the hex digest is split into n-tuples forming nested
    directories, and the object root is named after the digest (or its remainder)."""

    NAME = "0004-hashed-n-tuple-storage-layout"
    DESCRIPTION = (
        "OCFL object identifiers are hashed and encoded as lowercase hex strings."
        + " These digests are then divided into N n-tuple segments,"
        + " which are used to create nested paths under the OCFL storage root."
    )
    DEFAULT_CONFIG = {
        "digestAlgorithm": "sha256",
        "tupleSize": 3,
        "numberOfTuples": 3,
        "shortObjectRoot": False,
    }

    def _validate(self):
        super()._validate()
        params = self.parameters
        if not isinstance(params["shortObjectRoot"], bool):
            self._raise_config_error("shortObjectRoot must be a boolean")
        if params["shortObjectRoot"] and (
            params["tupleSize"] * params["numberOfTuples"] in (0, self.digest_length)
        ):
            self._raise_config_error(
                "shortObjectRoot cannot be true when no digest characters remain"
                + " for the object root"
            )

    def map(self, object_id):
        if not object_id:
            self._raise_id_error(object_id, "it is empty")
        hex_digest = self._digest(object_id)
        segments = self._tuples(hex_digest)
        if self.parameters["shortObjectRoot"]:
            consumed = self.parameters["tupleSize"] * self.parameters["numberOfTuples"]
            segments.append(hex_digest[consumed:])
        else:
            segments.append(hex_digest)
        return "/".join(segments)


# Characters left as is by the hash-and-id layout
_ID_SAFE_CHARACTERS = frozenset(
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"
)
_MAX_ENCODED_ID_LENGTH = 100


def encode_identifier(object_id):
    """Percent-encode every character of `object_id` except `[A-Za-z0-9_-]`, using
    lowercase hex for the UTF-8 bytes."""
    encoded = []
    for character in object_id:
        if character in _ID_SAFE_CHARACTERS:
            encoded.append(character)
        else:
            encoded.extend(f"%{byte:02x}" for byte in character.encode("utf-8"))
    return "".join(encoded)


class HashAndIdNTupleStorageLayout(_NTupleStorageLayout):
    """Like the hashed n-tuple layout, but the object root directory is the percent-encoded
    identifier, keeping leaf names human readable."""

    NAME = "0003-hash-and-id-n-tuple-storage-layout"
    DESCRIPTION = (
        "OCFL object identifiers are hashed and encoded as lowercase hex strings."
        + " These digests are then divided into N n-tuple segments,"
        + " which are used to create nested paths under the OCFL storage root."
        + " Finally, the OCFL object identifier is percent-encoded to create a directory"
        + " name for the OCFL object root."
    )
    DEFAULT_CONFIG = {
        "digestAlgorithm": "sha256",
        "tupleSize": 3,
        "numberOfTuples": 3,
    }

    def map(self, object_id):
        if not object_id:
            self._raise_id_error(object_id, "it is empty")
        hex_digest = self._digest(object_id)
        segments = self._tuples(hex_digest)
        encoded_id = encode_identifier(object_id)
        if len(encoded_id) > _MAX_ENCODED_ID_LENGTH:
            encoded_id = encoded_id[:_MAX_ENCODED_ID_LENGTH] + "-" + hex_digest
        segments.append(encoded_id)
        return "/".join(segments)


class PathDirectStorageLayout(StorageLayout):
    """Object identifiers, usually URIs, are used directly as nested paths ending in a
    suffix directory.

    `replace` holds `[search, replacement]` rules applied to the identifier before mapping,
    first match only. `search` is a literal string or a compiled regular expression; in
    `config.json` a regular expression rule is written as `[pattern, replacement, "regex"]`.
    """

    NAME = "000N-path-direct-storage-layout"
    DESCRIPTION = "OCFL object identifiers are used directly as the path."
    DEFAULT_CONFIG = {
        "omitSchema": False,
        "replace": [],
        "suffix": "__object__",
    }

    def _validate(self):
        params = self.parameters
        if not isinstance(params["omitSchema"], bool):
            self._raise_config_error("omitSchema must be a boolean")
        suffix = params["suffix"] if params["suffix"] is not None else ""
        if not isinstance(suffix, str):
            self._raise_config_error("suffix must be a string")
        params["suffix"] = suffix.strip("/")
        rules = []
        for rule in params["replace"] or []:
            rules.append(self._parse_rule(rule))
        self._rules = rules

    def _parse_rule(self, rule):
        if not isinstance(rule, (list, tuple)) or len(rule) not in (2, 3):
            self._raise_config_error(f"invalid replace rule {rule!r}")
        search, replacement = rule[0], rule[1]
        if not isinstance(replacement, str):
            self._raise_config_error(f"invalid replacement in rule {rule!r}")
        if len(rule) == 3:
            if rule[2] != "regex" or not isinstance(search, str):
                self._raise_config_error(f"invalid replace rule {rule!r}")
            try:
                search = re.compile(search)
            except re.error as err:
                self._raise_config_error(f"invalid regular expression {rule[0]!r}: {err}")
        elif not isinstance(search, (str, re.Pattern)):
            self._raise_config_error(f"invalid search value in rule {rule!r}")
        return search, replacement

    def is_default_config(self):
        return (
            not self.parameters["omitSchema"]
            and not self._rules
            and self.parameters["suffix"] == self.DEFAULT_CONFIG["suffix"]
        )

    def to_config(self):
        config = {
            "extensionName": self.NAME,
            "omitSchema": self.parameters["omitSchema"],
            "replace": [],
            "suffix": self.parameters["suffix"],
        }
        for search, replacement in self._rules:
            if isinstance(search, re.Pattern):
                config["replace"].append([search.pattern, replacement, "regex"])
            else:
                config["replace"].append([search, replacement])
        return config

    def map(self, object_id):
        if not object_id:
            self._raise_id_error(object_id, "it is empty")
        suffix = self.parameters["suffix"]
        if suffix and object_id.rstrip("/").endswith(suffix):
            self._raise_id_error(object_id, f"it cannot end with '{suffix}'")
        path = object_id
        for search, replacement in self._rules:
            if isinstance(search, re.Pattern):
                path = search.sub(lambda _, r=replacement: r, path, count=1)
            else:
                path = path.replace(search, replacement, 1)
        path = self._uri_to_path(path)
        path = re.sub(r"/{2,}", "/", path).strip("/")
        if suffix:
            path = path + "/" + suffix if path else suffix
        return path

    def _uri_to_path(self, value):
        try:
            parts = urlsplit(value)
        except ValueError:
            return value
        if not parts.scheme:
            return value
        prefixes = []
        scheme = parts.scheme.lower()
        if not self.parameters["omitSchema"] and scheme != "file":
            prefixes.append(scheme)
        host = parts.netloc.rsplit("@", 1)[-1]
        host = re.sub(r":\d*$", "", host)
        if host:
            prefixes.append(host.replace(",", "_", 1).replace(";", "/", 1))
        path = parts.path
        if parts.query:
            path += "?" + parts.query
        if parts.fragment:
            path += "#" + parts.fragment
        return "_".join(prefixes) + "/" + path


# Extension name -> layout class
LAYOUTS = {
    layout_class.NAME: layout_class
    for layout_class in (
        FlatDirectStorageLayout,
        HashAndIdNTupleStorageLayout,
        HashedNTupleStorageLayout,
        PathDirectStorageLayout,
    )
}


def create_layout(name=None, config=None, digest_registry=None):
    """Create a storage layout by extension name.

    :param str name: Extension name, e.g. "0004-hashed-n-tuple-storage-layout". Defaults to
        the `extensionName` in `config`, then to the default layout.
    :param dict config: Extension parameters.
    :param DigestRegistry digest_registry: Registry used by hashing layouts.

    :return: The configured layout.
    :rtype: StorageLayout
    """
    if name is None:
        name = (config or {}).get("extensionName", ocfl_config.STORAGE_LAYOUT)
    layout_class = LAYOUTS.get(name)
    if layout_class is None:
        exception_string = (
            f"create_layout: Unknown storage layout extension: {name}. Must be one of:"
            + f" {', '.join(sorted(LAYOUTS))}"
        )
        logging.error(exception_string)
        raise InvalidLayoutConfiguration(exception_string)
    return layout_class(config, digest_registry=digest_registry)
