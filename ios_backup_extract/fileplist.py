# -*- coding: utf-8 -*-
"""Resolution of Manifest.db ``file`` column blobs (NSKeyedArchiver MBFile objects)."""

import datetime
import plistlib

from .constants import ProtectionClass
from .errors import MalformedFileMetadata

# EncryptionKey NS.data starts with the 4-byte little-endian protection class.
_WRAPPED_KEY_HEADER = 4


class ObjectGraph:
    """The ``$objects`` arena of a keyed archive, addressed by integer handles."""

    def __init__(self, plist):
        if not isinstance(plist, dict) or not isinstance(plist.get("$objects"), list):
            raise MalformedFileMetadata("File metadata has no '$objects' list.")
        self.plist = plist
        self.objects = plist["$objects"]

    @staticmethod
    def handle(ref):
        """Integer index for a reference; newer plists use ``plistlib.UID``, older ones plain ints."""
        if isinstance(ref, plistlib.UID):
            return ref.data
        if isinstance(ref, int) and not isinstance(ref, bool):
            return ref
        raise MalformedFileMetadata(f"Unexpected object reference type: {type(ref).__name__}")

    def resolve(self, ref):
        index = self.handle(ref)
        if not 0 <= index < len(self.objects):
            raise MalformedFileMetadata(f"Object reference {index} out of range ({len(self.objects)} objects).")
        return self.objects[index]

    def root(self):
        top = self.plist.get("$top")
        if not isinstance(top, dict) or "root" not in top:
            raise MalformedFileMetadata("File metadata has no '$top'/'root' reference.")
        return self.resolve(top["root"])


class FileMetadata:
    """Decryption-relevant fields of one Manifest.db file record."""

    def __init__(self, protection_class, wrapped_file_key, declared_size, last_modified=None):
        self.protection_class = protection_class
        self.wrapped_file_key = wrapped_file_key
        self.declared_size = declared_size
        self.last_modified = last_modified

    def __repr__(self):
        return (f"<FileMetadata class={self.protection_class!r} size={self.declared_size} "
                f"last_modified={self.last_modified}>")


def _wrapped_key(graph, root):
    if "EncryptionKey" not in root:
        raise MalformedFileMetadata("File metadata has no EncryptionKey (directory or unencrypted file).")
    value = root["EncryptionKey"]
    if isinstance(value, bytes):
        key_data = value
    else:
        key_obj = graph.resolve(value)
        if not isinstance(key_obj, dict) or not isinstance(key_obj.get("NS.data"), bytes):
            raise MalformedFileMetadata("EncryptionKey object has no NS.data field.")
        key_data = key_obj["NS.data"]
    if len(key_data) <= _WRAPPED_KEY_HEADER:
        raise MalformedFileMetadata(f"EncryptionKey data too short ({len(key_data)} bytes).")
    return key_data[_WRAPPED_KEY_HEADER:]


def _timestamp(value):
    if isinstance(value, datetime.datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=datetime.timezone.utc)
        return value.timestamp()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    return None


def resolve_file_metadata(blob):
    """
    Decode a file record blob and follow its object references.

    The root object (``$top.root``) carries ``ProtectionClass`` and ``Size``
    directly; ``EncryptionKey`` points at another object whose ``NS.data``
    holds the wrapped file key behind a 4-byte header.

    :raises MalformedFileMetadata: if the blob does not decode or a reference
        is missing or out of range.
    """
    try:
        plist = plistlib.loads(blob)
    except Exception as e:
        raise MalformedFileMetadata(f"Failed to decode file metadata plist: {e}") from e

    graph = ObjectGraph(plist)
    root = graph.root()
    if not isinstance(root, dict):
        raise MalformedFileMetadata("Root object of file metadata is not a dictionary.")

    try:
        protection_class = ProtectionClass.from_index(root.get("ProtectionClass"))
    except ValueError as e:
        raise MalformedFileMetadata(str(e)) from None

    size = root.get("Size")
    if isinstance(size, bool) or not isinstance(size, int) or size < 0:
        raise MalformedFileMetadata(f"Invalid Size in file metadata: {size!r}")

    return FileMetadata(
        protection_class=protection_class,
        wrapped_file_key=_wrapped_key(graph, root),
        declared_size=size,
        last_modified=_timestamp(root.get("LastModified")),
    )
