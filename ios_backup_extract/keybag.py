# -*- coding: utf-8 -*-
"""
Parsing of the BackupKeyBag blob stored in Manifest.plist.

The keybag is a flat run of TLV records (4-byte ASCII tag, 4-byte big-endian
length, value). The bag's own attributes come first, then one group of records
per protection class, each group opened by a UUID record:

    VERS TYPE UUID HMCK WRAP SALT ITER DPWT DPIC DPSL
    UUID CLAS WRAP KTYP WPKY [PBKY]
    UUID CLAS WRAP KTYP WPKY [PBKY]
    ...
"""

import enum
import logging
import struct

from .constants import ProtectionClass
from .errors import MalformedKeybag

logger = logging.getLogger(__name__)

# Tags that describe a class key rather than the keybag itself.
CLASS_KEY_TAGS = ("CLAS", "WRAP", "WPKY", "KTYP", "PBKY", "UUID")

# Keybag attributes needed to derive the passcode key.
PASSCODE_ATTRIBUTES = ("DPSL", "DPIC", "SALT", "ITER")


class ClassKeyRecord:
    """One protection class key as stored in the keybag."""

    def __init__(self, uuid):
        self.uuid = uuid
        self.protection_class = None
        self.wrap_type = None
        self.wrapped_key = None
        self.key_type = None
        self.public_key = None
        self._unwrapped_key = None

    def __repr__(self):
        state = "unwrapped" if self._unwrapped_key is not None else "wrapped"
        return (f"<ClassKeyRecord class={self.protection_class!r} wrap={self.wrap_type!r} "
                f"uuid={self.uuid.hex() if self.uuid else None} {state}>")

    @property
    def unwrapped_key(self):
        return self._unwrapped_key

    def set_unwrapped_key(self, key):
        if self._unwrapped_key is not None:
            raise RuntimeError(f"Class key {self.protection_class!r} is already unwrapped.")
        self._unwrapped_key = key

    def clear_unwrapped_key(self):
        self._unwrapped_key = None

    def set_field(self, tag, value):
        if tag == "WRAP":
            self.wrap_type = value
        elif tag == "WPKY":
            self.wrapped_key = value
        elif tag == "KTYP":
            self.key_type = value
        elif tag == "PBKY":
            self.public_key = value


class Keybag:
    """Parsed keybag: top-level attributes and class keys by protection class."""

    def __init__(self):
        self.attributes = {}
        self.classes = {}

    def __repr__(self):
        return f"<Keybag uuid={self.uuid.hex() if self.uuid else None} classes={sorted(self.classes)}>"

    @property
    def uuid(self):
        return self.attributes.get("UUID")

    @property
    def wrap(self):
        return self.attributes.get("WRAP")

    @property
    def salt(self):
        return self.attributes["SALT"]

    @property
    def iterations(self):
        return self.attributes["ITER"]

    @property
    def double_protection_salt(self):
        return self.attributes["DPSL"]

    @property
    def double_protection_iterations(self):
        return self.attributes["DPIC"]


def loop_tlv_blocks(blob):
    """Yield ``(tag, value)`` for each record; 4-byte values are decoded as integers."""
    i = 0
    while i < len(blob):
        if i + 8 > len(blob):
            raise MalformedKeybag(f"Keybag ends inside a record header at offset {i}.")
        tag = blob[i:i + 4]
        length = struct.unpack(">L", blob[i + 4:i + 8])[0]
        if i + 8 + length > len(blob):
            raise MalformedKeybag(
                f"Record {tag!r} at offset {i} declares {length} bytes, only {len(blob) - i - 8} remain.")
        try:
            tag = tag.decode("ascii")
        except UnicodeDecodeError:
            raise MalformedKeybag(f"Non-ASCII record tag {tag!r} at offset {i}.") from None
        data = blob[i + 8:i + 8 + length]
        if length == 4:
            data = struct.unpack(">L", data)[0]
        yield tag, data
        i += 8 + length


class _State(enum.Enum):
    NO_PENDING_CLASS_KEY = "no-pending"
    PENDING_CLASS_KEY = "pending"


class KeybagParser:
    """Single pass over the keybag records, tracking whether a class key is open."""

    def __init__(self):
        self.keybag = Keybag()
        self.state = _State.NO_PENDING_CLASS_KEY
        self.pending = None

    def parse(self, data):
        for tag, value in loop_tlv_blocks(data):
            self.feed(tag, value)
        self._close_pending()

        missing = [attr for attr in PASSCODE_ATTRIBUTES if attr not in self.keybag.attributes]
        if missing:
            raise MalformedKeybag(f"Keybag is missing required attribute(s): {', '.join(missing)}")
        for attr in ("DPIC", "ITER"):
            if not isinstance(self.keybag.attributes[attr], int):
                raise MalformedKeybag(f"Keybag attribute {attr} must be an integer.")
        # 4-byte values decode as integers, so a salt of that length arrives as one.
        for attr in ("DPSL", "SALT"):
            if not isinstance(self.keybag.attributes[attr], bytes):
                raise MalformedKeybag(f"Keybag attribute {attr} must be a byte string, not a 4-byte integer.")
        return self.keybag

    def feed(self, tag, value):
        bag = self.keybag
        if tag == "UUID":
            if bag.uuid is None:
                bag.attributes["UUID"] = value
            else:
                self._close_pending()
                self.pending = ClassKeyRecord(value)
                self.state = _State.PENDING_CLASS_KEY
        elif tag == "CLAS":
            self._register_pending(value)
        elif (self.state is _State.PENDING_CLASS_KEY and tag in CLASS_KEY_TAGS
              and bag.wrap is not None):
            self.pending.set_field(tag, value)
        else:
            bag.attributes[tag] = value

    def _register_pending(self, index):
        if self.state is not _State.PENDING_CLASS_KEY:
            raise MalformedKeybag("CLAS record found outside of a class key definition.")
        try:
            protection_class = ProtectionClass.from_index(index)
        except ValueError as e:
            raise MalformedKeybag(str(e)) from None
        if self.pending.protection_class is not None:
            raise MalformedKeybag(f"Class key {self.pending.uuid.hex()} declares CLAS twice.")
        if protection_class in self.keybag.classes:
            raise MalformedKeybag(f"Duplicate class key for {protection_class.vendor_name}.")
        # The record stays open: WRAP/KTYP/WPKY follow CLAS.
        self.pending.protection_class = protection_class
        self.keybag.classes[protection_class] = self.pending

    def _close_pending(self):
        if self.state is _State.PENDING_CLASS_KEY and self.pending.protection_class is None:
            logger.warning("Skipping keybag entry with UUID %s due to missing CLAS tag.",
                           self.pending.uuid.hex() if isinstance(self.pending.uuid, bytes) else self.pending.uuid)
        self.pending = None
        self.state = _State.NO_PENDING_CLASS_KEY


def parse_keybag(data):
    """Parse a BackupKeyBag blob into a :class:`Keybag`.

    :raises MalformedKeybag: on truncated records, bad CLAS values or missing
        passcode derivation attributes.
    """
    return KeybagParser().parse(bytes(data))
