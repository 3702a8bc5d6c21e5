# -*- coding: utf-8 -*-
"""Class key unlocking and the unwrap chain for Manifest.db and file keys."""

import concurrent.futures
import logging
import os
import struct

from .constants import WRAP_PASSCODE, ProtectionClass
from .crypto import aes_unwrap
from .errors import ClassKeyNotUnwrapped, UnknownProtectionClass, UnsupportedWrapType

logger = logging.getLogger(__name__)

_CPU_COUNT = os.cpu_count() or 1


class WrappedKeyReference:
    """A wrapped key together with the protection class whose key unwraps it."""

    def __init__(self, protection_class, wrapped_key):
        self.protection_class = protection_class
        self.wrapped_key = wrapped_key

    def __repr__(self):
        return f"<WrappedKeyReference class={self.protection_class!r} length={len(self.wrapped_key)}>"

    @classmethod
    def from_manifest_key(cls, manifest_key_data):
        """Split Manifest.plist's ManifestKey: 4-byte little-endian class, then the wrapped key."""
        if len(manifest_key_data) < 4:
            raise ValueError("ManifestKey too short.")
        if len(manifest_key_data) != 44:
            logger.warning("Unexpected ManifestKey length: %d bytes (expected 44).", len(manifest_key_data))
        manifest_class = struct.unpack("<l", manifest_key_data[:4])[0]
        return cls(manifest_class, manifest_key_data[4:])


class ClassKeyRing:
    """The keybag's class keys, unwrapped once with the passcode key and read-only afterwards."""

    def __init__(self, keybag):
        self.keybag = keybag
        self.unlocked = False
        self.skipped = []

    def __repr__(self):
        return f"<ClassKeyRing unlocked={self.unlocked} classes={sorted(self.keybag.classes)}>"

    @staticmethod
    def _check_supported(record):
        if record.wrap_type != WRAP_PASSCODE or record.wrapped_key is None:
            raise UnsupportedWrapType(record.protection_class, record.wrap_type)

    @staticmethod
    def _unwrap_record(record, kek):
        record.set_unwrapped_key(aes_unwrap(record.wrapped_key, kek))
        return record.protection_class

    def unwrap_all(self, kek, max_workers=None):
        """
        Unwrap every passcode-wrapped class key with ``kek``.

        Class keys are independent of each other and are unwrapped concurrently.
        Records with another wrap type are skipped and returned.

        :return: list of skipped :class:`ProtectionClass` values.
        :raises UnwrapIntegrityError: for the first class key that fails its
            integrity check; no class key is left unwrapped in that case.
        """
        if self.unlocked:
            raise RuntimeError("Class key ring is already unlocked.")

        supported = []
        skipped = []
        for record in self.keybag.classes.values():
            try:
                self._check_supported(record)
            except UnsupportedWrapType as e:
                logger.warning("Skipping class key: %s", e)
                skipped.append(record.protection_class)
            else:
                supported.append(record)

        if supported:
            workers = max_workers or min(len(supported), _CPU_COUNT)
            try:
                with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
                    list(executor.map(lambda record: self._unwrap_record(record, kek), supported))
            except Exception:
                for record in supported:
                    record.clear_unwrapped_key()
                raise

        logger.info("Unwrapped %d class key(s), skipped %d.", len(supported), len(skipped))
        self.skipped = skipped
        self.unlocked = True
        return skipped

    def class_key(self, protection_class):
        if not self.unlocked:
            raise RuntimeError("Class key ring has not been unlocked.")
        try:
            protection_class = ProtectionClass.from_index(protection_class)
        except ValueError:
            raise UnknownProtectionClass(f"Protection class {protection_class!r} not found in Keybag.") from None
        record = self.keybag.classes.get(protection_class)
        if record is None:
            raise UnknownProtectionClass(f"Protection class {protection_class.vendor_name} not found in Keybag.")
        if record.unwrapped_key is None:
            raise ClassKeyNotUnwrapped(
                f"Class key for {protection_class.vendor_name} is not available (wrap type {record.wrap_type!r}).")
        return record.unwrapped_key

    def unwrap_key_for_class(self, protection_class, wrapped_key):
        """Unwraps a Manifest.db or file key using the class key."""
        return aes_unwrap(wrapped_key, self.class_key(protection_class))


def resolve_catalog_key(reference, ring):
    """Unwrap the Manifest.db key described by a :class:`WrappedKeyReference`."""
    return ring.unwrap_key_for_class(reference.protection_class, reference.wrapped_key)


def resolve_file_key(metadata, ring):
    """Unwrap a file's content key using its declared protection class."""
    reference = WrappedKeyReference(metadata.protection_class, metadata.wrapped_file_key)
    return ring.unwrap_key_for_class(reference.protection_class, reference.wrapped_key)
