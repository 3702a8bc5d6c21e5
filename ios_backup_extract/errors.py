# -*- coding: utf-8 -*-
"""Exceptions raised while unlocking and decrypting an encrypted iOS backup."""


class BackupError(Exception):
    """Base class for every error raised by this package."""


class MalformedKeybag(BackupError, ValueError):
    """The BackupKeyBag blob is truncated or structurally invalid."""


class UnsupportedWrapType(BackupError):
    """A class key is wrapped with a scheme other than the passcode AES key wrap."""

    def __init__(self, protection_class, wrap_type):
        self.protection_class = protection_class
        self.wrap_type = wrap_type
        super().__init__(f"Class {protection_class} uses unsupported wrap type {wrap_type!r}")


class UnwrapIntegrityError(BackupError, ValueError):
    """RFC 3394 integrity check failed: wrong password or corrupted key."""


class UnknownProtectionClass(BackupError, LookupError):
    """The requested protection class has no class key in the keybag."""


class ClassKeyNotUnwrapped(BackupError, RuntimeError):
    """The protection class exists but its key was skipped during unlock."""


class CatalogLookupMiss(BackupError, FileNotFoundError):
    """No Manifest.db row matches the requested file."""


class MalformedFileMetadata(BackupError, ValueError):
    """A Manifest.db file record could not be resolved to a protection class and key."""
