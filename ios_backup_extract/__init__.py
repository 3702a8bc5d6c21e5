# -*- coding: utf-8 -*-
"""
Extract files from encrypted iOS backups.

    from ios_backup_extract import EncryptedBackup, RelativePath

    with EncryptedBackup(backup_directory="...", passphrase="...") as backup:
        data = backup.extract_file_as_bytes(relative_path=RelativePath.TEXT_MESSAGES)

Original iphone-dataprotection code derived from:
https://code.google.com/p/iphone-dataprotection/
Original License: https://opensource.org/licenses/BSD-3-Clause
"""

from .backup import EncryptedBackup, ExtractionReport
from .catalog import CatalogEntry, ManifestDatabase, decrypted_catalog
from .constants import DomainLike, MatchFiles, ProtectionClass, RelativePath, RelativePathsLike
from .crypto import aes_unwrap, aes_wrap, decrypt_stream, derive_passcode_key, truncate_stream
from .errors import (
    BackupError,
    CatalogLookupMiss,
    ClassKeyNotUnwrapped,
    MalformedFileMetadata,
    MalformedKeybag,
    UnknownProtectionClass,
    UnsupportedWrapType,
    UnwrapIntegrityError,
)
from .fileplist import FileMetadata, resolve_file_metadata
from .keybag import ClassKeyRecord, Keybag, parse_keybag
from .keyring import ClassKeyRing, WrappedKeyReference, resolve_catalog_key, resolve_file_key

__version__ = "1.0.0"
