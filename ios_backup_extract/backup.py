# -*- coding: utf-8 -*-
"""
Access to one encrypted iOS backup directory.

The process goes like this:

1. Parse the keybag from Manifest.plist's ``BackupKeyBag``.
2. Derive the passcode key from the backup password (slow), or use a
   previously derived key.
3. Unwrap the class keys with the passcode key.
4. Unwrap the Manifest.db key (``ManifestKey``) and decrypt Manifest.db into a
   private temporary file.
5. For each requested file: look it up in Manifest.db, unwrap its key with its
   class key and stream-decrypt ``<fileID[:2]>/<fileID>``.
"""

import concurrent.futures
import contextlib
import logging
import os
import plistlib
import shutil

from .catalog import ManifestDatabase, decrypted_catalog, scratch_database, sms_attachment_paths
from .constants import CHUNK_SIZE, DomainLike, RelativePath
from .crypto import KEY_SIZE, decrypt_stream, derive_passcode_key, read_chunks, truncate_stream
from .errors import BackupError, CatalogLookupMiss
from .fileplist import resolve_file_metadata
from .keybag import parse_keybag
from .keyring import ClassKeyRing, WrappedKeyReference, resolve_catalog_key, resolve_file_key

logger = logging.getLogger(__name__)

# Per-file failures that must not abort a multi-file extraction.
_FILE_ERRORS = (BackupError, ValueError, RuntimeError, OSError)


class ExtractionReport:
    """Outcome of :meth:`EncryptedBackup.extract_files` and :meth:`EncryptedBackup.extract_sms_attachments`."""

    def __init__(self):
        self.extracted = []
        self.skipped = []
        self.failed = {}
        self.missing = []

    def __repr__(self):
        return (f"<ExtractionReport extracted={len(self.extracted)} skipped={len(self.skipped)} "
                f"failed={len(self.failed)} missing={len(self.missing)}>")


class EncryptedBackup:

    def __init__(self, *, backup_directory, passphrase=None, derived_key=None, max_workers=None,
                 chunk_size=CHUNK_SIZE):
        """
        :param backup_directory:
            The path to the specific backup directory on disk (containing
            Manifest.db and Manifest.plist).
            Common locations:
              - Windows: '%AppData%\\Apple Computer\\MobileSync\\Backup\\[device-hash]'
              - macOS: '~/Library/Application Support/MobileSync/Backup/[device-hash]'
        :param passphrase:
            The backup password, as string (UTF-8 encoded) or bytes.
        :param derived_key:
            Alternatively, the 32-byte passcode key (bytes or hex string) from a
            previous unlock; skips the slow PBKDF2 step.
        :param max_workers:
            Thread pool size for class key unwrapping and multi-file extraction.
        :param chunk_size:
            Read size for streaming decryption, a multiple of 16 bytes.
        """
        self._backup_directory = os.path.expanduser(os.path.expandvars(backup_directory))
        if not os.path.isdir(self._backup_directory):
            raise FileNotFoundError(f"Backup directory not found: {self._backup_directory}")
        if chunk_size <= 0 or chunk_size % 16:
            raise ValueError(f"chunk_size must be a positive multiple of 16, got {chunk_size}.")

        if isinstance(derived_key, str):
            derived_key = bytes.fromhex(derived_key)
        if derived_key is not None and len(derived_key) != KEY_SIZE:
            raise ValueError(f"Derived key must be {KEY_SIZE} bytes, got {len(derived_key)}.")
        if passphrase is None and derived_key is None:
            raise ValueError("Backup is encrypted, but no passphrase was provided.")
        if passphrase is not None and not isinstance(passphrase, bytes):
            passphrase = passphrase.encode("utf-8")

        self._passphrase = passphrase
        self._derived_key = derived_key
        self._max_workers = max_workers
        self._chunk_size = chunk_size

        self._manifest_plist_path = os.path.join(self._backup_directory, "Manifest.plist")
        self._manifest_db_path = os.path.join(self._backup_directory, "Manifest.db")
        self._manifest_plist = self._load_manifest_plist()

        self.keybag = None
        self.ring = None
        self._manifest_db = None
        self._resources = contextlib.ExitStack()

    def __repr__(self):
        return f"<EncryptedBackup {self._backup_directory} unlocked={self.is_unlocked()}>"

    def _load_manifest_plist(self):
        if not os.path.exists(self._manifest_plist_path):
            raise FileNotFoundError(f"Not a valid iOS backup (missing Manifest.plist): {self._backup_directory}")
        if not os.path.exists(self._manifest_db_path):
            raise FileNotFoundError(f"Not a valid iOS backup (missing Manifest.db): {self._backup_directory}")

        with open(self._manifest_plist_path, "rb") as f:
            manifest_plist = plistlib.load(f)
        if not manifest_plist.get("IsEncrypted", False) or "BackupKeyBag" not in manifest_plist:
            raise ValueError(f"Backup is not encrypted: {self._backup_directory}")
        return manifest_plist

    @property
    def backup_directory(self):
        return self._backup_directory

    @property
    def derived_key(self):
        """Hex of the passcode key, available once unlocked; pass it back as ``derived_key``."""
        if not self.is_unlocked():
            return None
        return self._derived_key.hex()

    def is_unlocked(self):
        return self.ring is not None and self.ring.unlocked

    def unlock(self):
        """Parse the keybag, derive the passcode key and unwrap all class keys.

        :raises MalformedKeybag: if BackupKeyBag cannot be parsed.
        :raises UnwrapIntegrityError: on a wrong password.
        """
        if self.is_unlocked():
            return self.ring

        keybag = parse_keybag(self._manifest_plist["BackupKeyBag"])
        if self._derived_key is not None:
            kek = self._derived_key
        else:
            kek = derive_passcode_key(self._passphrase, keybag)

        ring = ClassKeyRing(keybag)
        ring.unwrap_all(kek, max_workers=self._max_workers)

        self.keybag, self.ring, self._derived_key = keybag, ring, kek
        # Clear passphrase from memory now that keys are derived
        self._passphrase = None
        logger.info("Keybag unlocked.")
        return ring

    @property
    def manifest_db(self):
        """The decrypted :class:`ManifestDatabase`, decrypted on first access."""
        if self._manifest_db is None:
            self.unlock()
            if "ManifestKey" not in self._manifest_plist:
                raise RuntimeError("ManifestKey missing from Manifest.plist (required for Manifest.db decryption).")
            reference = WrappedKeyReference.from_manifest_key(self._manifest_plist["ManifestKey"])
            key = resolve_catalog_key(reference, self.ring)

            with contextlib.ExitStack() as stack:
                path = stack.enter_context(decrypted_catalog(self._manifest_db_path, key, self._chunk_size))
                manifest_db = stack.enter_context(ManifestDatabase(path))
                self._resources.enter_context(stack.pop_all())
            self._manifest_db = manifest_db
            logger.info("Manifest.db decrypted (%d file records).", manifest_db.file_count)
        return self._manifest_db

    def _get_backup_filepath(self, file_id):
        """Files are stored in subdirectories named with the first two chars of fileID."""
        if len(file_id) < 2:
            raise ValueError(f"Invalid fileID format: {file_id}")
        return os.path.join(self._backup_directory, file_id[:2], file_id)

    def open_file_stream(self, entry):
        """
        Resolve the key of a catalog entry and return ``(metadata, chunks)``.

        ``chunks`` lazily yields the plaintext, truncated to the declared size.
        """
        self.unlock()
        source_filepath = self._get_backup_filepath(entry.file_id)
        if not os.path.exists(source_filepath):
            raise FileNotFoundError(f"Backup file data not found at {source_filepath} for fileID {entry.file_id}")

        metadata = resolve_file_metadata(entry.metadata_blob)
        key = resolve_file_key(metadata, self.ring)
        return metadata, self._plaintext_chunks(source_filepath, key, metadata.declared_size)

    def _plaintext_chunks(self, source_filepath, key, size):
        with open(source_filepath, "rb") as enc_filehandle:
            yield from truncate_stream(decrypt_stream(key, read_chunks(enc_filehandle, self._chunk_size)), size)

    def extract_file_as_bytes(self, *, relative_path=None, domain_like=None, file_id=None):
        """
        Extracts a single file and returns its contents as bytes.

        NOTE: This loads the entire file into memory. Use extract_file() for large files.

        :raises CatalogLookupMiss: If the file is not found in Manifest.db.
        """
        entry = self.manifest_db.lookup(relative_path=relative_path, domain_like=domain_like, file_id=file_id)
        _, chunks = self.open_file_stream(entry)
        return b"".join(chunks)

    def extract_file(self, *, output_filename, relative_path=None, domain_like=None, file_id=None):
        """
        Extracts a single file and saves it to disk.

        :param output_filename: Path to save the extracted file.
        :param relative_path: iOS 'relativePath' (e.g., from RelativePath class).
        :param domain_like: Optional iOS 'domain' with SQL wildcards (e.g., from DomainLike).
        :param file_id: Optional iOS 'fileID' (SHA1 hash). Takes precedence over path/domain.
        """
        entry = self.manifest_db.lookup(relative_path=relative_path, domain_like=domain_like, file_id=file_id)
        return self._write_entry(entry, output_filename)

    def _write_entry(self, entry, output_filepath):
        metadata, chunks = self.open_file_stream(entry)

        output_directory = os.path.dirname(output_filepath)
        if output_directory:
            os.makedirs(output_directory, exist_ok=True)
        try:
            with open(output_filepath, "wb") as dec_filehandle:
                for chunk in chunks:
                    dec_filehandle.write(chunk)
        except Exception:
            # Remove partially written file
            if os.path.exists(output_filepath):
                os.remove(output_filepath)
            raise

        if metadata.last_modified is not None:
            os.utime(output_filepath, times=(metadata.last_modified, metadata.last_modified))
        return output_filepath

    @staticmethod
    def _output_path(output_folder, entry, preserve_folders, domain_subfolders):
        output_path_parts = [output_folder]
        if domain_subfolders:
            output_path_parts.append(entry.domain.replace(":", "_").replace("/", "_").replace("\\", "_"))

        filename = os.path.basename(entry.relative_path)
        if not filename:
            return None
        if preserve_folders:
            relative_output_path = os.path.normpath(entry.relative_path).lstrip(os.sep)
            if relative_output_path.startswith(os.pardir):
                return None
        else:
            relative_output_path = filename
        return os.path.join(*output_path_parts, relative_output_path)

    def _is_up_to_date(self, entry, output_filepath):
        if not os.path.exists(output_filepath):
            return False
        backup_mtime = resolve_file_metadata(entry.metadata_blob).last_modified
        return backup_mtime is not None and backup_mtime <= os.path.getmtime(output_filepath)

    def extract_files(self, *, output_folder, relative_paths_like=None, domain_like=None,
                      preserve_folders=False, domain_subfolders=False, incremental=False,
                      filter_callback=None):
        """
        Extracts every file matching the criteria into a folder, concurrently.

        A failure on one file is logged and recorded in the report; it does not
        stop the others.

        :param relative_paths_like: Optional SQL LIKE pattern for 'relativePath'.
        :param domain_like: Optional SQL LIKE pattern for 'domain'.
            *At least one* of relative_paths_like or domain_like must be specified.
        :param preserve_folders: Recreate the relativePath folder structure.
        :param domain_subfolders: Create subfolders named after the 'domain'.
        :param incremental: Skip files whose output exists and is not older
            than the backup's modification time.
        :param filter_callback: Called with kwargs `n`, `total_files`, `entry`;
            returning False skips the file.
        :return: :class:`ExtractionReport`
        """
        entries = self.manifest_db.find(relative_paths_like=relative_paths_like, domain_like=domain_like)
        logger.info("Found %d matching file(s) in Manifest.db.", len(entries))
        return self._extract_entries(entries, output_folder, ExtractionReport(), preserve_folders=preserve_folders,
                                     domain_subfolders=domain_subfolders, incremental=incremental,
                                     filter_callback=filter_callback)

    def _extract_entries(self, entries, output_folder, report, preserve_folders=False, domain_subfolders=False,
                         incremental=False, filter_callback=None):
        total_files = len(entries)
        os.makedirs(output_folder, exist_ok=True)

        jobs = {}
        for n, entry in enumerate(entries):
            if filter_callback is not None and not filter_callback(n=n, total_files=total_files, entry=entry):
                report.skipped.append(entry)
                continue
            output_filepath = self._output_path(output_folder, entry, preserve_folders, domain_subfolders)
            if output_filepath is None:
                logger.warning("Skipping fileID %s with unusable relativePath '%s'.", entry.file_id, entry.relative_path)
                report.skipped.append(entry)
                continue
            if output_filepath in jobs:
                logger.warning("Skipping %s (%s): %s is already being extracted.",
                               entry.relative_path, entry.domain, output_filepath)
                report.skipped.append(entry)
                continue
            try:
                if incremental and self._is_up_to_date(entry, output_filepath):
                    report.skipped.append(entry)
                    continue
            except _FILE_ERRORS as e:
                logger.warning("Incremental check failed for %s: %s. Will attempt extraction.", output_filepath, e)
            jobs[output_filepath] = entry

        with concurrent.futures.ThreadPoolExecutor(max_workers=self._max_workers) as executor:
            futures = {executor.submit(self._write_entry, entry, path): (entry, path) for path, entry in jobs.items()}
            for future in concurrent.futures.as_completed(futures):
                entry, path = futures[future]
                try:
                    future.result()
                except _FILE_ERRORS as e:
                    logger.error("Failed to extract file %s (path: %s): %s", entry.file_id, entry.relative_path, e)
                    report.failed[entry.file_id] = e
                else:
                    logger.debug("Extracted: %s (%s) -> %s", entry.relative_path, entry.domain, path)
                    report.extracted.append(path)

        logger.info("Extraction complete. %d extracted, %d skipped, %d failed.",
                    len(report.extracted), len(report.skipped), len(report.failed))
        return report

    def extract_sms_attachments(self, *, output_folder, handle, preserve_folders=False):
        """
        Extracts the attachments of all messages exchanged with one contact.

        sms.db is decrypted into a private temporary file, queried for the
        attachments of ``handle`` and removed again. Each attachment is then
        looked up in Manifest.db and extracted like :meth:`extract_files` does.

        :param handle: The contact as stored in sms.db's ``handle.id``, e.g.
            '+15551234567' or an iMessage e-mail address.
        :return: :class:`ExtractionReport`; attachments without a Manifest.db
            record are listed in ``missing``.
        """
        sms_entry = self.manifest_db.lookup(relative_path=RelativePath.TEXT_MESSAGES,
                                            domain_like=DomainLike.HOME_DOMAIN)
        _, chunks = self.open_file_stream(sms_entry)
        with scratch_database(chunks, os.path.basename(RelativePath.TEXT_MESSAGES)) as sms_db_path:
            attachment_paths = sms_attachment_paths(sms_db_path, handle)
        logger.info("Found %d attachment(s) for handle %s.", len(attachment_paths), handle)

        report = ExtractionReport()
        entries = []
        for attachment_path in attachment_paths:
            try:
                entries.append(self.manifest_db.lookup(relative_path=attachment_path))
            except CatalogLookupMiss as e:
                logger.warning("%s", e)
                report.missing.append(attachment_path)
        return self._extract_entries(entries, output_folder, report, preserve_folders=preserve_folders)

    def save_manifest_file(self, output_filename):
        """Saves a copy of the decrypted Manifest SQLite database."""
        output_directory = os.path.dirname(output_filename)
        if output_directory:
            os.makedirs(output_directory, exist_ok=True)
        shutil.copy2(self.manifest_db.path, output_filename)
        logger.info("Manifest.db saved to %s", output_filename)

    def test_backup_access(self):
        """Attempts to unlock the keybag and open Manifest.db; returns True on success."""
        try:
            self.unlock()
            _ = self.manifest_db.file_count
        except (BackupError, ValueError, RuntimeError, OSError) as e:
            logger.error("Backup access test FAILED: %s", e)
            return False
        return True

    def close(self):
        """Closes Manifest.db and removes the temporary decrypted copy."""
        self._manifest_db = None
        self._resources.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __del__(self):
        resources = getattr(self, "_resources", None)
        if resources is not None:
            self.close()
