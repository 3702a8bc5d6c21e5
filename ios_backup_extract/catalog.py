# -*- coding: utf-8 -*-
"""The Manifest.db catalog: decryption to a private temporary file and lookups."""

import logging
import os
import shutil
import sqlite3
import tempfile
from contextlib import contextmanager

from .constants import CHUNK_SIZE, SQLITE_MAGIC
from .crypto import decrypt_stream, read_chunks, strip_padding_stream
from .errors import CatalogLookupMiss

logger = logging.getLogger(__name__)

FLAG_FILE = 1  # Files.flags: 1 = regular file, 2 = directory, 4 = symlink


class CatalogEntry:
    """One row of the Manifest.db ``Files`` table."""

    def __init__(self, file_id, domain, relative_path, flags, metadata_blob):
        self.file_id = file_id
        self.domain = domain
        self.relative_path = relative_path
        self.flags = flags
        self.metadata_blob = metadata_blob

    def __repr__(self):
        return f"<CatalogEntry {self.domain}::{self.relative_path} fileID={self.file_id}>"


@contextmanager
def scratch_database(chunks, filename):
    """
    Write decrypted SQLite ``chunks`` into a private temporary directory.

    Yields the path of the written file. The directory is removed on exit,
    including when writing, the header check or the caller fails.
    """
    temporary_folder = tempfile.mkdtemp(prefix="ios_backup_")
    try:
        decrypted_path = os.path.join(temporary_folder, filename)
        header = b""
        with open(decrypted_path, "wb") as decrypted_db:
            for chunk in chunks:
                if len(header) < len(SQLITE_MAGIC):
                    header += chunk[:len(SQLITE_MAGIC) - len(header)]
                decrypted_db.write(chunk)
        if header != SQLITE_MAGIC:
            raise ValueError(f"Decrypted {filename} does not start with SQLite magic header.")
        logger.debug("Decrypted %s to %s", filename, decrypted_path)
        yield decrypted_path
    finally:
        shutil.rmtree(temporary_folder, ignore_errors=True)
        logger.debug("Removed temporary folder: %s", temporary_folder)


@contextmanager
def decrypted_catalog(encrypted_path, key, chunk_size=CHUNK_SIZE):
    """Decrypt Manifest.db with the catalog key; yields the path of the plaintext copy."""
    with open(encrypted_path, "rb") as encrypted_db:
        plaintext = strip_padding_stream(decrypt_stream(key, read_chunks(encrypted_db, chunk_size)))
        with scratch_database(plaintext, "Manifest.db") as decrypted_path:
            yield decrypted_path


class ManifestDatabase:
    """Read-only lookups over a decrypted Manifest.db."""

    _COLUMNS = "fileID, domain, relativePath, flags, file"

    def __init__(self, path):
        self.path = path
        # URI mode allows opening read-only.
        self._conn = sqlite3.connect(f"file:{path}?mode=ro", uri=True)
        try:
            self.file_count = self._conn.execute("SELECT count(*) FROM Files;").fetchone()[0]
        except sqlite3.Error:
            self._conn.close()
            raise
        if self.file_count == 0:
            logger.warning("Decrypted Manifest.db appears empty.")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def lookup(self, relative_path=None, domain_like=None, file_id=None):
        """
        Fetch a single regular file.

        :param relative_path: exact iOS ``relativePath``; a leading ``~/`` is dropped.
        :param domain_like: optional SQL LIKE pattern for ``domain``.
        :param file_id: ``fileID`` (SHA1 hex); takes precedence over the path.
        :raises CatalogLookupMiss: if no row matches.
        """
        if not relative_path and not file_id:
            raise ValueError("Either relative_path or file_id must be provided.")

        params = []
        if file_id:
            where = "fileID = ?"
            params.append(file_id)
        else:
            relative_path = _normalise_path(relative_path)
            where = "relativePath = ?"
            params.append(relative_path)
            if domain_like:
                where += " AND domain LIKE ?"
                params.append(domain_like)

        row = self._conn.execute(
            f"SELECT {self._COLUMNS} FROM Files WHERE {where} AND flags = ? "
            "ORDER BY domain, relativePath LIMIT 1;",
            params + [FLAG_FILE],
        ).fetchone()
        if row is None:
            criteria = f"fileID '{file_id}'" if file_id else f"path '{relative_path}' (domain like '{domain_like or '%'}')"
            raise CatalogLookupMiss(f"File not found in Manifest database matching criteria: {criteria}")
        return CatalogEntry(*row)

    def find(self, relative_paths_like=None, domain_like=None):
        """All regular files whose path and domain match the given SQL LIKE patterns."""
        if relative_paths_like is None and domain_like is None:
            raise ValueError("At least one of 'relative_paths_like' or 'domain_like' must be specified!")
        rows = self._conn.execute(
            f"SELECT {self._COLUMNS} FROM Files "
            "WHERE relativePath LIKE ? AND domain LIKE ? AND flags = ? "
            "ORDER BY domain, relativePath;",
            (_normalise_path(relative_paths_like) if relative_paths_like else "%", domain_like or "%", FLAG_FILE),
        ).fetchall()
        return [CatalogEntry(*row) for row in rows]


def _normalise_path(path):
    if path.startswith("~/"):
        path = path[2:]
    return path


# sms.db: messages of one handle (phone number or e-mail) and their attachments.
_SMS_ATTACHMENTS_QUERY = """
SELECT a.filename
FROM message AS m
LEFT OUTER JOIN handle AS h ON h.rowid = m.handle_id
LEFT OUTER JOIN message_attachment_join AS maj ON maj.message_id = m.rowid
LEFT OUTER JOIN attachment AS a ON a.rowid = maj.attachment_id
WHERE h.id = ? AND m.cache_has_attachments = 1 AND a.filename IS NOT NULL
ORDER BY m.rowid ASC;
"""


def sms_attachment_paths(sms_db_path, handle):
    """
    Attachment paths (as stored, usually ``~/Library/SMS/Attachments/...``) of
    the messages exchanged with ``handle``, in message order, without repeats.
    """
    conn = sqlite3.connect(f"file:{sms_db_path}?mode=ro", uri=True)
    try:
        rows = conn.execute(_SMS_ATTACHMENTS_QUERY, (handle,)).fetchall()
    finally:
        conn.close()
    paths = []
    for (filename,) in rows:
        if filename not in paths:
            paths.append(filename)
    return paths
