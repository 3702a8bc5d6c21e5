"""Synthetic keybags and encrypted backup directories for the test suite."""

import hashlib
import os
import plistlib
import sqlite3
import struct
import tempfile
from pathlib import Path

import Crypto.Cipher.AES

from ios_backup_extract.constants import ProtectionClass
from ios_backup_extract.crypto import aes_wrap, decrypt_stream
from ios_backup_extract.keybag import ClassKeyRecord, Keybag

PASSWORD = "correct horse battery staple"
DPSL = bytes(range(20))
DPIC = 10
SALT = bytes(range(100, 120))
ITER = 10
BAG_UUID = bytes.fromhex("9f3e8f1cd1a64b3d8f5e0b2a7c4d6e11")

CLASS_RECORD_ORDER = ("UUID", "CLAS", "WRAP", "KTYP", "WPKY", "PBKY")


def reference_passcode_key(password, dpsl=DPSL, dpic=DPIC, salt=SALT, iterations=ITER):
    """Independent PBKDF2 computation to check the package against."""
    if isinstance(password, str):
        password = password.encode("utf-8")
    round1 = hashlib.pbkdf2_hmac("sha256", password, dpsl, dpic, 32)
    return hashlib.pbkdf2_hmac("sha1", round1, salt, iterations, 32)


def encode_records(records):
    out = b""
    for tag, value in records:
        if isinstance(value, int):
            value = struct.pack(">L", value)
        out += tag.encode("ascii") + struct.pack(">L", len(value)) + value
    return out


def encode_keybag(keybag):
    """Re-encode a parsed keybag: top-level attributes, then one record group per class."""
    records = list(keybag.attributes.items())
    for protection_class, record in keybag.classes.items():
        fields = {
            "UUID": record.uuid,
            "CLAS": int(protection_class),
            "WRAP": record.wrap_type,
            "KTYP": record.key_type,
            "WPKY": record.wrapped_key,
            "PBKY": record.public_key,
        }
        records.extend((tag, fields[tag]) for tag in CLASS_RECORD_ORDER if fields[tag] is not None)
    return encode_records(records)


def class_uuid(protection_class):
    return hashlib.md5(b"class-%d" % int(protection_class)).digest()


def keybag_records(class_keys, kek, wrap_types=None, public_keys=None):
    """TLV records of a backup keybag; ``class_keys`` maps ProtectionClass -> raw 32-byte key."""
    wrap_types = wrap_types or {}
    public_keys = public_keys or {}
    records = [
        ("VERS", 4),
        ("TYPE", 1),
        ("UUID", BAG_UUID),
        ("HMCK", b"\x11" * 40),
        ("WRAP", 0),
        ("SALT", SALT),
        ("ITER", ITER),
        ("DPWT", 1),
        ("DPIC", DPIC),
        ("DPSL", DPSL),
    ]
    for protection_class, key in class_keys.items():
        records += [
            ("UUID", class_uuid(protection_class)),
            ("CLAS", int(protection_class)),
            ("WRAP", wrap_types.get(protection_class, 2)),
            ("KTYP", 0),
            ("WPKY", aes_wrap(key, kek)),
        ]
        if protection_class in public_keys:
            records.append(("PBKY", public_keys[protection_class]))
    return records


def make_keybag(class_keys, kek, wrap_types=None):
    """Build a :class:`Keybag` directly, in the iteration order of ``class_keys``."""
    wrap_types = wrap_types or {}
    keybag = Keybag()
    keybag.attributes.update({"UUID": BAG_UUID, "WRAP": 0, "SALT": SALT, "ITER": ITER, "DPIC": DPIC, "DPSL": DPSL})
    for protection_class, key in class_keys.items():
        record = ClassKeyRecord(class_uuid(protection_class))
        record.protection_class = ProtectionClass(protection_class)
        record.wrap_type = wrap_types.get(protection_class, 2)
        record.key_type = 0
        record.wrapped_key = aes_wrap(key, kek)
        keybag.classes[record.protection_class] = record
    return keybag


def cbc_encrypt(key, data, padding="zeros"):
    """AES-256-CBC with a zero IV; pads with zeros (files) or PKCS#7 (Manifest.db)."""
    if padding == "pkcs7":
        pad_len = 16 - len(data) % 16
        data += bytes([pad_len]) * pad_len
    elif len(data) % 16:
        data += b"\x00" * (16 - len(data) % 16)
    return Crypto.Cipher.AES.new(key, Crypto.Cipher.AES.MODE_CBC, iv=b"\x00" * 16).encrypt(data)


def decrypt_bytes(key, data):
    """Whole-buffer decryption through the streaming cipher."""
    return b"".join(decrypt_stream(key, [data]))


def file_plist(protection_class, wrapped_key, size, last_modified=1600000000, use_uid=True,
               key_header=None, extra_root=None):
    """An NSKeyedArchiver MBFile blob as stored in Manifest.db's ``file`` column."""
    ref = plistlib.UID if use_uid else int
    if key_header is None:
        key_header = struct.pack("<l", int(protection_class))
    root = {
        "$class": ref(3),
        "LastModified": last_modified,
        "Size": size,
        "ProtectionClass": protection_class,
        "EncryptionKey": ref(2),
        "Mode": 33188,
        "RelativePath": ref(4),
    }
    root.update(extra_root or {})
    archive = {
        "$version": 100000,
        "$archiver": "NSKeyedArchiver",
        "$top": {"root": ref(1)},
        "$objects": [
            "$null",
            root,
            {"NS.data": key_header + wrapped_key, "$class": ref(5)},
            {"$classname": "MBFile", "$classes": ["MBFile", "NSObject"]},
            "Library/file",
            {"$classname": "NSMutableData", "$classes": ["NSMutableData", "NSData", "NSObject"]},
        ],
    }
    return plistlib.dumps(archive, fmt=plistlib.FMT_BINARY)


def file_id_for(domain, relative_path):
    return hashlib.sha1(f"{domain}-{relative_path}".encode("utf-8")).hexdigest()


def create_manifest_db(path, rows):
    conn = sqlite3.connect(str(path))
    try:
        conn.execute("CREATE TABLE Files (fileID TEXT PRIMARY KEY, domain TEXT, relativePath TEXT, "
                     "flags INTEGER, file BLOB)")
        conn.executemany("INSERT INTO Files VALUES (?, ?, ?, ?, ?)", rows)
        conn.commit()
    finally:
        conn.close()


def sms_database(messages):
    """
    Bytes of a minimal sms.db; ``messages`` is a list of ``(handle, text, attachment_filenames)``.

    Only the tables and columns the attachment query joins are created.
    """
    with tempfile.TemporaryDirectory() as scratch:
        path = Path(scratch) / "sms.db"
        conn = sqlite3.connect(str(path))
        try:
            conn.executescript(
                "CREATE TABLE handle (ROWID INTEGER PRIMARY KEY AUTOINCREMENT, id TEXT);"
                "CREATE TABLE message (ROWID INTEGER PRIMARY KEY AUTOINCREMENT, handle_id INTEGER, date INTEGER, "
                "service TEXT, is_from_me INTEGER, text TEXT, cache_has_attachments INTEGER);"
                "CREATE TABLE attachment (ROWID INTEGER PRIMARY KEY AUTOINCREMENT, filename TEXT);"
                "CREATE TABLE message_attachment_join (message_id INTEGER, attachment_id INTEGER);"
            )
            handle_ids = {}
            for handle, text, attachments in messages:
                if handle not in handle_ids:
                    handle_ids[handle] = conn.execute("INSERT INTO handle (id) VALUES (?)", (handle,)).lastrowid
                message_id = conn.execute(
                    "INSERT INTO message (handle_id, date, service, is_from_me, text, cache_has_attachments) "
                    "VALUES (?, 0, 'SMS', 0, ?, ?)",
                    (handle_ids[handle], text, 1 if attachments else 0),
                ).lastrowid
                for filename in attachments:
                    attachment_id = conn.execute("INSERT INTO attachment (filename) VALUES (?)", (filename,)).lastrowid
                    conn.execute("INSERT INTO message_attachment_join VALUES (?, ?)", (message_id, attachment_id))
            conn.commit()
        finally:
            conn.close()
        return path.read_bytes()


class BackupFile:
    def __init__(self, domain, relative_path, content, protection_class=ProtectionClass.NS_FILE_PROTECTION_NONE,
                 last_modified=1600000000):
        self.domain = domain
        self.relative_path = relative_path
        self.content = content
        self.protection_class = protection_class
        self.last_modified = last_modified
        self.file_id = file_id_for(domain, relative_path)


class FixtureBackup:
    """An encrypted backup directory written to disk, plus the secrets used to build it."""

    def __init__(self, directory, files, class_keys=None, wrap_types=None, password=PASSWORD,
                 manifest_class=ProtectionClass.NS_FILE_PROTECTION_NONE, directories=()):
        self.directory = Path(directory)
        self.password = password
        self.kek = reference_passcode_key(password)
        if class_keys is None:
            class_keys = {ProtectionClass.NS_FILE_PROTECTION_NONE: os.urandom(32)}
        self.class_keys = class_keys
        self.files = list(files)
        self.keybag_bytes = encode_records(keybag_records(class_keys, self.kek, wrap_types))

        rows = []
        for f in self.files:
            file_key = os.urandom(32)
            # Files may use a class the keybag lacks; wrap with a throwaway key then.
            class_key = class_keys.get(f.protection_class, os.urandom(32))
            blob_dir = self.directory / f.file_id[:2]
            blob_dir.mkdir(parents=True, exist_ok=True)
            (blob_dir / f.file_id).write_bytes(cbc_encrypt(file_key, f.content))
            metadata = file_plist(int(f.protection_class), aes_wrap(file_key, class_key), len(f.content),
                                  last_modified=f.last_modified)
            rows.append((f.file_id, f.domain, f.relative_path, 1, metadata))
        for domain, relative_path in directories:
            rows.append((file_id_for(domain, relative_path), domain, relative_path, 2, None))

        self.manifest_key = os.urandom(32)
        with tempfile.TemporaryDirectory() as scratch:
            plain_db = Path(scratch) / "Manifest.db"
            create_manifest_db(plain_db, rows)
            self.manifest_db_plaintext = plain_db.read_bytes()
        (self.directory / "Manifest.db").write_bytes(
            cbc_encrypt(self.manifest_key, self.manifest_db_plaintext, padding="pkcs7"))

        manifest_class_key = class_keys.get(manifest_class, os.urandom(32))
        manifest_plist = {
            "IsEncrypted": True,
            "BackupKeyBag": self.keybag_bytes,
            "ManifestKey": struct.pack("<l", int(manifest_class)) + aes_wrap(self.manifest_key, manifest_class_key),
            "Version": "10.0",
        }
        with open(self.directory / "Manifest.plist", "wb") as f:
            plistlib.dump(manifest_plist, f, fmt=plistlib.FMT_BINARY)
