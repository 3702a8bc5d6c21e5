# -*- coding: utf-8 -*-
import enum

WRAP_PASSCODE = 2  # Class key wrapped with the passcode-derived key (AES key wrap)

CBC_BLOCK_SIZE = 16  # bytes.
CHUNK_SIZE = 1024**2  # 1MB blocks, must be a multiple of 16 bytes.

SQLITE_MAGIC = b"SQLite format 3\x00"


class ProtectionClass(enum.IntEnum):
    """Data protection classes, indexed as they appear in CLAS records and file metadata."""
    UNUSED = 0
    NS_FILE_PROTECTION_COMPLETE = 1
    NS_FILE_PROTECTION_COMPLETE_UNLESS_OPEN = 2
    NS_FILE_PROTECTION_COMPLETE_UNTIL_FIRST_USER_AUTHENTICATION = 3
    NS_FILE_PROTECTION_NONE = 4
    NS_FILE_PROTECTION_RECOVERY = 5
    SEC_ATTR_ACCESSIBLE_WHEN_UNLOCKED = 6
    SEC_ATTR_ACCESSIBLE_AFTER_FIRST_UNLOCK = 7
    SEC_ATTR_ACCESSIBLE_ALWAYS = 8
    SEC_ATTR_ACCESSIBLE_WHEN_UNLOCKED_THIS_DEVICE_ONLY = 9
    SEC_ATTR_ACCESSIBLE_AFTER_FIRST_UNLOCK_THIS_DEVICE_ONLY = 10
    SEC_ATTR_ACCESSIBLE_ALWAYS_THIS_DEVICE_ONLY = 11

    @classmethod
    def from_index(cls, index):
        if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < len(cls):
            raise ValueError(f"Protection class index out of range: {index!r}")
        return cls(index)

    @property
    def vendor_name(self):
        return _VENDOR_NAMES[self]


_VENDOR_NAMES = {
    ProtectionClass.UNUSED: "Unused",
    ProtectionClass.NS_FILE_PROTECTION_COMPLETE: "NSFileProtectionComplete",
    ProtectionClass.NS_FILE_PROTECTION_COMPLETE_UNLESS_OPEN: "NSFileProtectionCompleteUnlessOpen",
    ProtectionClass.NS_FILE_PROTECTION_COMPLETE_UNTIL_FIRST_USER_AUTHENTICATION:
        "NSFileProtectionCompleteUntilFirstUserAuthentication",
    ProtectionClass.NS_FILE_PROTECTION_NONE: "NSFileProtectionNone",
    ProtectionClass.NS_FILE_PROTECTION_RECOVERY: "NSFileProtectionRecovery?",
    ProtectionClass.SEC_ATTR_ACCESSIBLE_WHEN_UNLOCKED: "kSecAttrAccessibleWhenUnlocked",
    ProtectionClass.SEC_ATTR_ACCESSIBLE_AFTER_FIRST_UNLOCK: "kSecAttrAccessibleAfterFirstUnlock",
    ProtectionClass.SEC_ATTR_ACCESSIBLE_ALWAYS: "kSecAttrAccessibleAlways",
    ProtectionClass.SEC_ATTR_ACCESSIBLE_WHEN_UNLOCKED_THIS_DEVICE_ONLY: "kSecAttrAccessibleWhenUnlockedThisDeviceOnly",
    ProtectionClass.SEC_ATTR_ACCESSIBLE_AFTER_FIRST_UNLOCK_THIS_DEVICE_ONLY:
        "kSecAttrAccessibleAfterFirstUnlockThisDeviceOnly",
    ProtectionClass.SEC_ATTR_ACCESSIBLE_ALWAYS_THIS_DEVICE_ONLY: "kSecAttrAccessibleAlwaysThisDeviceOnly",
}


class RelativePath:
    """Relative paths for commonly accessed files."""
    ADDRESS_BOOK = "Library/AddressBook/AddressBook.sqlitedb"
    TEXT_MESSAGES = "Library/SMS/sms.db"
    CALL_HISTORY = "Library/CallHistoryDB/CallHistory.storedata"
    NOTES = "Library/Notes/notes.sqlite"
    CALENDARS = "Library/Calendar/Calendar.sqlitedb"
    HEALTH = "Health/healthdb.sqlite"
    SAFARI_HISTORY = "Library/Safari/History.db"


class RelativePathsLike:
    """Relative path wildcards (SQL LIKE) for commonly accessed groups of files."""
    ALL_FILES = "%"
    CAMERA_ROLL = "Media/DCIM/%APPLE/IMG%.%"
    SMS_ATTACHMENTS = "Library/SMS/Attachments/%.%"
    VOICEMAILS = "Library/Voicemail/%.amr"
    VOICE_RECORDINGS = "Library/Recordings/%"


class DomainLike:
    """Domain wildcards for commonly accessed apps and services."""
    HOME_DOMAIN = "HomeDomain"
    CAMERA_ROLL = "CameraRollDomain"
    MEDIA_DOMAIN = "MediaDomain"


class MatchFiles:
    """Paired relative paths and domains, e.g.
           backup.extract_files(**MatchFiles.CAMERA_ROLL, output_folder="./output")
    """
    CAMERA_ROLL = {"relative_paths_like": RelativePathsLike.CAMERA_ROLL, "domain_like": DomainLike.CAMERA_ROLL}
    SMS_ATTACHMENTS = {"relative_paths_like": RelativePathsLike.SMS_ATTACHMENTS, "domain_like": DomainLike.HOME_DOMAIN}
    VOICEMAILS = {"relative_paths_like": RelativePathsLike.VOICEMAILS, "domain_like": DomainLike.HOME_DOMAIN}
    VOICE_RECORDINGS = {"relative_paths_like": RelativePathsLike.VOICE_RECORDINGS, "domain_like": DomainLike.MEDIA_DOMAIN}
