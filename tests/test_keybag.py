import struct
import unittest

from ios_backup_extract.constants import ProtectionClass
from ios_backup_extract.errors import MalformedKeybag
from ios_backup_extract.keybag import parse_keybag

from tests.helpers import (
    BAG_UUID,
    DPIC,
    SALT,
    class_uuid,
    encode_keybag,
    encode_records,
    keybag_records,
    reference_passcode_key,
)

KEK = reference_passcode_key("password")
NONE = ProtectionClass.NS_FILE_PROTECTION_NONE
COMPLETE = ProtectionClass.NS_FILE_PROTECTION_COMPLETE


class KeybagParserTests(unittest.TestCase):

    def setUp(self):
        self.class_keys = {
            COMPLETE: b"\x01" * 32,
            ProtectionClass.NS_FILE_PROTECTION_COMPLETE_UNLESS_OPEN: b"\x02" * 32,
            NONE: b"\x04" * 32,
        }
        self.records = keybag_records(self.class_keys, KEK)
        self.blob = encode_records(self.records)

    def test_bag_attributes_and_classes(self):
        keybag = parse_keybag(self.blob)
        self.assertEqual(keybag.uuid, BAG_UUID)
        self.assertEqual(keybag.salt, SALT)
        self.assertEqual(keybag.double_protection_iterations, DPIC)
        self.assertEqual(keybag.attributes["VERS"], 4)
        self.assertEqual(keybag.wrap, 0)
        self.assertEqual(set(keybag.classes), set(self.class_keys))

        record = keybag.classes[NONE]
        self.assertEqual(record.uuid, class_uuid(NONE))
        self.assertEqual(record.protection_class, NONE)
        self.assertEqual(record.wrap_type, 2)
        self.assertEqual(record.key_type, 0)
        self.assertEqual(len(record.wrapped_key), 40)
        self.assertIsNone(record.unwrapped_key)

    def test_class_fields_do_not_leak_into_bag_attributes(self):
        keybag = parse_keybag(self.blob)
        self.assertNotIn("WPKY", keybag.attributes)
        self.assertNotIn("CLAS", keybag.attributes)
        self.assertEqual(keybag.attributes["UUID"], BAG_UUID)

    def test_structural_round_trip(self):
        for class_keys, public_keys in (
            (self.class_keys, None),
            ({NONE: b"\x09" * 32}, {NONE: b"\x42" * 32}),
            ({ProtectionClass.SEC_ATTR_ACCESSIBLE_ALWAYS_THIS_DEVICE_ONLY: b"\x0b" * 32}, None),
        ):
            blob = encode_records(keybag_records(class_keys, KEK, public_keys=public_keys))
            with self.subTest(classes=sorted(class_keys)):
                self.assertEqual(encode_keybag(parse_keybag(blob)), blob)

    def test_public_key_is_kept_on_the_record(self):
        blob = encode_records(keybag_records({NONE: b"\x09" * 32}, KEK, public_keys={NONE: b"\x42" * 32}))
        self.assertEqual(parse_keybag(blob).classes[NONE].public_key, b"\x42" * 32)

    def test_buffer_ending_inside_header(self):
        with self.assertRaises(MalformedKeybag):
            parse_keybag(self.blob + b"SAL")

    def test_length_exceeding_remaining_bytes(self):
        with self.assertRaises(MalformedKeybag):
            parse_keybag(self.blob + b"JUNK" + struct.pack(">L", 100) + b"\x00" * 10)

    def test_truncated_in_the_middle(self):
        with self.assertRaises(MalformedKeybag):
            parse_keybag(self.blob[:-5])

    def test_class_index_out_of_range(self):
        records = [r if r[0] != "CLAS" else ("CLAS", 12) for r in self.records]
        with self.assertRaises(MalformedKeybag):
            parse_keybag(encode_records(records))

    def test_clas_without_pending_class_key(self):
        records = self.records[:10] + [("CLAS", 1)] + self.records[10:]
        with self.assertRaises(MalformedKeybag):
            parse_keybag(encode_records(records))

    def test_duplicate_class(self):
        records = self.records + keybag_records({COMPLETE: b"\x05" * 32}, KEK)[10:]
        with self.assertRaises(MalformedKeybag):
            parse_keybag(encode_records(records))

    def test_missing_passcode_attributes(self):
        for missing in ("DPSL", "DPIC", "SALT", "ITER"):
            records = [r for r in self.records if r[0] != missing]
            with self.subTest(missing=missing), self.assertRaises(MalformedKeybag):
                parse_keybag(encode_records(records))

    def test_four_byte_salt_is_malformed(self):
        for salt_tag in ("DPSL", "SALT"):
            records = [(tag, b"\x01\x02\x03\x04" if tag == salt_tag else value) for tag, value in self.records]
            with self.subTest(tag=salt_tag), self.assertRaises(MalformedKeybag):
                parse_keybag(encode_records(records))

    def test_class_key_without_clas_is_dropped(self):
        records = self.records + [("UUID", b"\x77" * 16), ("WRAP", 2), ("WPKY", b"\x00" * 40)]
        with self.assertLogs("ios_backup_extract.keybag", level="WARNING"):
            keybag = parse_keybag(encode_records(records))
        self.assertEqual(set(keybag.classes), set(self.class_keys))

    def test_first_uuid_is_the_bag_uuid(self):
        records = [("UUID", b"\xaa" * 16), ("WRAP", 0), ("SALT", SALT), ("ITER", 1), ("DPIC", 1), ("DPSL", SALT),
                   ("UUID", b"\xbb" * 16), ("CLAS", 4), ("WRAP", 2), ("WPKY", b"\x00" * 40)]
        keybag = parse_keybag(encode_records(records))
        self.assertEqual(keybag.uuid, b"\xaa" * 16)
        self.assertEqual(keybag.classes[NONE].uuid, b"\xbb" * 16)

    def test_class_tags_before_bag_wrap_are_bag_attributes(self):
        # Until the bag-level WRAP is seen, class key tags belong to the bag.
        records = [("UUID", b"\xaa" * 16), ("SALT", SALT), ("ITER", 1), ("DPIC", 1), ("DPSL", SALT),
                   ("UUID", b"\xbb" * 16), ("CLAS", 4), ("WRAP", 2), ("WPKY", b"\x00" * 40)]
        keybag = parse_keybag(encode_records(records))
        self.assertEqual(keybag.attributes["WRAP"], 2)
        self.assertIsNone(keybag.classes[NONE].wrap_type)


if __name__ == "__main__":
    unittest.main()
