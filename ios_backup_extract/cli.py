# -*- coding: utf-8 -*-
"""Command line front end: ``python -m ios_backup_extract BACKUP_DIR OUTPUT_DIR ...``."""

import argparse
import getpass
import logging
import os
import sqlite3
import sys

from .backup import EncryptedBackup
from .errors import BackupError

logger = logging.getLogger(__name__)


def build_parser():
    parser = argparse.ArgumentParser(description="Extract files from an encrypted iOS backup.")
    parser.add_argument("backup_dir", help="Path to the iOS backup directory (containing Manifest.db/plist).")
    parser.add_argument("output_dir", help="Directory where extracted files will be saved.")
    parser.add_argument("-p", "--password", help="Backup password (will prompt if not provided).", default=None)
    parser.add_argument("--derived-key", help="Hex passcode key from a previous run; skips password derivation.",
                        default=None)
    parser.add_argument("--relpath", help="SQL LIKE pattern for relativePath (e.g., 'Library/SMS/sms.db', 'Media/DCIM/%%').",
                        default=None)
    parser.add_argument("--domain", help="SQL LIKE pattern for domain (e.g., 'HomeDomain', 'CameraRollDomain').",
                        default=None)
    parser.add_argument("--fileid", help="Specific fileID (SHA1 hash) to extract.", default=None)
    parser.add_argument("--save-manifest", help="Also save a copy of the decrypted Manifest.db to this file path.",
                        default=None)
    parser.add_argument("--preserve-folders", help="Recreate relativePath folder structure in output.", action="store_true")
    parser.add_argument("--domain-folders", help="Create domain subfolders in output.", action="store_true")
    parser.add_argument("--incremental", help="Skip extraction if output file exists and is not older.", action="store_true")
    parser.add_argument("--test", help="Only test backup access and password, do not extract.", action="store_true")
    parser.add_argument("--sms-handle", help="Extract the attachments of all messages with this phone number "
                                             "or e-mail address (as stored in sms.db).", default=None)
    parser.add_argument("--show-key", help="Print the derived passcode key to stdout for reuse with --derived-key.",
                        action="store_true")
    parser.add_argument("--workers", help="Number of worker threads.", type=int, default=None)
    parser.add_argument("--log-level", help="Logging level (default: INFO).", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser


def run(args):
    password = args.password
    if password is None and args.derived_key is None:
        password = getpass.getpass("Enter backup password: ")
        if not password:
            logger.error("Password required for encrypted backup.")
            return 1

    with EncryptedBackup(backup_directory=args.backup_dir, passphrase=password,
                         derived_key=args.derived_key, max_workers=args.workers) as backup:
        if args.test:
            success = backup.test_backup_access()
            logger.info("Test Result: %s", "SUCCESS" if success else "FAILURE")
            return 0 if success else 1

        backup.unlock()
        if args.show_key:
            # Key material stays out of the log; stdout only, on request.
            print(backup.derived_key)

        if args.save_manifest:
            backup.save_manifest_file(args.save_manifest)

        if args.fileid:
            output_file = os.path.join(args.output_dir, args.fileid)
            backup.extract_file(file_id=args.fileid, output_filename=output_file)
            logger.info("Extracted fileID %s to %s", args.fileid, output_file)
        elif args.relpath or args.domain:
            report = backup.extract_files(
                output_folder=args.output_dir,
                relative_paths_like=args.relpath,
                domain_like=args.domain,
                preserve_folders=args.preserve_folders,
                domain_subfolders=args.domain_folders,
                incremental=args.incremental,
            )
            if report.failed:
                return 1

        if args.sms_handle:
            report = backup.extract_sms_attachments(output_folder=args.output_dir, handle=args.sms_handle,
                                                    preserve_folders=args.preserve_folders)
            if report.failed:
                return 1
    return 0


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if (not args.test and not args.fileid and not args.relpath and not args.domain and not args.sms_handle
            and not args.save_manifest):
        parser.error("You must specify criteria for extraction (--fileid, --relpath, --domain, --sms-handle) "
                     "or --save-manifest, unless using --test.")
    if args.fileid and (args.relpath or args.domain):
        parser.error("--fileid cannot be combined with --relpath or --domain.")

    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s: %(message)s")

    try:
        return run(args)
    except (BackupError, FileNotFoundError, ValueError, RuntimeError, sqlite3.Error) as e:
        logger.error("%s", e)
        return 1
    except KeyboardInterrupt:
        return 1


if __name__ == "__main__":
    sys.exit(main())
