"""
IMAP Email Restore Script

Uploads messages from a local backup (made by backup_imap_emails) to an IMAP
account. Missing folders are created. Messages keep their flags and original
date; the server assigns new UIDs, which are written back to the local index.

Configuration (Environment Variables):
    DEST_IMAP_HOST: IMAP server (host or imap(s)://host:port). Optional for
        well-known providers.
    DEST_IMAP_USERNAME, DEST_IMAP_PASSWORD: Credentials.
    BACKUP_LOCAL_PATH: Local backup directory to restore from.
    REPLACE: Set to "true" to empty each server folder before restoring.
    APPEND_RETRY_LIMIT: Attempts per APPEND on BAD responses (default: 3).

Usage:
    python3 -m imap_backup.restore_imap_emails \
        --dest-user "you@example.com" \
        --dest-pass "your-app-password" \
        --path "./my_backup"

    Restore a single folder:
    python3 -m imap_backup.restore_imap_emails --path "./my_backup" "Archive"
"""

import argparse
import sys

from imap_backup.core import imap_sync
from imap_backup.utils import account_config


def main():
    parser = argparse.ArgumentParser(description="Restore IMAP mailboxes from local mbox backups.")
    account_config.add_account_arguments(parser, "dest")
    parser.add_argument(
        "--replace",
        action="store_true",
        default=account_config.env_bool("REPLACE"),
        help="Delete all messages in each server folder before restoring",
    )
    args = parser.parse_args()

    try:
        workers = account_config.int_setting(args.workers, "MAX_WORKERS")
        confs = account_config.confs_from_args(args)
        folder_options = account_config.folder_options_from_env()
    except account_config.ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    print("\n--- Configuration Summary ---")
    for conf in confs:
        folders = ", ".join(conf["folders"]) if conf["folders"] else "(all local backups)"
        print(f"Account     : {conf['username']}")
        print(f"Local Path  : {conf['local_path']}")
        print(f"Folders     : {folders}")
    print(f"Replace     : {'Yes (server folders are emptied first)' if args.replace else 'No'}")
    print("-----------------------------\n")

    try:
        outcomes = imap_sync.run_accounts(
            confs,
            lambda conf: imap_sync.run_restore(conf, replace=args.replace, folder_options=folder_options),
            workers=workers,
        )
    except KeyboardInterrupt:
        print("\nRestore interrupted by user.")
        sys.exit(0)

    failures = imap_sync.print_summary(outcomes, "Restore")
    if failures:
        print(f"\nRestore completed with {failures} failure(s).")
        sys.exit(1)
    print("\nRestore completed successfully.")


if __name__ == "__main__":
    main()
