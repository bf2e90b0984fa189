"""
IMAP Email Backup Script

Backs up IMAP mailboxes to a local directory. Each mailbox becomes an mboxrd
file ("<folder>.mbox") plus a JSON index ("<folder>.imap") recording the
server UIDVALIDITY and, per message, its UID, offset, length and flags.

Features:
- Incremental Backup: Only UIDs missing locally are downloaded, in ascending order.
- Crash Safety: Progress is saved after every message.
- UIDVALIDITY Tracking: If a mailbox was deleted and recreated on the server,
  the old local backup is moved aside to "<folder>-<old uidvalidity>".
- Multiple Accounts: --config takes a JSON file listing several accounts.

Configuration (Environment Variables):
    SRC_IMAP_HOST: IMAP server (host or imap(s)://host:port). Optional for
        well-known providers (Gmail, Fastmail, Outlook, iCloud, ...).
    SRC_IMAP_USERNAME, SRC_IMAP_PASSWORD: Credentials.
    BACKUP_LOCAL_PATH: Destination local directory.
    BATCH_SIZE: Messages requested per UID FETCH (default: 1).
    MAX_WORKERS: Accounts backed up concurrently with --config (default: 1).
    FETCH_RETRY_LIMIT: Attempts per UID FETCH on dropped connections (default: 5).

Usage:
    python3 -m imap_backup.backup_imap_emails \
        --src-user "you@example.com" \
        --src-pass "your-app-password" \
        --path "./my_backup" \
        INBOX Archive

    python3 -m imap_backup.backup_imap_emails --config accounts.json --workers 4
"""

import argparse
import sys

from imap_backup.core import imap_sync
from imap_backup.utils import account_config


def main():
    parser = argparse.ArgumentParser(description="Back up IMAP mailboxes to local mbox files.")
    account_config.add_account_arguments(parser, "src")
    parser.add_argument(
        "--batch",
        type=int,
        help="Messages per UID FETCH (or BATCH_SIZE; default: 1)",
    )
    args = parser.parse_args()

    try:
        batch = account_config.int_setting(args.batch, "BATCH_SIZE")
        workers = account_config.int_setting(args.workers, "MAX_WORKERS")
        confs = account_config.confs_from_args(args, multi_fetch_size=batch)
        folder_options = account_config.folder_options_from_env()
    except account_config.ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    print("\n--- Configuration Summary ---")
    for conf in confs:
        folders = ", ".join(conf["folders"]) if conf["folders"] else "(all)"
        print(f"Account     : {conf['username']}")
        print(f"Local Path  : {conf['local_path']}")
        print(f"Folders     : {folders}")
    print(f"Workers     : {workers}")
    print("-----------------------------\n")

    try:
        outcomes = imap_sync.run_accounts(
            confs,
            lambda conf: imap_sync.run_backup(conf, folder_options=folder_options),
            workers=workers,
        )
    except KeyboardInterrupt:
        print("\nBackup interrupted by user.")
        sys.exit(0)

    failures = imap_sync.print_summary(outcomes, "Backup")
    if failures:
        print(f"\nBackup completed with {failures} failure(s).")
        sys.exit(1)
    print("\nBackup completed successfully.")


if __name__ == "__main__":
    main()
