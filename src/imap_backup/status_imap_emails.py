"""
IMAP Backup Status Script

Compares each folder's local backup with the server without changing either:
prints how many UIDs are stored locally, how many are on the server, and how
many are waiting to be downloaded.

Usage:
    python3 -m imap_backup.status_imap_emails --src-user "you@example.com" --path "./my_backup"
    python3 -m imap_backup.status_imap_emails --list-folders --src-user "you@example.com" --path .
"""

import argparse
import sys

from imap_backup.core import imap_sync
from imap_backup.core.imap_session import ImapSession
from imap_backup.errors import ImapConnectionError
from imap_backup.utils import account_config


def print_status(username, report):
    print(f"{username}")
    for entry in report:
        if entry.get("error"):
            print(f"  {entry['name']}: ERROR {entry['error']}")
            continue
        pending = len(set(entry["remote"]) - set(entry["local"]))
        print(f"  {entry['name']}: local {len(entry['local'])}, server {len(entry['remote'])}, to download {pending}")


def list_folders(conf):
    session = ImapSession(conf)
    try:
        return session.list_mailboxes("*")
    finally:
        session.disconnect()


def main():
    parser = argparse.ArgumentParser(description="Compare local IMAP backups with the server.")
    account_config.add_account_arguments(parser, "src", workers=False)
    parser.add_argument("--list-folders", action="store_true", help="Only list the folders on the server")
    args = parser.parse_args()

    try:
        confs = account_config.confs_from_args(args)
    except account_config.ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    failed = False
    for conf in confs:
        try:
            if args.list_folders:
                print(conf["username"])
                for name in list_folders(conf):
                    print(f"  {name}")
            else:
                print_status(conf["username"], imap_sync.status(conf))
        except ImapConnectionError as e:
            print(f"{conf['username']}: ERROR {e}")
            failed = True

    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
