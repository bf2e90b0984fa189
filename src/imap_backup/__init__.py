"""
IMAP Backup Tools

Incremental backup and restore of IMAP mailboxes to local mboxrd files,
keyed by server UIDs and guarded by UIDVALIDITY.
"""

__version__ = "1.0.4"
