"""
IMAP Folder

Wraps one named mailbox on an ImapSession. Every read puts the mailbox into
read-only mode (EXAMINE) first and every mutation into read-write mode
(SELECT). A NO answer to either is translated into FolderNotFound.
"""

from __future__ import annotations

import datetime
import enum
import imaplib
import time

from imap_backup.core import imap_retry
from imap_backup.errors import FolderNotFound, ImapCommandError
from imap_backup.utils import imap_common

FETCH_ATTRIBUTES = "(UID FLAGS BODY.PEEK[])"


class AccessMode(enum.Enum):
    UNSELECTED = "unselected"
    EXAMINED = "examined"
    SELECTED = "selected"


class ImapFolder:
    """
    One mailbox on the server.

    Args:
        session: ImapSession owning the connection
        name: Mailbox name (unencoded)
        fetch_retry: RetryPolicy for UID FETCH (default: imap_retry.fetch_policy())
        append_retry: RetryPolicy for APPEND (default: imap_retry.append_policy())
        log_fn: Output function (default: safe_print)
        sleep: Sleep function used between retries
    """

    def __init__(self, session, name, fetch_retry=None, append_retry=None, log_fn=None, sleep=time.sleep):
        self.session = session
        self.name = name
        self.fetch_retry = fetch_retry or imap_retry.fetch_policy()
        self.append_retry = append_retry or imap_retry.append_policy()
        self.mode = AccessMode.UNSELECTED
        self._log_fn = log_fn or imap_common.safe_print
        self._sleep = sleep
        self._uid_validity = None
        self._quoted_name = imap_common.quote_mailbox(name)

    def __repr__(self):
        return f"ImapFolder({self.name!r}, mode={self.mode.value})"

    @property
    def client(self):
        return self.session.client

    def examine(self):
        """Open the mailbox read-only."""
        self._open(readonly=True)

    def select(self):
        """Open the mailbox read-write."""
        self._open(readonly=False)

    def _open(self, readonly):
        client = self.client
        typ, data = client.select(self._quoted_name, readonly=readonly)
        if typ != "OK":
            self.mode = AccessMode.UNSELECTED
            self._log_fn(f"Warning: Folder '{self.name}' does not exist on server")
            raise FolderNotFound(self.name)

        self.mode = AccessMode.EXAMINED if readonly else AccessMode.SELECTED
        if self._uid_validity is None:
            _, values = client.response("UIDVALIDITY")
            for value in values or []:
                if value is not None:
                    self._uid_validity = int(value)

    def exists(self):
        try:
            self.examine()
        except FolderNotFound:
            return False
        return True

    def create(self):
        """Create the mailbox unless it already exists."""
        if self.exists():
            return
        typ, data = self.client.create(self._quoted_name)
        if typ != "OK":
            raise ImapCommandError("CREATE", typ, data)

    @property
    def uid_validity(self):
        """The server's UIDVALIDITY for this mailbox, cached once seen."""
        if self._uid_validity is None:
            self.examine()
        return self._uid_validity

    def uids(self):
        """All UIDs in the mailbox, ascending. Empty if the mailbox is empty or missing."""
        try:
            self.examine()
        except FolderNotFound:
            return []

        typ, data = self.client.uid(imap_common.CMD_SEARCH, None, "ALL")
        uids = imap_common.parse_search_response(data) if typ == "OK" else None
        if uids is None:
            self._log_fn(f"Warning: Folder '{self.name}' returned a malformed SEARCH response: {typ} {data!r}")
            return []
        return uids

    def fetch_multi(self, uids):
        """
        Fetch bodies and flags for the given UIDs.

        Returns a list of {"uid", "body", "flags"} dicts, or None if the
        mailbox no longer exists. Dropped connections are retried per
        fetch_retry, reconnecting and re-examining between attempts.
        """
        if not uids:
            return []

        uid_set = imap_common.format_uid_set(uids)

        def attempt():
            typ, data = self.client.uid(imap_common.CMD_FETCH, uid_set, FETCH_ATTRIBUTES)
            if typ != "OK":
                raise ImapCommandError("UID FETCH", typ, data)
            return imap_common.parse_fetch_response(data)

        try:
            self.examine()
            return imap_retry.retry_call(
                self.fetch_retry,
                attempt,
                label=f"[{self.name}] UID FETCH {uid_set}",
                before_retry=self._reopen_readonly,
                log_fn=self._log_fn,
                sleep=self._sleep,
            )
        except FolderNotFound:
            return None

    def append(self, body, flags=None, date=None):
        """
        Append a message.

        Args:
            body: Raw message bytes
            flags: Iterable of flags to set on the new message
            date: Optional datetime used as the INTERNALDATE

        Returns:
            (uid, uid_validity) from the server's APPENDUID acknowledgement,
            (None, None) if the server does not report one.
        """
        flag_list = imap_common.format_flag_list(flags)
        date_arg = None
        if date is not None:
            if date.tzinfo is None:
                date = date.replace(tzinfo=datetime.timezone.utc)
            date_arg = imaplib.Time2Internaldate(date)

        def attempt():
            typ, data = self.client.append(self._quoted_name, flag_list, date_arg, body)
            if typ != "OK":
                raise ImapCommandError("APPEND", typ, data)
            return data

        data = imap_retry.retry_call(
            self.append_retry,
            attempt,
            label=f"[{self.name}] APPEND",
            before_retry=self.session.ensure_connection,
            log_fn=self._log_fn,
            sleep=self._sleep,
        )
        uid_validity, uid = imap_common.parse_append_uid(data)
        if uid_validity is not None:
            self._uid_validity = uid_validity
        return uid, uid_validity

    def set_flags(self, uids, flags):
        self._store(uids, imap_common.OP_ADD_FLAGS, flags)

    def clear_flags(self, uids, flags):
        self._store(uids, imap_common.OP_REMOVE_FLAGS, flags)

    def _store(self, uids, operation, flags):
        if not uids:
            return
        self.select()
        typ, data = self.client.uid(
            imap_common.CMD_STORE, imap_common.format_uid_set(uids), operation, imap_common.format_flag_list(flags)
        )
        if typ != "OK":
            raise ImapCommandError(f"UID STORE {operation}", typ, data)

    def unseen(self, uids):
        """The subset of uids lacking \\Seen. Empty or malformed responses count as none."""
        if not uids:
            return []
        try:
            self.examine()
        except FolderNotFound:
            return []

        typ, data = self.client.uid(imap_common.CMD_SEARCH, "UID", imap_common.format_uid_set(uids), "UNSEEN")
        if typ != "OK":
            return []
        return imap_common.parse_search_response(data) or []

    def purge(self):
        """Mark every message \\Deleted and expunge."""
        uids = self.uids()
        if not uids:
            return
        self.set_flags(uids, [imap_common.FLAG_DELETED])
        typ, data = self.client.expunge()
        if typ != "OK":
            raise ImapCommandError("EXPUNGE", typ, data)

    def _reopen_readonly(self):
        self.session.ensure_connection()
        self.examine()
