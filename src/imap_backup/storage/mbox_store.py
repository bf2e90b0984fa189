"""
Local Mailbox Store

One mailbox's backup on disk, as two files sharing a base name:

    <local_path>/<folder>.mbox  messages, appended in mboxrd format
    <local_path>/<folder>.imap  JSON index: {"version", "uid_validity", "messages"}

A third file, <folder>.restore, appears once messages are restored into a
mailbox whose UIDVALIDITY differs from the store's. It maps local UIDs to
the UIDs the server assigned, so an interrupted or repeated restore does not
append a message twice. It is removed when the index is moved over to the
mailbox's UIDs.

Each index entry records the UID, the byte offset and length of the framed
message in the mbox file, and the flags seen at download time. The mbox file
is only ever appended to. A message's bytes are flushed to disk before its
index entry is written, so a crash can leave unreferenced bytes at the end of
the mbox file but never an index entry pointing past it.
"""

from __future__ import annotations

import datetime
import json
import os
import re
from email import policy
from email.parser import BytesParser
from email.utils import parseaddr, parsedate_to_datetime

from imap_backup.errors import CorruptLocalStoreError

INDEX_VERSION = 3
MBOX_EXTENSION = ".mbox"
INDEX_EXTENSION = ".imap"
RESTORE_EXTENSION = ".restore"

DEFAULT_SENDER = "MAILER-DAEMON"
EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)

_FROM_QUOTE_RE = re.compile(rb"\n(>*From )")
_FROM_UNQUOTE_RE = re.compile(rb"\n>(>*From )")


def _parse_headers(body: bytes):
    try:
        return BytesParser(policy=policy.compat32).parsebytes(body, headersonly=True)
    except Exception:
        return None


def message_date(body: bytes):
    """The message's Date header as an aware datetime, or None."""
    headers = _parse_headers(body)
    raw = headers.get("Date") if headers is not None else None
    if not raw:
        return None
    try:
        date = parsedate_to_datetime(str(raw))
    except (TypeError, ValueError, IndexError):
        return None
    if date is not None and date.tzinfo is None:
        date = date.replace(tzinfo=datetime.timezone.utc)
    return date


def from_line(body: bytes) -> bytes:
    """The mbox "From " separator line for a message, without the newline."""
    headers = _parse_headers(body)
    sender = ""
    if headers is not None and headers.get("From"):
        sender = parseaddr(str(headers.get("From")))[1]
    sender = re.sub(r"\s+", "_", sender) or DEFAULT_SENDER
    date = message_date(body) or EPOCH
    return f"From {sender} {date.ctime()}".encode("utf-8", errors="replace")


def frame_message(body: bytes) -> bytes:
    """
    Frame a raw message as an mboxrd entry: separator line, body with
    ">From " quoting, then a terminating newline.
    """
    quoted = _FROM_QUOTE_RE.sub(rb"\n>\1", b"\n" + body)[1:]
    return from_line(body) + b"\n" + quoted + b"\n"


def unframe_message(framed: bytes) -> bytes:
    """Inverse of frame_message: recover the exact original message bytes."""
    newline = framed.find(b"\n")
    if not framed.startswith(b"From ") or newline < 0 or not framed.endswith(b"\n"):
        raise ValueError("not an mboxrd entry")
    quoted = framed[newline + 1 : -1]
    return _FROM_UNQUOTE_RE.sub(rb"\n\1", b"\n" + quoted)[1:]


def folder_base_path(local_path, folder):
    return os.path.join(local_path, *folder.split("/"))


class MboxStore:
    """
    Append-only local store for one mailbox.

    Use MboxStore.open() to get a loaded, validated store.
    """

    def __init__(self, local_path, folder):
        self.local_path = local_path
        self.folder = folder
        self._uid_validity = None
        self._messages = []

    @classmethod
    def open(cls, local_path, folder):
        """
        Load the store for a folder, validating the index against the mbox file.

        Raises:
            CorruptLocalStoreError: the index is unreadable or references
                bytes beyond the end of the mbox file. Both files are left
                untouched.
        """
        store = cls(local_path, folder)
        store.load()
        return store

    @property
    def mbox_path(self):
        return folder_base_path(self.local_path, self.folder) + MBOX_EXTENSION

    @property
    def index_path(self):
        return folder_base_path(self.local_path, self.folder) + INDEX_EXTENSION

    @property
    def restore_path(self):
        return folder_base_path(self.local_path, self.folder) + RESTORE_EXTENSION

    def __repr__(self):
        return f"MboxStore({self.folder!r}, uid_validity={self._uid_validity}, messages={len(self._messages)})"

    def exists(self):
        return os.path.exists(self.mbox_path) or os.path.exists(self.index_path)

    def load(self):
        self._uid_validity = None
        self._messages = []
        if not os.path.exists(self.index_path):
            return

        try:
            with open(self.index_path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise CorruptLocalStoreError(self.index_path, f"unreadable index: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("messages"), list):
            raise CorruptLocalStoreError(self.index_path, "index has no message list")

        uid_validity = data.get("uid_validity")
        if uid_validity is not None and not isinstance(uid_validity, int):
            raise CorruptLocalStoreError(self.index_path, f"invalid uid_validity {uid_validity!r}")

        mbox_size = os.path.getsize(self.mbox_path) if os.path.exists(self.mbox_path) else None
        messages = []
        previous_uid = None
        for entry in data["messages"]:
            try:
                record = {
                    "uid": int(entry["uid"]),
                    "offset": int(entry["offset"]),
                    "length": int(entry["length"]),
                    "flags": [str(f) for f in entry.get("flags") or []],
                }
            except (KeyError, TypeError, ValueError) as e:
                raise CorruptLocalStoreError(self.index_path, f"invalid message entry {entry!r}") from e

            if mbox_size is None:
                raise CorruptLocalStoreError(self.index_path, f"mbox file {self.mbox_path} is missing")
            if record["offset"] < 0 or record["length"] < 0 or record["offset"] + record["length"] > mbox_size:
                raise CorruptLocalStoreError(
                    self.index_path,
                    f"UID {record['uid']} spans bytes {record['offset']}-{record['offset'] + record['length']}"
                    f" but {self.mbox_path} is {mbox_size} bytes",
                )
            if previous_uid is not None and record["uid"] <= previous_uid:
                raise CorruptLocalStoreError(self.index_path, f"UIDs out of order at {record['uid']}")
            previous_uid = record["uid"]
            messages.append(record)

        self._uid_validity = uid_validity
        self._messages = messages

    @property
    def uid_validity(self):
        return self._uid_validity

    def set_uid_validity(self, value):
        """Record the UIDVALIDITY of a store that holds no messages yet."""
        if self._messages:
            raise ValueError(f"Cannot change uid_validity of {self.folder}: store already has messages")
        if value == self._uid_validity and os.path.exists(self.index_path):
            return
        self._uid_validity = value
        self._save_index()

    def uids(self):
        return [m["uid"] for m in self._messages]

    def messages(self):
        return [dict(m, flags=list(m["flags"])) for m in self._messages]

    def get(self, uid):
        for message in self._messages:
            if message["uid"] == uid:
                return dict(message, flags=list(message["flags"]))
        return None

    def __len__(self):
        return len(self._messages)

    def append(self, uid, body: bytes, flags=None):
        """
        Add one downloaded message.

        The framed message is written and fsynced to the end of the mbox file
        first; only then is the index entry added and the index saved. Entries
        stay sorted by UID, so a UID below the newest stored one is inserted
        in place while its bytes still go to the end of the mbox file.
        """
        uid = int(uid)
        if any(m["uid"] == uid for m in self._messages):
            raise ValueError(f"UID {uid} already present in {self.folder}")

        framed = frame_message(body)
        os.makedirs(os.path.dirname(self.mbox_path) or ".", exist_ok=True)
        with open(self.mbox_path, "ab") as f:
            offset = f.seek(0, os.SEEK_END)
            f.write(framed)
            f.flush()
            os.fsync(f.fileno())

        self._messages.append({"uid": uid, "offset": offset, "length": len(framed), "flags": list(flags or [])})
        if len(self._messages) > 1 and uid < self._messages[-2]["uid"]:
            self._messages.sort(key=lambda m: m["uid"])
        self._save_index()

    def read_framed(self, uid) -> bytes:
        message = self.get(uid)
        if message is None:
            raise KeyError(f"UID {uid} not in local store for {self.folder}")
        with open(self.mbox_path, "rb") as f:
            f.seek(message["offset"])
            return f.read(message["length"])

    def read(self, uid) -> bytes:
        """The original message bytes for a UID."""
        return unframe_message(self.read_framed(uid))

    def message_date(self, uid):
        return message_date(self.read(uid))

    def update_uid(self, old_uid, new_uid):
        """Point an index entry at a new UID (same UIDVALIDITY), keeping entries sorted."""
        if old_uid == new_uid:
            return
        if any(m["uid"] == new_uid for m in self._messages):
            raise ValueError(f"UID {new_uid} already present in {self.folder}")
        for message in self._messages:
            if message["uid"] == old_uid:
                message["uid"] = int(new_uid)
                break
        else:
            raise KeyError(f"UID {old_uid} not in local store for {self.folder}")
        self._messages.sort(key=lambda m: m["uid"])
        self._save_index()

    def relabel(self, uid_validity, uid_map):
        """
        Move every entry to a new UIDVALIDITY, e.g. after restoring into a
        freshly created mailbox. uid_map must cover every stored UID.
        """
        missing = [uid for uid in self.uids() if uid not in uid_map]
        if missing:
            raise ValueError(f"No new UID for {missing} in {self.folder}")
        new_uids = [int(uid_map[uid]) for uid in self.uids()]
        if len(set(new_uids)) != len(new_uids):
            raise ValueError(f"Duplicate new UIDs for {self.folder}")

        for message in self._messages:
            message["uid"] = int(uid_map[message["uid"]])
        self._messages.sort(key=lambda m: m["uid"])
        self._uid_validity = uid_validity
        self._save_index()

    def restore_progress(self, uid_validity):
        """
        {local UID: server UID} for messages already restored into a mailbox
        with the given UIDVALIDITY. Empty if the recorded progress belongs to
        another mailbox epoch or another version of this store.
        """
        try:
            with open(self.restore_path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            raise CorruptLocalStoreError(self.restore_path, f"unreadable restore progress: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("uids"), dict):
            raise CorruptLocalStoreError(self.restore_path, "restore progress has no UID map")
        if data.get("uid_validity") != uid_validity or data.get("source_uid_validity") != self._uid_validity:
            return {}
        try:
            return {int(uid): int(new_uid) for uid, new_uid in data["uids"].items()}
        except (TypeError, ValueError) as e:
            raise CorruptLocalStoreError(self.restore_path, f"invalid restore progress: {e}") from e

    def record_restored(self, uid_validity, uid, new_uid):
        """Persist that local UID `uid` now exists on the server as `new_uid`."""
        progress = self.restore_progress(uid_validity)
        progress[int(uid)] = int(new_uid)
        data = {
            "source_uid_validity": self._uid_validity,
            "uid_validity": uid_validity,
            "uids": {str(k): v for k, v in sorted(progress.items())},
        }
        _write_json(self.restore_path, data)

    def clear_restore_progress(self):
        if os.path.exists(self.restore_path):
            os.remove(self.restore_path)

    def rename(self, new_folder):
        """Rename the store's files to another folder name. Contents are untouched."""
        old_paths = [self.mbox_path, self.index_path, self.restore_path]
        self.folder = new_folder
        os.makedirs(os.path.dirname(self.mbox_path) or ".", exist_ok=True)
        for old, new in zip(old_paths, [self.mbox_path, self.index_path, self.restore_path]):
            if os.path.exists(old):
                os.replace(old, new)

    def _save_index(self):
        data = {"version": INDEX_VERSION, "uid_validity": self._uid_validity, "messages": self._messages}
        _write_json(self.index_path, data)


def _write_json(path, data):
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, sort_keys=True)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)


def list_local_folders(local_path):
    """Folder names (IMAP-style, "/"-separated) that have an index under local_path."""
    folders = []
    for dirpath, dirnames, filenames in os.walk(local_path):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith(".") and d != "__pycache__")
        for filename in sorted(filenames):
            if not filename.endswith(INDEX_EXTENSION):
                continue
            rel = os.path.relpath(os.path.join(dirpath, filename[: -len(INDEX_EXTENSION)]), local_path)
            folders.append("/".join(rel.split(os.sep)))
    return sorted(folders)
