"""
IMAP Common Utilities

Shared helpers for the session, mailbox and sync layers: console output,
flag constants, mailbox-name encoding and parsing of raw imaplib responses.
"""

from __future__ import annotations

import base64
import re
import threading

# Standard IMAP flags
FLAG_SEEN = "\\Seen"
FLAG_ANSWERED = "\\Answered"
FLAG_FLAGGED = "\\Flagged"
FLAG_DRAFT = "\\Draft"
FLAG_DELETED = "\\Deleted"

# \Recent is session-specific and cannot be set by clients
# \Deleted should not be preserved as it marks messages for removal
PRESERVABLE_FLAGS = {FLAG_SEEN, FLAG_ANSWERED, FLAG_FLAGGED, FLAG_DRAFT}

# IMAP Commands
CMD_STORE = "STORE"
CMD_SEARCH = "SEARCH"
CMD_FETCH = "FETCH"
OP_ADD_FLAGS = "+FLAGS"
OP_REMOVE_FLAGS = "-FLAGS"

_print_lock = threading.Lock()

_UID_RE = re.compile(rb"UID\s+(\d+)", re.IGNORECASE)
_FETCH_START_RE = re.compile(rb"^\d+\s+\(")
_FLAGS_RE = re.compile(rb"FLAGS\s+\(([^)]*)\)", re.IGNORECASE)
_APPENDUID_RE = re.compile(rb"\[APPENDUID\s+(\d+)\s+(\d+)\]", re.IGNORECASE)
_LIST_RE = re.compile(r'\((?P<flags>.*?)\) (?P<delimiter>"[^"]*"|NIL) (?P<name>.+)$')


def safe_print(message: str) -> None:
    """Thread-safe print with short thread names for logs."""
    t_name = threading.current_thread().name
    short_name = t_name.replace("ThreadPoolExecutor-", "T-").replace("MainThread", "MAIN")
    with _print_lock:
        print(f"[{short_name}] {message}")


def encode_mailbox_name(name: str) -> str:
    """Encode a mailbox name in IMAP modified UTF-7 (RFC 3501 section 5.1.3)."""
    out = []
    pending = []

    def flush():
        if pending:
            raw = "".join(pending).encode("utf-16-be")
            b64 = base64.b64encode(raw).decode("ascii").rstrip("=").replace("/", ",")
            out.append(f"&{b64}-")
            pending.clear()

    for ch in name:
        if 0x20 <= ord(ch) <= 0x7E:
            flush()
            out.append("&-" if ch == "&" else ch)
        else:
            pending.append(ch)
    flush()
    return "".join(out)


def decode_mailbox_name(value) -> str:
    """Decode an IMAP modified UTF-7 mailbox name."""
    if isinstance(value, bytes):
        value = value.decode("ascii", errors="replace")

    def _decode(match):
        chunk = match.group(1)
        if not chunk:
            return "&"
        padded = chunk.replace(",", "/") + "=" * (-len(chunk) % 4)
        return base64.b64decode(padded).decode("utf-16-be")

    return re.sub(r"&([^-]*)-", _decode, value)


def quote_mailbox(name: str) -> str:
    """Return the encoded, double-quoted form of a mailbox name for use as a command argument."""
    encoded = encode_mailbox_name(name)
    return '"' + encoded.replace("\\", "\\\\").replace('"', '\\"') + '"'


def normalize_folder_name(folder_info):
    """
    Parses one LIST response line and returns the decoded mailbox name.
    Handles quoted and unquoted names.
    """
    if isinstance(folder_info, bytes):
        folder_info = folder_info.decode("utf-8", errors="ignore")

    match = _LIST_RE.search(folder_info)
    name = match.group("name") if match else folder_info.split()[-1]
    name = name.strip()
    if len(name) >= 2 and name.startswith('"') and name.endswith('"'):
        name = name[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return decode_mailbox_name(name)


def is_selectable(folder_info) -> bool:
    if isinstance(folder_info, bytes):
        folder_info = folder_info.decode("utf-8", errors="ignore")
    return "\\noselect" not in folder_info.lower()


def format_uid_set(uids) -> str:
    """Comma-separated UID set, e.g. "3,7,8"."""
    return ",".join(str(int(uid)) for uid in uids)


def format_flag_list(flags) -> str | None:
    """
    Normalize flags to a parenthesized IMAP flag list.
    Returns None when there are no flags to send.
    """
    flags = [f for f in flags or [] if f]
    if not flags:
        return None
    return f"({' '.join(flags)})"


def parse_flags(raw) -> list[str]:
    """Extract the flag list from a FETCH metadata fragment like b'1 (UID 4 FLAGS (\\Seen))'."""
    if isinstance(raw, str):
        raw = raw.encode("utf-8", errors="ignore")
    match = _FLAGS_RE.search(raw or b"")
    if not match:
        return []
    return [f.decode("utf-8", errors="ignore") for f in match.group(1).split()]


def parse_search_response(data):
    """
    Parse the data part of a (UID) SEARCH response into a sorted list of ints.

    Returns None if the response is malformed, an empty list if it is empty.
    """
    if not data:
        return None
    numbers = []
    for item in data:
        if item is None:
            continue
        if isinstance(item, tuple):
            return None
        if isinstance(item, str):
            item = item.encode("ascii", errors="ignore")
        for token in item.split():
            if not token.isdigit():
                return None
            numbers.append(int(token))
    return sorted(numbers)


def parse_fetch_response(data) -> list[dict]:
    """
    Parse the data part of a UID FETCH response for BODY[] and FLAGS.

    imaplib returns a (metadata, literal) tuple per message followed by a
    bytes item holding whatever came after the literal, so FLAGS may sit in
    either place. Returns [{"uid": int, "body": bytes, "flags": [str]}].
    """
    items = []
    current = None
    for part in data or []:
        if isinstance(part, tuple) and len(part) >= 2:
            meta = part[0] or b""
            uid_match = _UID_RE.search(meta)
            if not uid_match:
                current = None
                continue
            current = {"uid": int(uid_match.group(1)), "body": part[1], "flags": parse_flags(meta)}
            items.append(current)
        elif isinstance(part, bytes):
            if _FETCH_START_RE.match(part):
                # A FETCH response of its own, e.g. an unsolicited FLAGS update
                current = None
            elif current is not None and not current["flags"]:
                current["flags"] = parse_flags(part)
    return items


def parse_append_uid(data):
    """
    Extract (uid_validity, uid) from an APPEND acknowledgement carrying an
    APPENDUID response code (RFC 4315). Returns (None, None) if absent.
    """
    for item in data or []:
        if isinstance(item, str):
            item = item.encode("utf-8", errors="ignore")
        if not isinstance(item, bytes):
            continue
        match = _APPENDUID_RE.search(item)
        if match:
            return int(match.group(1)), int(match.group(2))
    return None, None
