"""
Error Types

Failure taxonomy shared by the session, mailbox, storage and sync layers.
"""


class ImapConnectionError(ConnectionError):
    """Connecting or logging in to the account's server failed. Fatal to the account run."""


class FolderNotFound(Exception):
    """The mailbox does not exist on the server."""

    def __init__(self, folder):
        super().__init__(f"Folder '{folder}' does not exist on server")
        self.folder = folder


class TransientProtocolError(Exception):
    """A retryable operation kept failing until its retry policy was exhausted."""

    def __init__(self, message, attempts):
        super().__init__(message)
        self.attempts = attempts


class CorruptLocalStoreError(Exception):
    """The local index does not agree with the mbox file it describes."""

    def __init__(self, path, reason):
        super().__init__(f"Corrupt local store {path}: {reason}")
        self.path = path
        self.reason = reason


class ImapCommandError(Exception):
    """The server answered a command with NO. Not retried."""

    def __init__(self, command, typ, data):
        detail = b" ".join(d for d in data or [] if isinstance(d, bytes)).decode("utf-8", errors="replace")
        super().__init__(f"{command} failed: {typ} {detail}".strip())
        self.command = command
        self.typ = typ
        self.data = data
