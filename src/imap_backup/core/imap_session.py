"""
IMAP Session Management

One authenticated connection per account, opened lazily and reused for every
mailbox of that account. Host, port and TLS come from the account conf when it
names a server, otherwise from the provider lookup table.
"""

from __future__ import annotations

import imaplib
import urllib.parse

from imap_backup.core.imap_retry import ConnectionProxy
from imap_backup.errors import ImapConnectionError
from imap_backup.providers import provider_lookup
from imap_backup.utils import imap_common

DEFAULT_MULTI_FETCH_SIZE = 1


def build_account_conf(
    username,
    password,
    local_path,
    folders=None,
    server=None,
    connection_options=None,
    multi_fetch_size=DEFAULT_MULTI_FETCH_SIZE,
):
    """
    Build a standard account config dict.

    Args:
        username: IMAP username / email address
        password: IMAP password (or app password)
        local_path: Directory holding this account's backup
        folders: Mailbox names to back up; empty means every mailbox
        server: Optional host or imap(s)://host:port URL overriding the provider table
        connection_options: Optional dict with "port" and/or "ssl"
        multi_fetch_size: Number of messages requested per UID FETCH

    Returns:
        Dict with keys: username, password, local_path, folders, server,
        connection_options, multi_fetch_size
    """
    if not username:
        raise ValueError("username is required")
    if not local_path:
        raise ValueError(f"local_path is required for {username}")
    if multi_fetch_size is None or int(multi_fetch_size) < 1:
        raise ValueError(f"multi_fetch_size must be >= 1, got {multi_fetch_size}")

    return {
        "username": username,
        "password": password,
        "local_path": local_path,
        "folders": list(folders or []),
        "server": server,
        "connection_options": dict(connection_options or {}),
        "multi_fetch_size": int(multi_fetch_size),
    }


def resolve_server(conf, provider=None):
    """
    Work out (host, port, use_ssl) for an account conf.

    An explicit "server" wins over the provider table. It may be a bare host
    or a URL: imap:// and tcp:// mean plain IMAP, imaps:// and ssl:// mean TLS.
    "connection_options" can still override port and ssl afterwards.
    """
    provider = provider or provider_lookup.lookup(conf.get("username"))
    host = provider.get("host")
    port = provider.get("port")
    use_ssl = provider.get("ssl", True)

    server = conf.get("server")
    if server:
        if "://" in server:
            parsed = urllib.parse.urlparse(server)
            scheme = parsed.scheme.lower()
            if not scheme or not parsed.hostname:
                raise ImapConnectionError(f"Invalid IMAP server: {server}")
            if scheme in {"imap", "tcp"}:
                use_ssl = False
            elif scheme in {"imaps", "imap+ssl", "imapssl", "ssl"}:
                use_ssl = True
            else:
                raise ImapConnectionError(f"Unsupported IMAP scheme: {scheme}")
            host = parsed.hostname
            port = parsed.port
        else:
            host = server
            port = None

    options = conf.get("connection_options") or {}
    if "port" in options:
        port = options["port"]
    if "ssl" in options:
        use_ssl = bool(options["ssl"])

    if not host:
        raise ImapConnectionError(f"No IMAP server known for {conf.get('username')}; set 'server' in the account config")
    return host, port, use_ssl


def open_imap_connection(host, port=None, use_ssl=True):
    """Open a (not yet authenticated) imaplib connection."""
    try:
        if use_ssl:
            return imaplib.IMAP4_SSL(host, port) if port else imaplib.IMAP4_SSL(host)
        return imaplib.IMAP4(host, port) if port else imaplib.IMAP4(host)
    except (imaplib.IMAP4.error, OSError) as e:
        raise ImapConnectionError(f"Connection error to {host}: {e}") from e


class ImapSession:
    """
    Lazily-connected, authenticated IMAP session for one account.

    The underlying client is an imaplib connection wrapped in a
    ConnectionProxy, so "server busy" answers are retried transparently.
    """

    def __init__(self, conf, provider=None, busy_retries=3, busy_wait=5, log_fn=None):
        self.conf = conf
        self.provider = provider or provider_lookup.lookup(conf.get("username"))
        self._busy_retries = busy_retries
        self._busy_wait = busy_wait
        self._log_fn = log_fn or imap_common.safe_print
        self._client = None

    @property
    def username(self):
        return self.conf["username"]

    @property
    def sets_seen_flags_on_fetch(self):
        return bool(self.provider.get("sets_seen_flags_on_fetch"))

    @property
    def connected(self):
        return self._client is not None

    @property
    def client(self):
        return self.connect()

    def connect(self):
        """
        Return the live client, connecting and logging in first if needed.

        Raises:
            ImapConnectionError: network or authentication failure
        """
        if self._client is not None:
            return self._client

        host, port, use_ssl = resolve_server(self.conf, self.provider)
        conn = open_imap_connection(host, port, use_ssl)
        try:
            conn.login(self.username, self.conf.get("password") or "")
        except (imaplib.IMAP4.error, OSError) as e:
            _close_quietly(conn)
            raise ImapConnectionError(f"Login failed for {self.username} on {host}: {e}") from e

        self._client = ConnectionProxy(
            conn, max_retries=self._busy_retries, initial_wait=self._busy_wait, log_fn=self._log_fn
        )
        return self._client

    def ensure_connection(self):
        """
        Verify the connection is still alive, reconnecting if necessary.
        Returns the (possibly new) client.
        """
        if self._client is not None:
            try:
                typ, _ = self._client.noop()
                if typ == "OK":
                    return self._client
            except (imaplib.IMAP4.error, OSError):
                # Connection is broken (network error, timeout, etc.) - fall through to reconnect
                pass
            self._drop()
        return self.connect()

    def disconnect(self):
        """Log out and release the connection. Safe to call repeatedly."""
        if self._client is None:
            return
        client, self._client = self._client, None
        try:
            client.logout()
        except (imaplib.IMAP4.error, OSError):
            _close_quietly(client)

    def list_mailboxes(self, pattern="*"):
        """
        List selectable mailbox names matching a LIST wildcard pattern,
        relative to the provider's root reference.
        """
        root = self.provider.get("root") or ""
        typ, data = self.connect().list(imap_common.quote_mailbox(root), imap_common.quote_mailbox(pattern))
        if typ != "OK" or not data:
            return []

        names = []
        for item in data:
            if item is None:
                continue
            if isinstance(item, tuple):
                item = b"".join(part for part in item if isinstance(part, bytes))
            if not imap_common.is_selectable(item):
                continue
            names.append(imap_common.normalize_folder_name(item))
        return names

    def _drop(self):
        client, self._client = self._client, None
        if client is not None:
            _close_quietly(client)


def _close_quietly(conn):
    try:
        conn.shutdown()
    except (imaplib.IMAP4.error, OSError, AttributeError):
        pass
