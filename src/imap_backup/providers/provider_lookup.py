"""
Provider Lookup

Per-provider connection settings and quirks, keyed by the domain of the
account's email address. Adding a provider means adding a row to PROVIDERS.

Each record has:
    host: IMAP host name (None when it must come from the account conf)
    port: IMAP port
    ssl: Whether to connect with implicit TLS
    root: Reference name used when listing mailboxes
    sets_seen_flags_on_fetch: Fetching a message body sets \\Seen on the server,
        even for BODY.PEEK[]
"""

import copy

DEFAULT_PROVIDER = {
    "host": None,
    "port": 993,
    "ssl": True,
    "root": "",
    "sets_seen_flags_on_fetch": False,
}

_GMAIL = {**DEFAULT_PROVIDER, "host": "imap.gmail.com", "root": "/"}
_FASTMAIL = {**DEFAULT_PROVIDER, "host": "imap.fastmail.com", "root": "INBOX"}
_OUTLOOK = {**DEFAULT_PROVIDER, "host": "outlook.office365.com"}
_ICLOUD = {**DEFAULT_PROVIDER, "host": "imap.mail.me.com"}

PROVIDERS = {
    "gmail.com": _GMAIL,
    "googlemail.com": _GMAIL,
    "fastmail.fm": _FASTMAIL,
    "fastmail.com": _FASTMAIL,
    "purelymail.com": {**DEFAULT_PROVIDER, "host": "mailserver.purelymail.com", "sets_seen_flags_on_fetch": True},
    "outlook.com": _OUTLOOK,
    "hotmail.com": _OUTLOOK,
    "office365.com": _OUTLOOK,
    "icloud.com": _ICLOUD,
    "me.com": _ICLOUD,
    "yahoo.com": {**DEFAULT_PROVIDER, "host": "imap.mail.yahoo.com"},
}


def email_domain(username):
    """Return the lower-cased domain part of an email address, or "" if there is none."""
    if not username or "@" not in username:
        return ""
    return username.rsplit("@", 1)[1].strip().lower()


def lookup(username):
    """
    Return a copy of the provider record for an account.

    Unknown domains get DEFAULT_PROVIDER, whose host is None.
    """
    return copy.deepcopy(PROVIDERS.get(email_domain(username), DEFAULT_PROVIDER))
