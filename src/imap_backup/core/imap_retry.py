"""
IMAP Retry Logic

Two layers of retry:

- RetryPolicy / retry_call: bounded retry of one mailbox operation on an
  explicit allow-list of exception types (e.g. a dropped connection during
  UID FETCH, a BAD response to APPEND).
- ConnectionProxy: transparent retry of commands the server answers with a
  transient "busy" NO response (e.g. Microsoft 365 "Server Busy").
"""

from __future__ import annotations

import imaplib
import socket
import time
from dataclasses import dataclass

from imap_backup.errors import TransientProtocolError
from imap_backup.utils import imap_common

# Connection reset, premature end of stream, generic I/O failure.
# imaplib reports a dropped socket as IMAP4.abort.
FETCH_RETRY_ERRORS = (ConnectionResetError, EOFError, imaplib.IMAP4.abort, socket.timeout, OSError)

# Some servers transiently reject APPEND under load with a BAD response.
APPEND_RETRY_ERRORS = (imaplib.IMAP4.error,)

DEFAULT_FETCH_RETRY_LIMIT = 5
DEFAULT_APPEND_RETRY_LIMIT = 3


@dataclass(frozen=True)
class RetryPolicy:
    """Which errors to retry, how many attempts in total, and how long to wait between them."""

    errors: tuple = ()
    limit: int = DEFAULT_FETCH_RETRY_LIMIT
    initial_wait: float = 1.0
    multiplier: float = 2.0

    def __post_init__(self):
        if self.limit < 1:
            raise ValueError(f"limit must be >= 1, got {self.limit}")
        if self.initial_wait < 0:
            raise ValueError(f"initial_wait must be >= 0, got {self.initial_wait}")

    def is_retryable(self, exc: BaseException) -> bool:
        return isinstance(exc, self.errors)

    def wait_for(self, attempt: int) -> float:
        """Seconds to sleep after the given failed attempt (0-based)."""
        return self.initial_wait * (self.multiplier**attempt)


def fetch_policy(limit=DEFAULT_FETCH_RETRY_LIMIT, initial_wait=1.0) -> RetryPolicy:
    return RetryPolicy(errors=FETCH_RETRY_ERRORS, limit=limit, initial_wait=initial_wait)


def append_policy(limit=DEFAULT_APPEND_RETRY_LIMIT, initial_wait=1.0) -> RetryPolicy:
    return RetryPolicy(errors=APPEND_RETRY_ERRORS, limit=limit, initial_wait=initial_wait)


def retry_call(policy: RetryPolicy, fn, *, label="operation", before_retry=None, log_fn=None, sleep=time.sleep):
    """
    Call fn() under a retry policy.

    Args:
        policy: RetryPolicy describing retryable errors and limits
        fn: Zero-argument callable performing the operation
        label: Short description for log lines
        before_retry: Optional callable invoked before each new attempt
            (e.g. to re-establish the connection)
        log_fn: Output function (default: safe_print)
        sleep: Sleep function, replaceable in tests

    Returns:
        fn()'s result.

    Raises:
        TransientProtocolError: the policy was exhausted; __cause__ is the last error.
        Any non-retryable exception from fn() propagates unchanged.
    """
    log_fn = log_fn or imap_common.safe_print
    for attempt in range(policy.limit):
        try:
            return fn()
        except Exception as e:
            if not policy.is_retryable(e):
                raise
            if attempt + 1 >= policy.limit:
                raise TransientProtocolError(
                    f"{label} failed after {policy.limit} attempts: {e}", attempts=policy.limit
                ) from e
            wait = policy.wait_for(attempt)
            log_fn(f"Warning: {label} failed ({e}), retrying in {wait:g}s... (attempt {attempt + 1}/{policy.limit})")
            sleep(wait)
            if before_retry is not None:
                before_retry()


class ConnectionProxy:
    """Transparent proxy that retries IMAP commands on transient server errors.

    Wraps an imaplib.IMAP4 or IMAP4_SSL connection. For methods in
    RETRYABLE_METHODS that return (typ, data) tuples, retries on transient
    errors with exponential backoff.
    """

    TRANSIENT_PATTERNS = [b"UNAVAILABLE", b"Server Busy", b"try again", b"THROTTLED"]

    # Methods that are safe to retry and return (typ, data)
    RETRYABLE_METHODS = frozenset(
        {
            "uid",
            "select",
            "append",
            "list",
            "create",
            "expunge",
            "noop",
        }
    )

    def __init__(self, conn, max_retries=3, initial_wait=5, log_fn=None):
        if max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {max_retries}")
        if initial_wait < 0:
            raise ValueError(f"initial_wait must be >= 0, got {initial_wait}")
        self._conn = conn
        self._max_retries = max_retries
        self._initial_wait = initial_wait
        self._log_fn = log_fn or imap_common.safe_print

    @classmethod
    def _is_transient_error(cls, data):
        """Check if IMAP response data contains transient error patterns."""
        for item in data or []:
            if isinstance(item, bytes):
                for pattern in cls.TRANSIENT_PATTERNS:
                    if pattern in item:
                        return True
        return False

    def __getattr__(self, name):
        attr = getattr(self._conn, name)
        if name not in self.RETRYABLE_METHODS or not callable(attr):
            return attr

        def wrapper(*args, **kwargs):
            last_result = None
            for attempt in range(self._max_retries):
                result = attr(*args, **kwargs)
                if not isinstance(result, tuple) or len(result) < 2:
                    return result
                typ, data = result[0], result[1]
                if typ == "OK" or not self._is_transient_error(data):
                    return result
                last_result = result
                if attempt + 1 < self._max_retries:
                    wait = self._initial_wait * (2**attempt)
                    self._log_fn(f"Server busy, retrying in {wait}s... (attempt {attempt + 1}/{self._max_retries})")
                    time.sleep(wait)
            return last_result

        return wrapper
