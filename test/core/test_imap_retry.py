"""
Tests for core/imap_retry.py

Tests cover:
- RetryPolicy validation and backoff
- retry_call: retry on allow-listed errors, immediate propagation of others,
  exhaustion surfacing TransientProtocolError
- ConnectionProxy: transparent retry of "server busy" answers
"""

import imaplib
import socket
from unittest.mock import MagicMock, patch

import pytest

from imap_backup.core import imap_retry
from imap_backup.errors import TransientProtocolError


class TestRetryPolicy:
    def test_defaults(self):
        fetch = imap_retry.fetch_policy()
        append = imap_retry.append_policy()
        assert fetch.limit == 5
        assert append.limit == 3

    def test_backoff_doubles(self):
        policy = imap_retry.RetryPolicy(errors=(OSError,), limit=4, initial_wait=1.0)
        assert [policy.wait_for(i) for i in range(3)] == [1.0, 2.0, 4.0]

    def test_invalid_limit(self):
        with pytest.raises(ValueError):
            imap_retry.RetryPolicy(limit=0)

    def test_negative_wait(self):
        with pytest.raises(ValueError):
            imap_retry.RetryPolicy(initial_wait=-1)

    @pytest.mark.parametrize(
        "exc",
        [
            ConnectionResetError("reset"),
            EOFError(),
            imaplib.IMAP4.abort("socket error: EOF"),
            socket.timeout("timed out"),
            OSError("broken pipe"),
        ],
    )
    def test_fetch_policy_retries_transient_kinds(self, exc):
        assert imap_retry.fetch_policy().is_retryable(exc)

    def test_fetch_policy_does_not_retry_bad_response(self):
        assert not imap_retry.fetch_policy().is_retryable(imaplib.IMAP4.error("BAD command"))

    def test_append_policy_retries_bad_response(self):
        policy = imap_retry.append_policy()
        assert policy.is_retryable(imaplib.IMAP4.error("APPEND command error: BAD"))
        assert not policy.is_retryable(ValueError("nope"))


class TestRetryCall:
    def _policy(self, limit=3):
        return imap_retry.RetryPolicy(errors=(ConnectionResetError,), limit=limit, initial_wait=1.0)

    def test_success_first_try(self):
        fn = MagicMock(return_value="ok")
        assert imap_retry.retry_call(self._policy(), fn, sleep=MagicMock()) == "ok"
        assert fn.call_count == 1

    def test_retries_then_succeeds(self):
        fn = MagicMock(side_effect=[ConnectionResetError("reset"), "ok"])
        sleep = MagicMock()
        before = MagicMock()
        logs = []

        result = imap_retry.retry_call(
            self._policy(), fn, label="UID FETCH 1", before_retry=before, log_fn=logs.append, sleep=sleep
        )

        assert result == "ok"
        assert fn.call_count == 2
        sleep.assert_called_once_with(1.0)
        before.assert_called_once()
        assert "UID FETCH 1" in logs[0]
        assert "attempt 1/3" in logs[0]

    def test_exhaustion_raises_transient_error(self):
        last = ConnectionResetError("third")
        fn = MagicMock(side_effect=[ConnectionResetError("first"), ConnectionResetError("second"), last])
        sleep = MagicMock()

        with pytest.raises(TransientProtocolError) as exc_info:
            imap_retry.retry_call(self._policy(), fn, log_fn=lambda _m: None, sleep=sleep)

        assert exc_info.value.attempts == 3
        assert exc_info.value.__cause__ is last
        assert fn.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]

    def test_non_retryable_propagates_immediately(self):
        fn = MagicMock(side_effect=ValueError("bad"))
        sleep = MagicMock()
        with pytest.raises(ValueError):
            imap_retry.retry_call(self._policy(), fn, sleep=sleep)
        assert fn.call_count == 1
        sleep.assert_not_called()

    def test_limit_one_never_retries(self):
        fn = MagicMock(side_effect=ConnectionResetError("reset"))
        with pytest.raises(TransientProtocolError):
            imap_retry.retry_call(self._policy(limit=1), fn, sleep=MagicMock())
        assert fn.call_count == 1


class TestConnectionProxy:
    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            imap_retry.ConnectionProxy(MagicMock(), max_retries=0)
        with pytest.raises(ValueError):
            imap_retry.ConnectionProxy(MagicMock(), initial_wait=-1)

    def test_is_transient_error(self):
        assert imap_retry.ConnectionProxy._is_transient_error([b"[UNAVAILABLE] Server Busy"])
        assert imap_retry.ConnectionProxy._is_transient_error([b"please try again"])
        assert imap_retry.ConnectionProxy._is_transient_error([b"[THROTTLED]"])
        assert not imap_retry.ConnectionProxy._is_transient_error([b"[AUTHENTICATIONFAILED]"])
        assert not imap_retry.ConnectionProxy._is_transient_error(None)

    def test_retries_busy_response(self):
        conn = MagicMock()
        conn.select.side_effect = [("NO", [b"[UNAVAILABLE] Server Busy"]), ("OK", [b"3"])]
        proxy = imap_retry.ConnectionProxy(conn, max_retries=3, initial_wait=0, log_fn=lambda _m: None)

        with patch.object(imap_retry.time, "sleep") as sleep:
            assert proxy.select('"INBOX"') == ("OK", [b"3"])

        assert conn.select.call_count == 2
        sleep.assert_called_once_with(0)

    def test_returns_last_busy_result_when_exhausted(self):
        conn = MagicMock()
        conn.uid.return_value = ("NO", [b"Server Busy"])
        proxy = imap_retry.ConnectionProxy(conn, max_retries=2, initial_wait=0, log_fn=lambda _m: None)

        with patch.object(imap_retry.time, "sleep"):
            assert proxy.uid("SEARCH", None, "ALL") == ("NO", [b"Server Busy"])
        assert conn.uid.call_count == 2

    def test_non_transient_no_is_not_retried(self):
        conn = MagicMock()
        conn.select.return_value = ("NO", [b"[NONEXISTENT] Mailbox does not exist"])
        proxy = imap_retry.ConnectionProxy(conn, max_retries=3, initial_wait=0)

        assert proxy.select('"Missing"')[0] == "NO"
        assert conn.select.call_count == 1

    def test_non_retryable_methods_pass_through(self):
        conn = MagicMock()
        conn.login.return_value = ("NO", [b"Server Busy"])
        proxy = imap_retry.ConnectionProxy(conn, max_retries=3, initial_wait=0)

        assert proxy.login("u", "p") == ("NO", [b"Server Busy"])
        assert conn.login.call_count == 1
