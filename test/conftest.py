"""
Shared pytest fixtures and utilities for IMAP backup tests.
"""

import os
import sys
import time
from contextlib import contextmanager

import pytest

# Ensure src/tools are in path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../tools")))

from mock_imap_server import start_server_thread

from imap_backup.core import imap_retry
from imap_backup.core.imap_session import build_account_conf


@pytest.fixture
def single_mock_server():
    """
    Creates mock IMAP servers on demand.
    Automatically shuts them down after the test.
    """
    servers = []

    def _create(initial_data=None):
        server, port = start_server_thread(0, initial_data)
        time.sleep(0.1)
        servers.append(server)
        return server, port

    yield _create

    for server in servers:
        server.shutdown()
        server.server_close()


def make_conf(port, local_path, folders=None, username="user@example.com", password="pass", **kwargs):
    """Account conf pointing at a plain-text mock server on localhost."""
    return build_account_conf(
        username,
        password,
        str(local_path),
        folders=folders,
        server=f"imap://localhost:{port}",
        **kwargs,
    )


def fast_folder_options(fetch_limit=3, append_limit=3):
    """ImapFolder options with retries that never sleep."""
    return {
        "fetch_retry": imap_retry.fetch_policy(limit=fetch_limit, initial_wait=0),
        "append_retry": imap_retry.append_policy(limit=append_limit, initial_wait=0),
        "sleep": lambda _seconds: None,
    }


class LogCapture:
    """Collects log_fn output."""

    def __init__(self):
        self.lines = []

    def __call__(self, message):
        self.lines.append(message)

    def contains(self, text):
        return any(text in line for line in self.lines)


@pytest.fixture
def log():
    return LogCapture()


@contextmanager
def temp_argv(args):
    original = sys.argv[:]
    sys.argv = list(args)
    try:
        yield
    finally:
        sys.argv = original


@pytest.fixture(autouse=True)
def clean_sys_argv():
    """Ensure sys.argv is clean for all tests."""
    original = sys.argv[:]
    sys.argv = ["test_script.py"]
    yield
    sys.argv = original


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep host configuration from leaking into the argument defaults."""
    for name in (
        "SRC_IMAP_HOST",
        "SRC_IMAP_USERNAME",
        "SRC_IMAP_PASSWORD",
        "DEST_IMAP_HOST",
        "DEST_IMAP_USERNAME",
        "DEST_IMAP_PASSWORD",
        "BACKUP_LOCAL_PATH",
        "BATCH_SIZE",
        "MAX_WORKERS",
        "FETCH_RETRY_LIMIT",
        "APPEND_RETRY_LIMIT",
        "IMAP_BACKUP_CONFIG",
        "IMAP_BACKUP_ACCOUNTS",
        "REPLACE",
    ):
        monkeypatch.delenv(name, raising=False)


__all__ = [
    "single_mock_server",
    "make_conf",
    "fast_folder_options",
    "LogCapture",
    "log",
    "temp_argv",
]
