"""
Tests for core/imap_folder.py

Tests cover:
- EXAMINE before reads, SELECT before mutations
- NO on examine/select translated to FolderNotFound
- Empty and malformed SEARCH responses
- UID FETCH retry with reconnect, retry exhaustion, vanished mailbox
- APPEND with APPENDUID, BAD-response retry, NO not retried
- Flag changes, unseen subset, purge
"""

import datetime
import imaplib
from unittest.mock import MagicMock

import pytest
from conftest import LogCapture, fast_folder_options, make_conf

from imap_backup.core import imap_folder
from imap_backup.core.imap_folder import AccessMode, ImapFolder
from imap_backup.core.imap_session import ImapSession
from imap_backup.errors import FolderNotFound, ImapCommandError, TransientProtocolError


def make_client(uid_validity=42, select_typ="OK"):
    client = MagicMock()
    client.select.return_value = (select_typ, [b"3"] if select_typ == "OK" else [b"[NONEXISTENT] Unknown Mailbox"])
    client.response.return_value = ("UIDVALIDITY", [str(uid_validity).encode()])
    return client


def make_folder(client, name="INBOX", log=None, **kwargs):
    session = MagicMock()
    session.client = client
    options = fast_folder_options()
    options.update(kwargs)
    return ImapFolder(session, name, log_fn=log or LogCapture(), **options)


class TestAccessModes:
    def test_starts_unselected(self):
        folder = make_folder(make_client())
        assert folder.mode is AccessMode.UNSELECTED

    def test_examine_is_read_only(self):
        client = make_client()
        folder = make_folder(client)

        folder.examine()

        client.select.assert_called_once_with('"INBOX"', readonly=True)
        assert folder.mode is AccessMode.EXAMINED

    def test_select_is_read_write(self):
        client = make_client()
        folder = make_folder(client)

        folder.select()

        client.select.assert_called_once_with('"INBOX"', readonly=False)
        assert folder.mode is AccessMode.SELECTED

    def test_name_is_encoded(self):
        client = make_client()
        folder = make_folder(client, name="Entwürfe")
        folder.examine()
        client.select.assert_called_once_with('"Entw&APw-rfe"', readonly=True)

    def test_missing_folder_raises_folder_not_found(self):
        log = LogCapture()
        folder = make_folder(make_client(select_typ="NO"), name="Gone", log=log)

        with pytest.raises(FolderNotFound) as exc_info:
            folder.examine()

        assert exc_info.value.folder == "Gone"
        assert folder.mode is AccessMode.UNSELECTED
        assert log.contains("Folder 'Gone' does not exist on server")

    def test_reads_examine_and_writes_select(self):
        client = make_client()
        client.uid.return_value = ("OK", [b"1 2"])
        folder = make_folder(client)

        folder.uids()
        assert folder.mode is AccessMode.EXAMINED
        folder.set_flags([1], ["\\Seen"])
        assert folder.mode is AccessMode.SELECTED

        readonly_flags = [c.kwargs["readonly"] for c in client.select.call_args_list]
        assert readonly_flags == [True, False]


class TestExistsAndCreate:
    def test_exists(self):
        assert make_folder(make_client()).exists() is True
        assert make_folder(make_client(select_typ="NO")).exists() is False

    def test_create_missing(self):
        client = make_client(select_typ="NO")
        client.create.return_value = ("OK", [b"CREATE completed"])
        folder = make_folder(client, name="New")

        folder.create()

        client.create.assert_called_once_with('"New"')

    def test_create_existing_is_noop(self):
        client = make_client()
        make_folder(client).create()
        client.create.assert_not_called()

    def test_create_failure(self):
        client = make_client(select_typ="NO")
        client.create.return_value = ("NO", [b"[CANNOT] Invalid name"])
        with pytest.raises(ImapCommandError):
            make_folder(client, name="Bad").create()


class TestUidValidity:
    def test_read_from_examine_and_cached(self):
        client = make_client(uid_validity=1234)
        folder = make_folder(client)

        assert folder.uid_validity == 1234
        assert folder.uid_validity == 1234
        assert client.select.call_count == 1

    def test_missing_folder(self):
        with pytest.raises(FolderNotFound):
            make_folder(make_client(select_typ="NO")).uid_validity


class TestUids:
    def test_sorted(self):
        client = make_client()
        client.uid.return_value = ("OK", [b"5 3 9"])
        assert make_folder(client).uids() == [3, 5, 9]
        client.uid.assert_called_once_with("SEARCH", None, "ALL")

    def test_empty_mailbox(self):
        client = make_client()
        client.uid.return_value = ("OK", [None])
        assert make_folder(client).uids() == []

    def test_malformed_response_logs_warning(self):
        client = make_client()
        client.uid.return_value = ("OK", [b"1 banana"])
        log = LogCapture()

        assert make_folder(client, log=log).uids() == []
        assert log.contains("malformed SEARCH response")

    def test_missing_folder(self):
        client = make_client(select_typ="NO")
        assert make_folder(client).uids() == []
        client.uid.assert_not_called()


FETCH_DATA = [
    (b"1 (UID 3 FLAGS (\\Seen) BODY[] {5}", b"hello"),
    b")",
]


class TestFetchMulti:
    def test_fetch(self):
        client = make_client()
        client.uid.return_value = ("OK", FETCH_DATA)
        folder = make_folder(client)

        assert folder.fetch_multi([3]) == [{"uid": 3, "body": b"hello", "flags": ["\\Seen"]}]
        client.uid.assert_called_once_with("FETCH", "3", imap_folder.FETCH_ATTRIBUTES)
        assert folder.mode is AccessMode.EXAMINED

    def test_empty_request(self):
        client = make_client()
        assert make_folder(client).fetch_multi([]) == []
        client.uid.assert_not_called()

    def test_retries_dropped_connection(self):
        client = make_client()
        client.uid.side_effect = [imaplib.IMAP4.abort("socket error: EOF"), ("OK", FETCH_DATA)]
        folder = make_folder(client)

        items = folder.fetch_multi([3])

        assert [i["uid"] for i in items] == [3]
        folder.session.ensure_connection.assert_called_once()
        # Initial examine plus the re-examine before the retry
        assert client.select.call_count == 2

    def test_retry_exhaustion(self):
        client = make_client()
        client.uid.side_effect = ConnectionResetError("reset")
        folder = make_folder(client, fetch_retry=fast_folder_options(fetch_limit=4)["fetch_retry"])

        with pytest.raises(TransientProtocolError) as exc_info:
            folder.fetch_multi([3])

        assert exc_info.value.attempts == 4
        assert isinstance(exc_info.value.__cause__, ConnectionResetError)
        assert client.uid.call_count == 4

    def test_non_transient_error_not_retried(self):
        client = make_client()
        client.uid.side_effect = imaplib.IMAP4.error("UID command error: BAD")
        folder = make_folder(client)

        with pytest.raises(imaplib.IMAP4.error):
            folder.fetch_multi([3])
        assert client.uid.call_count == 1

    def test_folder_vanished_before_fetch(self):
        folder = make_folder(make_client(select_typ="NO"))
        assert folder.fetch_multi([3]) is None

    def test_folder_vanished_during_retry(self):
        client = make_client()
        client.select.side_effect = [("OK", [b"1"]), ("NO", [b"[NONEXISTENT]"])]
        client.uid.side_effect = OSError("broken pipe")
        folder = make_folder(client)

        assert folder.fetch_multi([3]) is None


class TestAppend:
    def test_returns_appenduid(self):
        client = make_client()
        client.append.return_value = ("OK", [b"[APPENDUID 77 12] APPEND completed"])
        folder = make_folder(client)

        assert folder.append(b"Subject: x\r\n\r\nbody", ["\\Seen"]) == (12, 77)
        client.append.assert_called_once_with('"INBOX"', "(\\Seen)", None, b"Subject: x\r\n\r\nbody")
        assert folder.uid_validity == 77

    def test_without_appenduid(self):
        client = make_client()
        client.append.return_value = ("OK", [b"APPEND completed"])
        assert make_folder(client).append(b"x") == (None, None)

    def test_date_is_internaldate(self):
        client = make_client()
        client.append.return_value = ("OK", [b"APPEND completed"])
        folder = make_folder(client)

        folder.append(b"x", [], datetime.datetime(2024, 1, 1, 12, 0, 0))

        _, flags, date_arg, _ = client.append.call_args.args
        assert flags is None
        assert date_arg == '"01-Jan-2024 12:00:00 +0000"'

    def test_bad_response_is_retried(self):
        client = make_client()
        client.append.side_effect = [
            imaplib.IMAP4.error("APPEND command error: BAD [b'try later']"),
            ("OK", [b"[APPENDUID 9 4] APPEND completed"]),
        ]
        folder = make_folder(client)

        assert folder.append(b"x") == (4, 9)
        assert client.append.call_count == 2
        folder.session.ensure_connection.assert_called_once()

    def test_bad_response_exhaustion(self):
        client = make_client()
        client.append.side_effect = imaplib.IMAP4.error("BAD")
        folder = make_folder(client)

        with pytest.raises(TransientProtocolError):
            folder.append(b"x")
        assert client.append.call_count == 3

    def test_no_response_is_not_retried(self):
        client = make_client()
        client.append.return_value = ("NO", [b"[OVERQUOTA] Mailbox full"])
        folder = make_folder(client)

        with pytest.raises(ImapCommandError, match="OVERQUOTA"):
            folder.append(b"x")
        assert client.append.call_count == 1


class TestFlags:
    def test_set_flags(self):
        client = make_client()
        client.uid.return_value = ("OK", [])
        make_folder(client).set_flags([1, 2], ["\\Seen", "\\Flagged"])
        client.uid.assert_called_once_with("STORE", "1,2", "+FLAGS", "(\\Seen \\Flagged)")

    def test_clear_flags(self):
        client = make_client()
        client.uid.return_value = ("OK", [])
        make_folder(client).clear_flags([5], ["\\Seen"])
        client.uid.assert_called_once_with("STORE", "5", "-FLAGS", "(\\Seen)")

    def test_store_on_missing_folder(self):
        with pytest.raises(FolderNotFound):
            make_folder(make_client(select_typ="NO")).set_flags([1], ["\\Seen"])

    def test_no_uids_is_noop(self):
        client = make_client()
        make_folder(client).set_flags([], ["\\Seen"])
        client.select.assert_not_called()


class TestUnseen:
    def test_subset(self):
        client = make_client()
        client.uid.return_value = ("OK", [b"2 4"])
        assert make_folder(client).unseen([1, 2, 3, 4]) == [2, 4]
        client.uid.assert_called_once_with("SEARCH", "UID", "1,2,3,4", "UNSEEN")

    def test_empty_or_malformed_is_empty(self):
        client = make_client()
        client.uid.return_value = ("OK", [None])
        assert make_folder(client).unseen([1]) == []
        client.uid.return_value = ("OK", [b"what"])
        assert make_folder(client).unseen([1]) == []
        client.uid.return_value = ("NO", [b"nope"])
        assert make_folder(client).unseen([1]) == []


class TestAgainstMockServer:
    def test_purge_removes_everything(self, single_mock_server, tmp_path):
        server, port = single_mock_server({"INBOX": [b"Subject: a\r\n\r\n1", b"Subject: b\r\n\r\n2"]})
        session = ImapSession(make_conf(port, tmp_path))
        folder = ImapFolder(session, "INBOX", log_fn=LogCapture(), **fast_folder_options())

        folder.purge()

        assert server.folders["INBOX"] == []
        assert folder.uids() == []
        session.disconnect()

    def test_append_reports_server_uid(self, single_mock_server, tmp_path):
        server, port = single_mock_server({"INBOX": [b"Subject: a\r\n\r\n1"]})
        session = ImapSession(make_conf(port, tmp_path))
        folder = ImapFolder(session, "INBOX", log_fn=LogCapture(), **fast_folder_options())

        uid, uid_validity = folder.append(b"Subject: new\r\n\r\nhi", ["\\Seen"])

        assert uid == 2
        assert uid_validity == server.uid_validity["INBOX"]
        assert server.folders["INBOX"][-1]["flags"] == {"\\Seen"}
        assert folder.uids() == [1, 2]
        session.disconnect()

    def test_fetch_survives_dropped_connection(self, single_mock_server, tmp_path):
        server, port = single_mock_server({"INBOX": [b"Subject: a\r\n\r\n1"]})
        server.drop_fetches = 2
        session = ImapSession(make_conf(port, tmp_path))
        folder = ImapFolder(session, "INBOX", log_fn=LogCapture(), **fast_folder_options(fetch_limit=3))

        items = folder.fetch_multi([1])

        assert items == [{"uid": 1, "body": b"Subject: a\r\n\r\n1", "flags": []}]
        assert server.connection_count == 3
        session.disconnect()

    def test_create_gets_new_uid_validity(self, single_mock_server, tmp_path):
        server, port = single_mock_server({"INBOX": []})
        session = ImapSession(make_conf(port, tmp_path))
        folder = ImapFolder(session, "Restored", log_fn=LogCapture(), **fast_folder_options())

        assert not folder.exists()
        folder.create()

        assert folder.exists()
        assert folder.uid_validity == server.uid_validity["Restored"]
        session.disconnect()
