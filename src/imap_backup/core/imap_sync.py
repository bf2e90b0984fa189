"""
IMAP Backup / Restore Engine

Drives one account over one ImapSession, one mailbox at a time:

- run_backup: download every server UID missing locally, in ascending UID
  order, appending each message to the local store as soon as it arrives.
- status: compare local and server UIDs without changing anything.
- run_restore: append locally stored messages missing from the server.

A failure in one mailbox is recorded in the returned results and the next
mailbox is processed. Only a connection/login failure aborts the account.
"""

from __future__ import annotations

import concurrent.futures
import enum
import time

from imap_backup.core.imap_folder import ImapFolder
from imap_backup.core.imap_session import ImapSession
from imap_backup.errors import ImapConnectionError
from imap_backup.storage import archive
from imap_backup.storage.mbox_store import MboxStore, list_local_folders
from imap_backup.utils import imap_common


class FolderResult(enum.Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


def _result(name, status, count=0, error=None):
    return {"name": name, "status": status, "count": count, "error": error}


def _chunks(items, size):
    for i in range(0, len(items), size):
        yield items[i : i + size]


def _folder_names(session, conf):
    return list(conf.get("folders") or []) or session.list_mailboxes("*")


def backup_folder(folder, local_path, multi_fetch_size=1, sets_seen_flags_on_fetch=False, log_fn=None):
    """
    Bring the local store for one mailbox up to date.

    Args:
        folder: ImapFolder to back up
        local_path: Account backup directory
        multi_fetch_size: UIDs per UID FETCH
        sets_seen_flags_on_fetch: The server marks messages \\Seen when their
            body is fetched; their unseen state is restored afterwards
        log_fn: Output function (default: safe_print)

    Returns:
        Result dict with the number of messages downloaded.
    """
    log_fn = log_fn or imap_common.safe_print
    name = folder.name

    store = MboxStore.open(local_path, name)
    if not folder.exists():
        return _result(name, FolderResult.SKIPPED, error="Folder does not exist on server")

    store = archive.resolve_uid_validity(store, folder.uid_validity, log_fn)

    missing = sorted(set(folder.uids()) - set(store.uids()))
    if not missing:
        return _result(name, FolderResult.SUCCESS)

    log_fn(f"[{name}] {len(missing)} new messages to download")
    downloaded = 0
    for batch in _chunks(missing, multi_fetch_size):
        unseen_before = folder.unseen(batch) if sets_seen_flags_on_fetch else []

        items = folder.fetch_multi(batch)
        if items is None:
            log_fn(f"[{name}] Warning: folder disappeared during download")
            break

        by_uid = {item["uid"]: item for item in items}
        for uid in batch:
            item = by_uid.get(uid)
            if item is None or item["body"] is None:
                log_fn(f"[{name}] Warning: UID {uid} was not returned by the server, will retry next run")
                continue
            store.append(uid, item["body"], item["flags"])
            downloaded += 1

        if unseen_before:
            folder.clear_flags(unseen_before, [imap_common.FLAG_SEEN])

    log_fn(f"[{name}] Downloaded {downloaded} messages")
    return _result(name, FolderResult.SUCCESS, count=downloaded)


def restore_folder(folder, local_path, replace=False, log_fn=None):
    """
    Push locally stored messages for one mailbox back to the server.

    A local message counts as already on the server when the store's
    UIDVALIDITY equals the mailbox's and its UID is still present there.
    New UIDs reported by APPENDUID are written back to the index so that a
    later backup or restore recognises the restored copies.

    When the mailbox has another UIDVALIDITY, each appended message's new UID
    is recorded as soon as the server reports it. A restore that stops part
    way picks up after the last recorded message. Once every message is
    known under the mailbox's UIDVALIDITY and nothing else is in the mailbox,
    the index is moved over to the new UIDs.

    Args:
        folder: ImapFolder to restore into (created if missing)
        local_path: Account backup directory
        replace: Delete every message in the mailbox before restoring
        log_fn: Output function (default: safe_print)
    """
    log_fn = log_fn or imap_common.safe_print
    name = folder.name

    store = MboxStore.open(local_path, name)
    if not store.exists():
        return _result(name, FolderResult.SKIPPED, error="No local backup")

    folder.create()
    if replace:
        log_fn(f"[{name}] Removing all messages from server before restore")
        folder.purge()

    remote_uids = set(folder.uids())
    remote_validity = folder.uid_validity

    restored_before = {}
    if store.uid_validity == remote_validity:
        mode = "same"
        pending = [uid for uid in store.uids() if uid not in remote_uids]
    else:
        restored_before = {
            uid: new_uid
            for uid, new_uid in store.restore_progress(remote_validity).items()
            if new_uid in remote_uids
        }
        pending = [uid for uid in store.uids() if uid not in restored_before]
        if remote_uids <= set(restored_before.values()):
            mode = "fresh"
            if restored_before:
                log_fn(f"[{name}] Resuming restore, {len(restored_before)} messages already on the server")
        else:
            mode = "foreign"
            log_fn(
                f"[{name}] Warning: server UIDVALIDITY {remote_validity} differs from local {store.uid_validity} "
                f"and the folder is not empty; {len(pending)} local messages will be appended"
            )

    if pending:
        log_fn(f"[{name}] {len(pending)} messages to restore")
    restored = 0
    uid_map = dict(restored_before)
    for uid in pending:
        record = store.get(uid)
        body = store.read(uid)
        flags = [f for f in record["flags"] if f in imap_common.PRESERVABLE_FLAGS]
        new_uid, new_validity = folder.append(body, flags, store.message_date(uid))
        restored += 1

        if new_uid is None:
            continue
        if mode == "same" and new_validity == store.uid_validity:
            store.update_uid(uid, new_uid)
        elif mode != "same" and new_validity == remote_validity:
            store.record_restored(remote_validity, uid, new_uid)
            uid_map[uid] = new_uid

    if mode == "fresh":
        if not len(store):
            store.set_uid_validity(remote_validity)
        elif len(uid_map) == len(store):
            store.relabel(remote_validity, uid_map)
            store.clear_restore_progress()
        else:
            log_fn(f"[{name}] Warning: server did not report APPENDUID, local index keeps its old UIDs")

    if restored:
        log_fn(f"[{name}] Restored {restored} messages")
    return _result(name, FolderResult.SUCCESS, count=restored)


def folder_status(folder, local_path):
    """Local and server UIDs for one mailbox. Changes nothing on either side."""
    store = MboxStore.open(local_path, folder.name)
    return {"name": folder.name, "local": store.uids(), "remote": folder.uids()}


def _run_folders(session, names, action, log_fn):
    results = []
    for name in names:
        try:
            # A failed mailbox may have left the connection unusable
            session.ensure_connection()
            results.append(action(name))
        except ImapConnectionError:
            raise
        except Exception as e:
            log_fn(f"[{name}] ERROR: {e}")
            results.append(_result(name, FolderResult.FAILED, error=str(e)))
    return results


def _make_folder(session, name, folder_options, log_fn):
    return ImapFolder(session, name, log_fn=log_fn, **(folder_options or {}))


def run_backup(conf, session=None, folder_options=None, log_fn=None):
    """
    Back up every configured mailbox of an account.

    Args:
        conf: Account conf dict (see imap_session.build_account_conf)
        session: Optional existing ImapSession; one is created (and closed) otherwise
        folder_options: Extra keyword arguments for ImapFolder (retry policies, sleep)
        log_fn: Output function (default: safe_print)

    Returns:
        List of per-mailbox result dicts.

    Raises:
        ImapConnectionError: the account could not be connected to.
    """
    log_fn = log_fn or imap_common.safe_print
    owns_session = session is None
    session = session or ImapSession(conf, log_fn=log_fn)
    try:
        session.connect()
        names = _folder_names(session, conf)

        def action(name):
            folder = _make_folder(session, name, folder_options, log_fn)
            return backup_folder(
                folder,
                conf["local_path"],
                multi_fetch_size=conf.get("multi_fetch_size") or 1,
                sets_seen_flags_on_fetch=session.sets_seen_flags_on_fetch,
                log_fn=log_fn,
            )

        return _run_folders(session, names, action, log_fn)
    finally:
        if owns_session:
            session.disconnect()


def status(conf, session=None, folder_options=None, log_fn=None):
    """
    Per-mailbox {"name", "local", "remote"} UID lists for an account.
    A mailbox whose local store cannot be read gets an "error" entry instead.
    """
    log_fn = log_fn or imap_common.safe_print
    owns_session = session is None
    session = session or ImapSession(conf, log_fn=log_fn)
    try:
        session.connect()
        report = []
        for name in _folder_names(session, conf):
            try:
                session.ensure_connection()
                folder = _make_folder(session, name, folder_options, log_fn)
                report.append(folder_status(folder, conf["local_path"]))
            except ImapConnectionError:
                raise
            except Exception as e:
                log_fn(f"[{name}] ERROR: {e}")
                report.append({"name": name, "local": [], "remote": [], "error": str(e)})
        return report
    finally:
        if owns_session:
            session.disconnect()


def run_restore(conf, session=None, replace=False, folder_options=None, log_fn=None):
    """
    Restore every configured mailbox of an account (or every locally backed
    up mailbox if none are configured).

    Returns:
        List of per-mailbox result dicts.

    Raises:
        ImapConnectionError: the account could not be connected to.
    """
    log_fn = log_fn or imap_common.safe_print
    owns_session = session is None
    session = session or ImapSession(conf, log_fn=log_fn)
    try:
        session.connect()
        names = list(conf.get("folders") or []) or list_local_folders(conf["local_path"])

        def action(name):
            folder = _make_folder(session, name, folder_options, log_fn)
            return restore_folder(folder, conf["local_path"], replace=replace, log_fn=log_fn)

        return _run_folders(session, names, action, log_fn)
    finally:
        if owns_session:
            session.disconnect()


def run_accounts(confs, fn, workers=1, log_fn=None):
    """
    Run fn(conf) for each account, up to `workers` accounts at a time.

    Accounts share nothing, so they can run on separate threads. A connection
    failure is recorded for its account and does not stop the others.

    Returns:
        List of (conf, results, error) tuples in the order of confs.
    """
    log_fn = log_fn or imap_common.safe_print
    outcomes = [None] * len(confs)

    def run_one(index, conf):
        start = time.time()
        try:
            results = fn(conf)
            error = None
        except ImapConnectionError as e:
            log_fn(f"ERROR: {conf.get('username')}: {e}")
            results, error = [], str(e)
        log_fn(f"{conf.get('username')}: finished in {time.time() - start:.1f}s")
        outcomes[index] = (conf, results, error)

    if workers <= 1 or len(confs) <= 1:
        for index, conf in enumerate(confs):
            run_one(index, conf)
        return outcomes

    with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [executor.submit(run_one, index, conf) for index, conf in enumerate(confs)]
        for future in concurrent.futures.as_completed(futures):
            future.result()
    return outcomes


def print_summary(outcomes, verb, log_fn=None):
    """
    Print one line per mailbox (and per unreachable account).
    Returns the number of failures.
    """
    log_fn = log_fn or imap_common.safe_print
    failures = 0
    log_fn(f"--- {verb} Summary ---")
    for conf, results, error in outcomes:
        user = conf.get("username")
        if error:
            failures += 1
            log_fn(f"{user}: FAILED ({error})")
            continue
        for result in results:
            status = result["status"]
            line = f"{user} [{result['name']}]: {status.value}, {result['count']} messages"
            if result["error"]:
                line += f" ({result['error']})"
            if status is FolderResult.FAILED:
                failures += 1
            log_fn(line)
    return failures
