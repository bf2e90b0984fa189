"""
UIDVALIDITY Archiving

When a mailbox is deleted and recreated the server gives it a new
UIDVALIDITY, and the UIDs recorded locally no longer name the same messages.
Rather than merge two unrelated UID spaces, the existing local store is
renamed to "<folder>-<old uid_validity>" (with "-1", "-2", ... appended if
that name is taken) and a fresh store is started.
"""

from imap_backup.storage.mbox_store import MboxStore
from imap_backup.utils import imap_common


def archive_folder_name(local_path, folder, uid_validity):
    """First unoccupied archive name for a folder's store."""
    label = uid_validity if uid_validity is not None else "unknown"
    candidate = f"{folder}-{label}"
    name = candidate
    suffix = 0
    while MboxStore(local_path, name).exists():
        suffix += 1
        name = f"{candidate}-{suffix}"
    return name


def resolve_uid_validity(store, uid_validity, log_fn=None):
    """
    Make a store agree with the mailbox's current UIDVALIDITY.

    Returns the store to download into: the same store if it matches or
    holds no messages yet, otherwise a fresh store after archiving the old one.
    """
    if store.uid_validity == uid_validity and store.exists():
        return store

    if not len(store):
        store.set_uid_validity(uid_validity)
        return store

    log_fn = log_fn or imap_common.safe_print
    archived_as = archive_folder_name(store.local_path, store.folder, store.uid_validity)
    log_fn(
        f"[{store.folder}] UIDVALIDITY changed from {store.uid_validity} to {uid_validity}, "
        f"moving existing backup to '{archived_as}'"
    )
    local_path, folder = store.local_path, store.folder
    store.rename(archived_as)

    fresh = MboxStore.open(local_path, folder)
    fresh.set_uid_validity(uid_validity)
    return fresh
