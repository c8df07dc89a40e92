"""Two-way reconciliation between the note mailbox and the local note folder.

Each pass reads both sides completely and decides, per subject, whether to
upload, download, delete on the server, or resolve a conflict. The date last
reconciled for a subject (its anchor) tells which side changed since then:

    remote date == anchor  -> only the local side may have changed
    remote date != anchor  -> the server changed; if the local side changed
                              too this is a conflict, and the older version
                              is kept under a new, time-stamped subject
"""

import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Dict, List, Set

import subject_codec
from errors import (DuplicateSubjectError, InvalidSubjectError, SubjectError,
                    SubjectTooLongError)
from imap_replica import RemoteRecord
from local_replica import LocalEntry, LocalReplica
from note_message import Note

logger = logging.getLogger(__name__)

CONFLICT_SUFFIX_FORMAT = '%y%m%d%H%M%S'


def conflict_subject(subject: str, date: datetime) -> str:
    """Subject under which the losing side of a conflict is preserved."""
    prefix = subject_codec.truncate(subject, subject_codec.CONFLICT_MAX_SUBJECT_BYTES)
    return prefix + date.astimezone(timezone.utc).strftime(CONFLICT_SUFFIX_FORMAT)


def check_local_subject(subject: str):
    """Raise if a local file name cannot be used as a note subject."""
    if subject_codec.is_truncation_needed(subject):
        raise SubjectTooLongError(subject, subject_codec.DEFAULT_MAX_SUBJECT_BYTES)
    if subject_codec.normalize(subject) != subject:
        raise InvalidSubjectError(subject)


def is_syncable(subject: str) -> bool:
    try:
        check_local_subject(subject)
    except SubjectError:
        return False
    return True


def remote_by_subject(records: List[RemoteRecord]) -> Dict[str, RemoteRecord]:
    """Map server notes by normalized subject, newest first.

    When several notes share a subject the most recent one is kept and the
    others are reported.
    """
    by_subject = {}
    for record in sorted(records, key=lambda r: r.date, reverse=True):
        subject = subject_codec.normalize(record.subject)
        if subject_codec.is_truncation_needed(subject):
            logger.error(f"Error: {SubjectTooLongError(subject, subject_codec.DEFAULT_MAX_SUBJECT_BYTES)}")
            continue
        if subject in by_subject:
            logger.error(f"Error: {DuplicateSubjectError(subject)}")
            continue
        by_subject[subject] = record
    return by_subject


class Reconciler:
    """Runs one reconciliation pass between a remote and a local replica."""

    def __init__(self, remote, local: LocalReplica, address: str):
        self.remote = remote
        self.local = local
        self.address = address
        self.stats = Counter()

    def run(self, sync_memory: Set[str]) -> Set[str]:
        """
        Reconcile both replicas.

        Args:
            sync_memory: Local subjects that existed at the end of the previous pass

        Returns:
            Local subjects that exist at the end of this pass
        """
        logger.info("=" * 60)
        logger.info("Starting synchronization pass")
        logger.info("=" * 60)

        self.local.ensure_folder()
        remote_records = remote_by_subject(self.remote.records())
        local_entries = self.local.entries()

        for subject, entry in sorted(local_entries.items()):
            try:
                check_local_subject(subject)
                record = remote_records.get(subject)
                if record is None:
                    self.upload_new(entry)
                else:
                    self.reconcile_pair(entry, record)
            except (SubjectError, OSError) as e:
                self.stats['errors'] += 1
                logger.error(f"Error syncing '{subject}': {e}")

        for subject, record in sorted(remote_records.items()):
            if subject in local_entries:
                continue
            try:
                if subject in sync_memory:
                    self.delete_remote(record)
                else:
                    self.download_new(record)
            except (SubjectError, OSError) as e:
                self.stats['errors'] += 1
                logger.error(f"Error syncing '{subject}': {e}")

        current = set(self.local.entries())
        self.local.state.prune_anchors(current)
        new_memory = {subject for subject in current if is_syncable(subject)}

        summary = ', '.join(f"{count} {action}" for action, count in sorted(self.stats.items())) or 'no changes'
        logger.info("=" * 60)
        logger.info(f"Synchronization pass complete: {summary}")
        logger.info("=" * 60)
        return new_memory

    def reconcile_pair(self, entry: LocalEntry, record: RemoteRecord):
        subject = entry.subject
        remote_date = record.date
        local_date = entry.last_write
        last_sync_date = entry.anchor

        if last_sync_date is None and self.adopt_identical(entry, record):
            return

        if remote_date == last_sync_date:
            if remote_date > local_date:
                logger.info(f"Download update: {subject}")
                self.download(record, subject)
                self.stats['downloaded'] += 1
            elif remote_date < local_date:
                logger.info(f"Upload update: {subject}")
                self.upload(entry)
                self.remote.delete(record.uid)
                self.stats['uploaded'] += 1
            else:
                logger.debug(f"Unchanged: {subject}")
            return

        logger.info(f"Conflict: {subject} changed on both sides since the last sync")
        if remote_date >= local_date:
            self.resolve_for_remote(entry, record)
        else:
            self.resolve_for_local(entry, record)
        self.stats['conflicts'] += 1

    def adopt_identical(self, entry: LocalEntry, record: RemoteRecord) -> bool:
        """Mark a never-synced pair as synced when both sides hold the same text."""
        remote_note = Note.from_message(self.remote.fetch(record.uid))
        local_note = self.local.read(entry, self.address)
        if remote_note.body != local_note.body:
            return False
        logger.info(f"Already in sync: {entry.subject}")
        self.local.write(remote_note.renamed(entry.subject))
        self.stats['adopted'] += 1
        return True

    def resolve_for_remote(self, entry: LocalEntry, record: RemoteRecord):
        """Keep the local edit under a new subject and download the server note."""
        preserved = conflict_subject(entry.subject, entry.last_write)
        logger.info(f"Keeping local version of {entry.subject} as {preserved}, downloading server version")
        self.local.copy(entry, preserved)
        self.download(record, entry.subject)

    def resolve_for_local(self, entry: LocalEntry, record: RemoteRecord):
        """Keep the server note under a new subject locally and upload the local edit."""
        preserved = conflict_subject(entry.subject, record.date)
        logger.info(f"Keeping server version of {entry.subject} as {preserved}, uploading local version")
        old_note = Note.from_message(self.remote.fetch(record.uid))
        self.local.write(old_note.renamed(preserved), anchor=False)
        self.upload(entry)
        self.remote.delete(record.uid)

    def upload_new(self, entry: LocalEntry):
        if entry.anchor is not None:
            # Deleted on the server side, but there is no way to tell that
            # apart from a note that never reached the server.
            logger.warning(f"{entry.subject} was synced before but is gone from the server, uploading it again")
        logger.info(f"Upload new: {entry.subject}")
        self.upload(entry)
        self.stats['uploaded'] += 1

    def upload(self, entry: LocalEntry):
        note = self.local.read(entry, self.address)
        self.remote.append(note.to_bytes())
        self.local.state.set_anchor(entry.subject, note.date)

    def download(self, record: RemoteRecord, subject: str):
        note = Note.from_message(self.remote.fetch(record.uid))
        self.local.write(note.renamed(subject))

    def download_new(self, record: RemoteRecord):
        subject = subject_codec.normalize(record.subject)
        logger.info(f"Download new: {subject}")
        self.download(record, subject)
        self.stats['downloaded'] += 1

    def delete_remote(self, record: RemoteRecord):
        logger.info(f"Delete on server: {record.subject}")
        self.remote.delete(record.uid)
        self.stats['deleted'] += 1


def reconcile(remote, local: LocalReplica, address: str, sync_memory: Set[str]) -> Set[str]:
    """Run one reconciliation pass and return the new sync memory."""
    return Reconciler(remote, local, address).run(sync_memory)
