"""Pytest configuration and fixtures for the test suite."""

import email
import logging
import os
from datetime import datetime, timezone

import pytest

from errors import TransportError
from imap_replica import RemoteRecord
from local_replica import LocalReplica
from note_message import Note, decode_subject, parse_date
from sync_state import SyncState

ADDRESS = 'pomera@example.com'


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class FakeRemoteReplica:
    """In-memory stand-in for the IMAP note mailbox."""

    def __init__(self):
        self.messages = {}
        self.next_uid = 1
        self.fetched = []
        self.appended = []
        self.deleted = []
        self.changes = []
        self.acknowledged = 0
        self.fail_with = None

    def add(self, raw_message: bytes) -> str:
        uid = str(self.next_uid)
        self.next_uid += 1
        self.messages[uid] = raw_message
        return uid

    def add_note(self, subject: str, body: str, date: datetime) -> str:
        return self.add(Note(ADDRESS, subject, date, body).to_bytes())

    def records(self):
        if self.fail_with:
            raise self.fail_with
        records = []
        for uid, raw in self.messages.items():
            headers = email.message_from_bytes(raw)
            records.append(RemoteRecord(uid, decode_subject(headers['Subject']), parse_date(headers['Date'])))
        return records

    def notes(self):
        """Decoded notes currently on the server, keyed by subject."""
        return {note.subject: note for note in (Note.from_message(raw) for raw in self.messages.values())}

    def fetch(self, uid: str) -> bytes:
        self.fetched.append(uid)
        return self.messages[uid]

    def append(self, raw_message: bytes):
        self.appended.append(raw_message)
        self.add(raw_message)

    def delete(self, uid: str):
        self.deleted.append(uid)
        del self.messages[uid]

    def acknowledge_changes(self):
        self.acknowledged += 1

    def reset_calls(self):
        self.fetched = []
        self.appended = []
        self.deleted = []

    def wait_for_change(self, cancel, timeout):
        if self.changes:
            return self.changes.pop(0)
        cancel.wait(timeout)
        return False


@pytest.fixture
def remote():
    """Provide an empty fake note mailbox."""
    return FakeRemoteReplica()


@pytest.fixture
def state():
    """Provide an in-memory sync state."""
    return SyncState()


@pytest.fixture
def local(tmp_path, state):
    """Provide a local replica over an empty temporary folder."""
    folder = tmp_path / 'notes'
    folder.mkdir()
    return LocalReplica(str(folder), state)


def write_note_file(local: LocalReplica, subject: str, body: str, modified: datetime,
                    anchor: datetime = None) -> str:
    """Create a note file with the given modification time and anchor."""
    path = local.path_for(subject)
    with open(path, 'w', encoding='utf-8', newline='') as f:
        f.write(body)
    os.utime(path, (modified.timestamp(), modified.timestamp()))
    if anchor is not None:
        local.state.set_anchor(subject, anchor)
    return path


def read_note_file(local: LocalReplica, subject: str) -> str:
    with open(local.path_for(subject), 'r', encoding='utf-8', newline='') as f:
        return f.read()


def file_date(local: LocalReplica, subject: str) -> datetime:
    return datetime.fromtimestamp(int(os.stat(local.path_for(subject)).st_mtime), tz=timezone.utc)


@pytest.fixture
def broken_remote(remote):
    """Provide a fake mailbox whose connection has failed."""
    remote.fail_with = TransportError("connection reset")
    return remote


@pytest.fixture
def restore_logging():
    """Undo configure_logging's changes to the root logger."""
    root_logger = logging.getLogger()
    handlers = root_logger.handlers[:]
    level = root_logger.level
    yield
    root_logger.handlers[:] = handlers
    root_logger.setLevel(level)
