"""Local folder of note files, one <subject>.txt per note."""

import logging
import os
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

from note_message import Note, normalize_newlines
from sync_state import SyncState

logger = logging.getLogger(__name__)

NOTE_SUFFIX = '.txt'


@dataclass
class LocalEntry:
    """A note file and its sync-relevant timestamps."""

    subject: str
    path: str
    last_write: datetime
    anchor: Optional[datetime] = None


def _file_date(path: str) -> datetime:
    """Modification time of path in UTC, truncated to whole seconds."""
    mtime = os.stat(path).st_mtime
    return datetime.fromtimestamp(int(mtime), tz=timezone.utc)


class LocalReplica:
    """Reads and writes notes in the local note folder."""

    def __init__(self, folder: str, state: SyncState):
        self.folder = folder
        self.state = state

    def ensure_folder(self):
        os.makedirs(self.folder, exist_ok=True)

    def path_for(self, subject: str) -> str:
        return os.path.join(self.folder, subject + NOTE_SUFFIX)

    def entries(self) -> Dict[str, LocalEntry]:
        """Map every note file in the folder by its subject."""
        entries = {}
        with os.scandir(self.folder) as it:
            for item in it:
                if not item.is_file() or not item.name.endswith(NOTE_SUFFIX):
                    continue
                subject = item.name[:-len(NOTE_SUFFIX)]
                entries[subject] = LocalEntry(
                    subject=subject,
                    path=item.path,
                    last_write=_file_date(item.path),
                    anchor=self.state.anchor(subject),
                )
        return entries

    def read(self, entry: LocalEntry, address: str) -> Note:
        with open(entry.path, 'r', encoding='utf-8-sig', newline='') as f:
            body = f.read()
        return Note(address, entry.subject, entry.last_write, normalize_newlines(body))

    def write(self, note: Note, anchor: bool = True):
        """Write note to disk, dating the file with note.date.

        Unless anchor is False, note.date is also recorded as the date the
        subject was last synced.
        """
        self.ensure_folder()
        path = self.path_for(note.subject)
        with open(path, 'w', encoding='utf-8', newline='') as f:
            f.write(note.body)
        timestamp = note.date.timestamp()
        os.utime(path, (timestamp, timestamp))
        if anchor:
            self.state.set_anchor(note.subject, note.date)
        logger.debug(f"Wrote {path} dated {note.date.isoformat()}")

    def copy(self, entry: LocalEntry, subject: str):
        """Copy a note file to a new subject, keeping its modification time."""
        shutil.copy2(entry.path, self.path_for(subject))
