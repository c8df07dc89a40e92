"""Persistent synchronization state.

Keeps, per note subject, the server date that was last reconciled into the
local folder (the "anchor"), plus the set of local subjects that existed at
the end of the previous pass.
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Dict, Optional, Set

logger = logging.getLogger(__name__)


class SyncState:
    """Anchor dates and sync memory, stored as a small JSON file."""

    def __init__(self, state_file: Optional[str] = None):
        """
        Initialize the state store.

        Args:
            state_file: Path of the JSON file to persist to, or None to keep
                the state in memory only
        """
        self.state_file = state_file
        self.anchors: Dict[str, datetime] = {}
        self.local_subjects: Set[str] = set()

        if state_file:
            self.load()

    def load(self):
        """Load state from file, starting fresh if it is missing or unreadable."""
        if not os.path.exists(self.state_file):
            logger.debug(f"No state file at {self.state_file}, starting fresh")
            return

        try:
            with open(self.state_file, 'r', encoding='utf-8') as f:
                state = json.load(f)
            self.anchors = {
                subject: datetime.fromisoformat(timestamp)
                for subject, timestamp in state.get('anchors', {}).items()
            }
            self.local_subjects = set(state.get('local_subjects', []))
            logger.info(f"Loaded state from {self.state_file}: {len(self.anchors)} synced notes")
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Could not load state file: {e}. Starting fresh.")
            self.anchors = {}
            self.local_subjects = set()

    def save(self):
        """Save state to file."""
        if not self.state_file:
            return

        state = {
            'anchors': {subject: date.isoformat() for subject, date in sorted(self.anchors.items())},
            'local_subjects': sorted(self.local_subjects),
        }

        try:
            tmp_file = f"{self.state_file}.tmp"
            with open(tmp_file, 'w', encoding='utf-8') as f:
                json.dump(state, f, indent=2, ensure_ascii=False)
            os.replace(tmp_file, self.state_file)
            logger.debug(f"Saved state to {self.state_file}")
        except OSError as e:
            logger.error(f"Failed to save state: {e}")

    def anchor(self, subject: str) -> Optional[datetime]:
        return self.anchors.get(subject)

    def set_anchor(self, subject: str, date: datetime):
        self.anchors[subject] = date.astimezone(timezone.utc)

    def prune_anchors(self, subjects: Set[str]):
        """Forget anchors of subjects that are no longer in the local folder."""
        stale = [subject for subject in self.anchors if subject not in subjects]
        for subject in stale:
            del self.anchors[subject]
        if stale:
            logger.debug(f"Pruned {len(stale)} anchors of removed notes")
