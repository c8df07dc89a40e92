"""Keep reconciling whenever either side of the sync changes.

The loop blocks on the server (IDLE or polling) until something happens.
File system events from the note folder wake it up early. Once woken, it
waits for a quiet period without further changes before running a pass,
so a burst of edits ends up in a single reconciliation.
"""

import logging
import threading
import time

from watchdog.events import PatternMatchingEventHandler
from watchdog.observers import Observer

from local_replica import NOTE_SUFFIX, LocalReplica
from reconcile import reconcile
from sync_state import SyncState

logger = logging.getLogger(__name__)

QUIET_PERIOD = 5

# IDLE has to be restarted before the server's 30 minute inactivity timeout
IDLE_TIMEOUT = 14 * 60


class ActivityTrackingHandler(logging.Handler):
    """Handler that tracks whether any logging has occurred.

    This allows us to help limit the amount of logging output during idle periods.
    Specifically: be able to tell if we have emitted something since the last time
    we checked.  If nothing has occurred, no need to emit again."""

    def __init__(self, level=logging.NOTSET):
        super().__init__(level)
        self.activity_occurred = False

    def emit(self, record):
        """Called for every log record - mark activity as occurred."""
        self.activity_occurred = True

    def check_and_reset(self) -> bool:
        """Check if activity occurred and reset the flag."""
        occurred = self.activity_occurred
        self.activity_occurred = False
        return occurred


class NoteFolderHandler(PatternMatchingEventHandler):
    """Forwards note file changes in the watched folder to the change loop."""

    def __init__(self, loop: 'ChangeLoop'):
        super().__init__(patterns=['*' + NOTE_SUFFIX], ignore_directories=True)
        self.loop = loop

    def on_created(self, event):
        self.loop.signal()

    def on_deleted(self, event):
        self.loop.signal()

    def on_moved(self, event):
        self.loop.signal()

    def on_modified(self, event):
        self.loop.signal()


class ChangeLoop:
    """Runs reconciliation at startup and after every debounced change."""

    def __init__(self, remote, local: LocalReplica, address: str, state: SyncState,
                 quiet_period: float = QUIET_PERIOD, idle_timeout: float = IDLE_TIMEOUT):
        self.remote = remote
        self.local = local
        self.address = address
        self.state = state
        self.quiet_period = quiet_period
        self.idle_timeout = idle_timeout

        self._wake = threading.Event()
        self._deadline = 0.0
        self._lock = threading.Lock()
        self.observer = None

    def signal(self):
        """Push the sync deadline back and interrupt the current wait.

        Called from the file system watcher thread; never touches the replicas.
        """
        with self._lock:
            self._deadline = time.monotonic() + self.quiet_period
        self._wake.set()

    def remaining(self) -> float:
        """Seconds left until the quiet period is over."""
        with self._lock:
            return self._deadline - time.monotonic()

    def sync(self):
        """Run one reconciliation pass and persist the resulting state.

        The state is saved even when the pass fails part way, so the anchors
        of notes transferred before the failure are kept.
        """
        try:
            self.state.local_subjects = reconcile(self.remote, self.local, self.address, self.state.local_subjects)
            self.remote.acknowledge_changes()
        finally:
            self.state.save()
        # The pass's own writes to the folder are not edits to react to
        self._wake.clear()

    def wait_for_signal(self):
        """Block until the server or the note folder reports a change."""
        while not self._wake.is_set():
            if self.remote.wait_for_change(self._wake, self.idle_timeout):
                self.signal()

    def debounce(self):
        """Wait until no change has been seen for a whole quiet period."""
        while True:
            self._wake.clear()
            remaining = self.remaining()
            if remaining <= 0:
                return
            if self.remote.wait_for_change(self._wake, remaining):
                self.signal()

    def start_watcher(self):
        self.local.ensure_folder()
        self.observer = Observer()
        self.observer.schedule(NoteFolderHandler(self), path=self.local.folder, recursive=False)
        self.observer.daemon = True
        self.observer.start()
        logger.debug(f"Watching {self.local.folder} for changes")

    def stop_watcher(self):
        if self.observer:
            self.observer.stop()
            self.observer.join(timeout=1.0)
            self.observer = None

    def run(self, once: bool = False):
        """
        Synchronize now, then keep synchronizing on every change.

        Args:
            once: Return after the first pass instead of monitoring
        """
        self.sync()
        if once:
            return

        self.start_watcher()

        activity_handler = ActivityTrackingHandler(logging.INFO)
        root_logger = logging.getLogger()
        root_logger.addHandler(activity_handler)

        try:
            while True:
                # Only emit this message if something else has been logged since last time
                if activity_handler.check_and_reset():
                    logger.info("Waiting for changes...")
                    activity_handler.check_and_reset()

                self.wait_for_signal()
                logger.info("Change detected, waiting for edits to settle")
                self.debounce()
                self.sync()
        finally:
            root_logger.removeHandler(activity_handler)
            self.stop_watcher()
