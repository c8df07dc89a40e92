"""Tests for the wait / debounce / reconcile loop."""

import logging
import os
import threading
import time

import pytest
from watchdog.events import FileClosedEvent, FileCreatedEvent, FileModifiedEvent, FileMovedEvent

from change_loop import ActivityTrackingHandler, ChangeLoop, NoteFolderHandler
from conftest import ADDRESS, read_note_file, utc, write_note_file
from errors import TransportError
from local_replica import LocalReplica
from sync_state import SyncState


def make_loop(remote, local, quiet_period=0.1, idle_timeout=5):
    return ChangeLoop(remote, local, ADDRESS, local.state, quiet_period=quiet_period, idle_timeout=idle_timeout)


class TestSignals:
    def test_signal_sets_deadline(self, remote, local):
        loop = make_loop(remote, local, quiet_period=5)

        loop.signal()

        assert 4 < loop.remaining() <= 5

    def test_wait_returns_on_remote_change(self, remote, local):
        remote.changes = [True]
        loop = make_loop(remote, local)

        loop.wait_for_signal()

        assert loop.remaining() > 0

    def test_wait_returns_on_local_signal(self, remote, local):
        loop = make_loop(remote, local)
        timer = threading.Timer(0.05, loop.signal)
        timer.start()

        started = time.monotonic()
        loop.wait_for_signal()

        assert time.monotonic() - started < 2
        timer.join()

    def test_wait_keeps_idling_after_timeout(self, remote, local):
        remote.changes = [False, False, True]
        loop = make_loop(remote, local)

        loop.wait_for_signal()

        assert remote.changes == []

    def test_debounce_waits_for_quiet_period(self, remote, local):
        loop = make_loop(remote, local, quiet_period=0.2)

        started = time.monotonic()
        loop.signal()
        loop.debounce()

        assert time.monotonic() - started >= 0.2

    def test_further_signals_extend_the_debounce(self, remote, local):
        loop = make_loop(remote, local, quiet_period=0.2)
        timer = threading.Timer(0.1, loop.signal)

        started = time.monotonic()
        loop.signal()
        timer.start()
        loop.debounce()

        assert time.monotonic() - started >= 0.3
        timer.join()


class TestSync:
    def test_sync_updates_memory_and_saves_state(self, remote, tmp_path):
        state = SyncState(str(tmp_path / 'state.json'))
        local = LocalReplica(str(tmp_path / 'notes'), state)
        remote.add_note('Fresh', 'hello\r\n', utc(2024, 1, 1))

        make_loop(remote, local).run(once=True)

        assert read_note_file(local, 'Fresh') == 'hello\r\n'
        assert SyncState(str(tmp_path / 'state.json')).local_subjects == {'Fresh'}

    def test_failed_pass_keeps_anchors_of_completed_transfers(self, remote, tmp_path):
        state_file = str(tmp_path / 'state.json')
        state = SyncState(state_file)
        local = LocalReplica(str(tmp_path / 'notes'), state)
        local.ensure_folder()
        write_note_file(local, 'Todo', 'mine\r\n', utc(2024, 1, 1), anchor=utc(2024, 1, 1))
        write_note_file(local, 'Zed', 'new\r\n', utc(2024, 1, 3))
        state.save()
        remote.add_note('Todo', 'theirs\r\n', utc(2024, 1, 2))

        def dropped_connection(raw_message):
            raise TransportError("connection reset")

        remote.append = dropped_connection
        with pytest.raises(TransportError):
            make_loop(remote, local).sync()
        del remote.append

        restarted = SyncState(state_file)
        make_loop(remote, LocalReplica(local.folder, restarted)).sync()

        assert sorted(os.listdir(local.folder)) == ['Todo.txt', 'Todo240101000000.txt', 'Zed.txt']
        assert restarted.anchor('Todo') == utc(2024, 1, 2)
        assert read_note_file(local, 'Todo') == 'theirs\r\n'

    def test_own_writes_do_not_trigger_another_pass(self, remote, local):
        remote.add_note('Fresh', 'hello\r\n', utc(2024, 1, 1))
        loop = make_loop(remote, local)
        loop.signal()

        loop.sync()

        assert not loop._wake.is_set()
        assert remote.acknowledged == 1

    def test_run_reconciles_after_a_change(self, remote, local):
        class Stop(Exception):
            pass

        passes = []
        loop = make_loop(remote, local, quiet_period=0.05)
        original_sync = loop.sync

        def counting_sync():
            original_sync()
            passes.append(time.monotonic())
            if len(passes) == 2:
                raise Stop()

        loop.sync = counting_sync
        remote.changes = [True]
        remote.add_note('Later', 'x', utc(2024, 1, 1))

        try:
            loop.run()
        except Stop:
            pass

        assert len(passes) == 2
        assert loop.observer is None


class TestFolderHandler:
    def setup_method(self):
        self.signals = []
        loop = type('Loop', (), {'signal': lambda _: self.signals.append(1)})()
        self.handler = NoteFolderHandler(loop)

    def test_note_changes_signal(self):
        self.handler.dispatch(FileCreatedEvent('/notes/a.txt'))
        self.handler.dispatch(FileModifiedEvent('/notes/a.txt'))
        self.handler.dispatch(FileMovedEvent('/notes/a.txt', '/notes/b.txt'))
        assert len(self.signals) == 3

    def test_other_files_are_ignored(self):
        self.handler.dispatch(FileModifiedEvent('/notes/.pomera_sync_state.json'))
        assert self.signals == []

    def test_closing_a_note_does_not_signal(self):
        self.handler.dispatch(FileClosedEvent('/notes/a.txt'))
        assert self.signals == []


def test_activity_tracking_handler():
    handler = ActivityTrackingHandler()
    test_logger = logging.getLogger('activity-test')
    test_logger.addHandler(handler)
    try:
        assert handler.check_and_reset() is False
        test_logger.warning("something happened")
        assert handler.check_and_reset() is True
        assert handler.check_and_reset() is False
    finally:
        test_logger.removeHandler(handler)
