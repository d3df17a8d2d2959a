"""
ProgressTracker のテスト
"""

import threading

import pytest

from call_pipeline.models import ProgressEvent
from call_pipeline.progress import ProgressTracker, iter_new_events

from conftest import FakeClock


def event(call_id, status="transcribing", progress=50.0):
    return ProgressEvent(
        call_id=call_id,
        broker_id="joh",
        filename=f"joh_{call_id}.wav",
        status=status,
        progress=progress,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tracker(clock):
    return ProgressTracker(ttl=60.0, clock=clock)


class TestEvents:
    """イベントの追記と取得のテスト"""

    def test_append_and_get_suffix(self, tracker):
        session_id = tracker.create_session()
        for i in range(3):
            assert tracker.append(session_id, event(str(i)))

        assert [e.call_id for e in tracker.get_events(session_id)] == ["0", "1", "2"]
        assert [e.call_id for e in tracker.get_events(session_id, since=2)] == ["2"]
        assert tracker.get_events(session_id, since=3) == []

    def test_unknown_session(self, tracker):
        assert tracker.append("missing", event("1")) is False
        assert tracker.get_events("missing") is None
        assert not tracker.has_session("missing")

    def test_create_session_generates_unique_ids(self, tracker):
        assert tracker.create_session() != tracker.create_session()

    def test_concurrent_appends_are_not_lost(self, tracker):
        session_id = tracker.create_session("batch")

        def worker(n):
            for i in range(50):
                tracker.append(session_id, event(f"{n}-{i}"))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(tracker.get_events(session_id)) == 200

    def test_event_to_dict_omits_missing_error(self):
        assert "error" not in event("1").to_dict()
        assert event("1", status="failed").to_dict()["status"] == "failed"


class TestEviction:
    """TTL による削除のテスト"""

    def test_session_is_removed_after_ttl(self, tracker, clock):
        session_id = tracker.create_session()
        tracker.append(session_id, event("1"))
        tracker.schedule_removal(session_id)

        clock.now = 59.0
        assert tracker.evict_expired() == []
        assert tracker.has_session(session_id)

        clock.now = 60.0
        assert tracker.evict_expired() == [session_id]
        assert tracker.get_events(session_id) is None

    def test_unscheduled_session_is_kept(self, tracker, clock):
        session_id = tracker.create_session()

        clock.now = 10000.0

        assert tracker.evict_expired() == []
        assert tracker.has_session(session_id)

    def test_remove(self, tracker):
        session_id = tracker.create_session()

        tracker.remove(session_id)

        assert not tracker.has_session(session_id)

    def test_sweeper_thread_starts_and_stops(self):
        tracker = ProgressTracker(ttl=0.0, sweep_interval=0.01)
        session_id = tracker.create_session()
        tracker.schedule_removal(session_id)

        tracker.start()
        try:
            for _ in range(200):
                if not tracker.has_session(session_id):
                    break
                threading.Event().wait(0.01)
        finally:
            tracker.stop()

        assert not tracker.has_session(session_id)


class TestIterNewEvents:
    """iter_new_events() のテスト"""

    def test_yields_only_new_events(self, tracker):
        session_id = tracker.create_session()
        tracker.append(session_id, event("1"))
        tracker.append(session_id, event("2"))
        stream = iter_new_events(tracker, session_id, poll_interval=0)

        assert [e.call_id for e in next(stream)] == ["1", "2"]

        tracker.append(session_id, event("3"))
        assert [e.call_id for e in next(stream)] == ["3"]

    def test_ends_when_session_is_removed(self, tracker):
        session_id = tracker.create_session()
        tracker.append(session_id, event("1"))
        stream = iter_new_events(tracker, session_id, poll_interval=0)

        next(stream)
        tracker.remove(session_id)

        assert list(stream) == []

    def test_ends_when_stopped(self, tracker):
        session_id = tracker.create_session()
        stop = threading.Event()
        stop.set()

        assert list(iter_new_events(tracker, session_id, stop_event=stop)) == []

    def test_unknown_session_yields_nothing(self, tracker):
        assert list(iter_new_events(tracker, "missing", poll_interval=0)) == []
