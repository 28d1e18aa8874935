"""
Tests for adaptive stats polling and session snapshots.
"""

import asyncio
import os
import sys
from decimal import Decimal

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from pledgehub.services.stats_poller import (
    ActivityLevel,
    AdaptiveInterval,
    StatsPoller,
    build_snapshot,
    dataset_hash,
)
from pledgehub.services.session_store import SessionStore
from pledgehub.services.submission import SubmissionWorkflow


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _interval(clock):
    return AdaptiveInterval(baseline=30, medium=20, high=10, medium_after=30, low_after=60, clock=clock)


def _snapshot(total_pledges, value="1000.00"):
    return {"sessions": [{"session_id": "s1", "status": "active",
                          "total_pledges": total_pledges, "total_pledge_value": value}]}


class TestDatasetHash:
    def test_order_independent(self):
        a = {"sessions": [{"session_id": "a", "total_pledges": 1}, {"session_id": "b", "total_pledges": 2}]}
        b = {"sessions": list(reversed(a["sessions"]))}
        assert dataset_hash(a) == dataset_hash(b)

    def test_changes_with_totals(self):
        assert dataset_hash(_snapshot(1)) != dataset_hash(_snapshot(2))
        assert dataset_hash(_snapshot(1, "1000.00")) != dataset_hash(_snapshot(1, "2000.00"))


class TestAdaptiveInterval:
    def test_starts_at_baseline(self):
        interval = _interval(FakeClock())
        assert interval.level() == ActivityLevel.LOW
        assert interval.current() == 30

    def test_first_observation_is_not_a_change(self):
        interval = _interval(FakeClock())
        assert interval.observe("h1") is False
        assert interval.current() == 30

    def test_change_speeds_up_then_decays(self):
        clock = FakeClock()
        interval = _interval(clock)
        interval.observe("h1")

        assert interval.observe("h2") is True
        assert interval.current() == 10

        clock.advance(30)
        assert interval.level() == ActivityLevel.MEDIUM
        assert interval.current() == 20

        clock.advance(30)
        assert interval.current() == 30

    def test_minimum_gap_between_polls(self):
        clock = FakeClock()
        interval = _interval(clock)
        assert interval.can_poll()

        interval.mark_polled()
        clock.advance(5)
        assert not interval.can_poll()
        assert interval.can_poll(force=True)

        clock.advance(5)
        assert interval.can_poll()


class TestStatsPoller:
    def test_poll_delivers_result(self):
        updates = []
        snapshots = [_snapshot(1), _snapshot(2)]

        async def fetch():
            return snapshots.pop(0)

        poller = StatsPoller(fetch, updates.append, interval=_interval(FakeClock()))

        async def scenario():
            assert await poller.refresh()
            assert await poller.refresh()

        asyncio.run(scenario())

        assert [u["sessions"][0]["total_pledges"] for u in updates] == [1, 2]
        assert poller.interval.current() == 10

    def test_result_in_flight_during_pause_is_discarded(self):
        updates = []
        poller = None

        async def fetch():
            # Paused while the request is outstanding
            poller.pause()
            return _snapshot(1)

        poller = StatsPoller(fetch, updates.append, interval=_interval(FakeClock()))

        delivered = asyncio.run(poller.refresh())

        assert delivered is False
        assert updates == []
        assert poller.paused

    def test_fetch_error_is_kept_not_raised(self):
        async def fetch():
            raise ConnectionError("stats endpoint unavailable")

        poller = StatsPoller(fetch, lambda result: None, interval=_interval(FakeClock()))

        assert asyncio.run(poller.refresh()) is False
        assert isinstance(poller.last_error, ConnectionError)

    def test_async_callback(self):
        seen = []

        async def fetch():
            return _snapshot(3)

        async def on_update(result):
            seen.append(result["sessions"][0]["total_pledges"])

        poller = StatsPoller(fetch, on_update, interval=_interval(FakeClock()))
        asyncio.run(poller.refresh())

        assert seen == [3]

    def test_start_and_stop(self):
        updates = []

        async def fetch():
            return _snapshot(1)

        async def scenario():
            poller = StatsPoller(fetch, updates.append, interval=_interval(FakeClock()))
            poller.start()
            assert poller.running
            await asyncio.sleep(0.05)
            await poller.stop()
            assert not poller.running

        asyncio.run(scenario())

        assert len(updates) == 1


class TestBuildSnapshot:
    def test_snapshot_from_storage(self, db_session, approved_user, make_session, submission_factory):
        session = make_session()
        before = build_snapshot(db_session)
        SubmissionWorkflow(db_session).submit(approved_user.id, submission_factory(session.id)).unwrap()

        after = build_snapshot(db_session)

        assert before["dataset_hash"] != after["dataset_hash"]
        entry = after["sessions"][0]
        assert entry["session_id"] == session.id
        assert entry["total_pledges"] == 1
        assert Decimal(entry["total_pledge_value"]) == Decimal("1000.00")

    def test_terminal_sessions_are_left_out(self, db_session, admin_user, make_session):
        session = make_session()
        SessionStore(db_session).cancel_session(session.id, admin_user.id).unwrap()

        assert build_snapshot(db_session)["sessions"] == []
