"""
Adaptive stats polling.

A changed dataset hash marks high activity and shortens the interval; it
decays back to the baseline after a quiet period. Pausing keeps the
interval state. Results of fetches that were in flight when the poller was
paused or stopped are discarded, never retried.
"""

import asyncio
import hashlib
import inspect
import json
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional

from sqlalchemy.orm import Session
from loguru import logger

from pledgehub.config import settings
from pledgehub.domain.states import SessionStatus
from pledgehub.services.session_store import SessionStore


class ActivityLevel:
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


def dataset_hash(snapshot: Mapping[str, Any]) -> str:
    """SHA-256 over session count, pledge count, executing count and per-session totals."""
    sessions = sorted(snapshot.get("sessions", []), key=lambda s: str(s.get("session_id")))
    digest_input = {
        "session_count": len(sessions),
        "pledge_count": sum(int(s.get("total_pledges") or 0) for s in sessions),
        "executing_count": sum(int(s.get("executing_count") or 0) for s in sessions),
        "totals": [
            [str(s.get("session_id")), str(s.get("total_pledge_value")), s.get("status")]
            for s in sessions
        ],
    }
    encoded = json.dumps(digest_input, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def build_snapshot(db: Session, statuses: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    """Current stats of every non-terminal session, with its dataset hash."""
    store = SessionStore(db)
    wanted = set(statuses) if statuses else set(SessionStatus.ALL) - SessionStatus.TERMINAL
    sessions: List[Dict[str, Any]] = []
    for session in store.list_sessions():
        if session.status not in wanted:
            continue
        stats = store.stats(session.id).to_dict()
        sessions.append({"session_id": session.id, "status": session.status, **stats})
    snapshot: Dict[str, Any] = {"sessions": sessions}
    snapshot["dataset_hash"] = dataset_hash(snapshot)
    return snapshot


class AdaptiveInterval:
    """Polling interval that reacts to dataset changes."""

    def __init__(
        self,
        baseline: Optional[float] = None,
        medium: Optional[float] = None,
        high: Optional[float] = None,
        medium_after: float = 30.0,
        low_after: Optional[float] = None,
        min_gap: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.baseline = baseline if baseline is not None else settings.poll_baseline_seconds
        self.medium = medium if medium is not None else settings.poll_medium_seconds
        self.high = high if high is not None else settings.poll_high_activity_seconds
        self.medium_after = medium_after
        self.low_after = low_after if low_after is not None else settings.poll_decay_seconds
        self.min_gap = min_gap if min_gap is not None else self.high
        self.clock = clock

        self.last_hash: Optional[str] = None
        self.last_change_at: Optional[float] = None
        self.last_poll_at: Optional[float] = None

    def observe(self, digest: str) -> bool:
        """Record a fetched dataset hash. Returns True when it changed."""
        changed = self.last_hash is not None and digest != self.last_hash
        if changed:
            self.last_change_at = self.clock()
        self.last_hash = digest
        return changed

    def level(self) -> str:
        if self.last_change_at is None:
            return ActivityLevel.LOW
        quiet = self.clock() - self.last_change_at
        if quiet < self.medium_after:
            return ActivityLevel.HIGH
        if quiet < self.low_after:
            return ActivityLevel.MEDIUM
        return ActivityLevel.LOW

    def current(self) -> float:
        return {
            ActivityLevel.HIGH: self.high,
            ActivityLevel.MEDIUM: self.medium,
            ActivityLevel.LOW: self.baseline,
        }[self.level()]

    def can_poll(self, force: bool = False) -> bool:
        if force or self.last_poll_at is None:
            return True
        return self.clock() - self.last_poll_at >= self.min_gap

    def mark_polled(self) -> None:
        self.last_poll_at = self.clock()


class StatsPoller:
    """
    Background polling loop around an async ``fetch``.

    ``on_update`` receives every accepted result and may be sync or async.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[Any]],
        on_update: Callable[[Any], Any],
        interval: Optional[AdaptiveInterval] = None,
        digest: Callable[[Any], str] = dataset_hash,
    ):
        self.fetch = fetch
        self.on_update = on_update
        self.interval = interval or AdaptiveInterval()
        self.digest = digest

        self.generation = 0
        self.last_result: Any = None
        self.last_error: Optional[Exception] = None
        self._running = False
        self._paused = False
        self._task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def paused(self) -> bool:
        return self._paused

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._running = True
        self._paused = False
        self._wake = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        logger.debug("Stats poller started")

    def pause(self) -> None:
        """Stop polling; anything in flight is dropped. Interval state is kept."""
        self._paused = True
        self.generation += 1

    def resume(self) -> None:
        if not self._running:
            return
        self._paused = False
        self._wake.set()

    async def refresh(self) -> bool:
        """Poll right away, ignoring the minimum gap."""
        return await self.poll_once(force=True)

    async def stop(self) -> None:
        self._running = False
        self.generation += 1
        self._wake.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.debug("Stats poller stopped")

    async def poll_once(self, force: bool = False) -> bool:
        """Fetch once. Returns True if the result was delivered to on_update."""
        if not self.interval.can_poll(force):
            return False

        generation = self.generation
        self.interval.mark_polled()
        try:
            result = await self.fetch()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.last_error = e
            logger.warning(f"Stats poll failed: {e}")
            return False

        if generation != self.generation:
            logger.debug("Discarding stats fetched before pause/stop")
            return False

        changed = self.interval.observe(self.digest(result))
        self.last_result = result
        self.last_error = None
        outcome = self.on_update(result)
        if inspect.isawaitable(outcome):
            await outcome
        if changed:
            logger.debug(f"Stats changed; polling every {self.interval.current()}s")
        return True

    async def _run(self) -> None:
        while self._running:
            if not self._paused:
                await self.poll_once()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval.current())
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
