"""Host-side quorum poller.

Re-reads a match's participants on a fixed interval and fires
``on_confirmed`` the first time the count reaches the quorum, then stops
itself.  The poller only reads; it never writes participants.

A failed read is retried on the next tick.  Once
``poll_failure_threshold`` ticks in a row have failed,
``on_persistent_failure`` is called (once per failure streak) so the
host UI can show it.

``nudge()`` wakes the poller before its interval elapses.  Wiring it to
``VerificationService.add_listener`` gives push-like latency when host
and joiners share a process; the tick stays as the fallback.
"""

import asyncio
import logging
import sqlite3
from typing import Callable

from matchverify.config import VerifyConfig
from matchverify.lifecycle import ConsecutiveFailureTracker
from matchverify.repository import MatchRepository

logger = logging.getLogger(__name__)

ParticipantsCallback = Callable[[list[str]], None]


class QuorumPoller:
    """Polls ``list_participants`` until the quorum is met or stopped."""

    def __init__(
        self,
        repo: MatchRepository,
        match_id: str,
        quorum: int,
        on_confirmed: ParticipantsCallback,
        config: VerifyConfig | None = None,
        on_progress: ParticipantsCallback | None = None,
        on_persistent_failure: Callable[[Exception], None] | None = None,
    ) -> None:
        if config is None:
            config = VerifyConfig()
        self._repo = repo
        self.match_id = match_id
        self.quorum = quorum
        self._on_confirmed = on_confirmed
        self._on_progress = on_progress
        self._on_persistent_failure = on_persistent_failure
        self._interval = config.poll_interval
        self._tracker = ConsecutiveFailureTracker(config.poll_failure_threshold)
        self._wake = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.ticks = 0
        self.confirmed = False

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self._task is not None:
            raise RuntimeError(f"Poller for match {self.match_id} already started")
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        """Cancel the poll loop and wait for it to exit."""
        if self._task is None or self._task.done():
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        logger.debug("Poller for match %s stopped after %d ticks", self.match_id, self.ticks)

    def nudge(self, *_args: object) -> None:
        """Wake the poller now instead of at the next interval.

        Accepts and ignores listener arguments so it can be registered
        directly with ``VerificationService.add_listener``.
        """
        self._wake.set()

    async def run(self) -> list[str]:
        """Poll until the quorum is reached; return the final participants."""
        logger.info(
            "Polling match %s every %.1fs for %d participants",
            self.match_id, self._interval, self.quorum,
        )
        while True:
            await self._wait_tick()
            participants = self.tick()
            if participants is not None and len(participants) >= self.quorum:
                self.confirmed = True
                logger.info(
                    "Match %s confirmed with %d participants",
                    self.match_id, len(participants),
                )
                self._on_confirmed(participants)
                return participants

    def tick(self) -> list[str] | None:
        """Read participants once. Returns None when the read failed."""
        self.ticks += 1
        try:
            participants = self._repo.list_participants(self.match_id)
        except sqlite3.Error as exc:
            self._tracker.record_failure()
            if not self._tracker.should_halt:
                logger.warning("Poll tick failed for match %s: %s", self.match_id, exc)
            elif self._tracker.consecutive == self._tracker.threshold:
                # Reported once per failure streak
                logger.error(
                    "Polling match %s failing for %d ticks: %s",
                    self.match_id, self._tracker.consecutive, exc,
                )
                if self._on_persistent_failure is not None:
                    self._on_persistent_failure(exc)
            return None

        self._tracker.record_success()
        if self._on_progress is not None:
            self._on_progress(participants)
        return participants

    async def _wait_tick(self) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=self._interval)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()
