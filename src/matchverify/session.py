"""Match session creation and the host-side state machine.

``SessionManager.create_session`` persists a new match with a freshly
generated secret.  ``HostSession`` owns the host lifecycle::

    SELECTING --host()--> HOSTING --quorum reached--> CONFIRMED
        |                    |
        +----cancel()--------+-----------------------> CANCELLED

While HOSTING it runs a ``QuorumPoller``; the poller is stopped on every
way out of HOSTING (confirmed, cancelled, or ``close()`` on teardown).
"""

import asyncio
import logging
import secrets
import sqlite3
import uuid
from enum import Enum
from typing import Callable

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from matchverify import codec
from matchverify.config import VerifyConfig
from matchverify.exceptions import CreationFailed, MatchVerifyError
from matchverify.models import CreatedSession, MatchModel, MatchType
from matchverify.poller import QuorumPoller
from matchverify.repository import MatchRepository
from matchverify.verification import VerificationService

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Session creation
# ---------------------------------------------------------------------------

class SessionManager:
    """Creates matches for hosts.

    ``id_factory`` and ``secret_factory`` default to a random UUID and a
    random code from ``config.secret_alphabet``; tests pass fixed ones.
    """

    def __init__(
        self,
        repo: MatchRepository,
        config: VerifyConfig | None = None,
        id_factory: Callable[[], str] | None = None,
        secret_factory: Callable[[], str] | None = None,
    ) -> None:
        if config is None:
            config = VerifyConfig()
        self._repo = repo
        self._config = config
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self._secret_factory = secret_factory or self.generate_secret

    def generate_secret(self) -> str:
        alphabet = self._config.secret_alphabet
        return "".join(
            secrets.choice(alphabet) for _ in range(self._config.secret_length)
        )

    async def create_session(
        self, host_id: str, match_type: MatchType
    ) -> CreatedSession:
        """Persist a new match and return its id and secret.

        A secret that collides with an existing match is replaced by a
        fresh one, up to ``secret_attempts`` times.  Transient storage
        errors are retried with the *same* id and secret.

        Raises:
            CreationFailed: storage refused the match.
        """
        if not host_id:
            raise CreationFailed("A host id is required")

        match_id = self._id_factory()
        for attempt in range(1, self._config.secret_attempts + 1):
            secret = self._secret_factory()
            try:
                match = await self._insert(match_id, match_type, secret, host_id)
            except sqlite3.IntegrityError as exc:
                if self._repo.secret_exists(secret):
                    logger.debug(
                        "Secret collision on attempt %d for match %s", attempt, match_id
                    )
                    continue
                raise CreationFailed(
                    f"Could not create match {match_id}: {exc}", match_id=match_id
                ) from exc
            except sqlite3.Error as exc:
                logger.error("Match creation failed for host %s: %s", host_id, exc)
                raise CreationFailed(
                    f"Could not create match {match_id}: {exc}", match_id=match_id
                ) from exc

            logger.info(
                "Host %s created %s match %s", host_id, match_type.value, match.match_id
            )
            return CreatedSession(
                match_id=match.match_id, secret=match.secret, match_type=match_type
            )

        raise CreationFailed(
            f"No unique secret after {self._config.secret_attempts} attempts",
            match_id=match_id,
        )

    async def _insert(
        self, match_id: str, match_type: MatchType, secret: str, host_id: str
    ) -> MatchModel:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(sqlite3.OperationalError),
            wait=wait_exponential_jitter(initial=0.05, max=1, jitter=0.05),
            stop=stop_after_attempt(self._config.max_retries),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                return self._repo.create_match(
                    match_id,
                    match_type,
                    secret,
                    host_id,
                    auto_join_creator=self._config.host_auto_join,
                )


# ---------------------------------------------------------------------------
# Host state machine
# ---------------------------------------------------------------------------

class HostState(str, Enum):
    SELECTING = "selecting"
    HOSTING = "hosting"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class HostSession:
    """Host-side lifecycle of one match.

    Errors are kept on ``error`` rather than raised: a failed creation
    leaves the session in SELECTING so the host can try again, and a
    persistent polling problem is surfaced while HOSTING continues.

    Given the ``verifier`` joiners use in the same process, the session
    nudges its poller on every join to its match instead of waiting for
    the next tick.
    """

    def __init__(
        self,
        host_id: str,
        manager: SessionManager,
        repo: MatchRepository,
        config: VerifyConfig | None = None,
        verifier: VerificationService | None = None,
    ) -> None:
        if config is None:
            config = VerifyConfig()
        self.host_id = host_id
        self._manager = manager
        self._repo = repo
        self._config = config
        self._verifier = verifier

        self.state = HostState.SELECTING
        self.match_type = MatchType.SINGLES
        self.session: CreatedSession | None = None
        self.payload: str | None = None
        self.participants: list[str] = []
        self.error: MatchVerifyError | Exception | None = None
        self._poller: QuorumPoller | None = None
        self._confirmed = asyncio.Event()

    @property
    def quorum(self) -> int:
        return self.match_type.quorum

    @property
    def poller(self) -> QuorumPoller | None:
        return self._poller

    def select_type(self, match_type: MatchType) -> None:
        self._require(HostState.SELECTING, "select a match type")
        self.match_type = match_type

    async def host(self) -> HostState:
        """Create the match, encode its payload and start polling."""
        self._require(HostState.SELECTING, "host")
        self.error = None
        try:
            session = await self._manager.create_session(self.host_id, self.match_type)
        except CreationFailed as exc:
            self.error = exc
            return self.state

        self.session = session
        self.payload = codec.encode(session.match_id, session.secret, self._config)
        self.state = HostState.HOSTING
        self._poller = QuorumPoller(
            self._repo,
            session.match_id,
            self.quorum,
            on_confirmed=self._handle_confirmed,
            config=self._config,
            on_progress=self._handle_progress,
            on_persistent_failure=self._handle_poll_failure,
        )
        if self._verifier is not None:
            self._verifier.add_listener(self._handle_join)
        self._poller.start()
        return self.state

    async def cancel(self) -> HostState:
        """Abandon the session. The match is marked cancelled in storage."""
        if self.state not in (HostState.SELECTING, HostState.HOSTING):
            raise RuntimeError(f"Cannot cancel a {self.state.value} session")
        await self._stop_poller()
        if self.session is not None:
            self._repo.cancel_match(self.session.match_id)
            logger.info("Host %s cancelled match %s", self.host_id, self.session.match_id)
        self.state = HostState.CANCELLED
        return self.state

    async def close(self) -> None:
        """Teardown: stop polling whatever the state."""
        await self._stop_poller()

    async def wait_confirmed(self, timeout: float | None = None) -> bool:
        """Wait for CONFIRMED. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._confirmed.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    # ------------------------------------------------------------------
    # Poller callbacks
    # ------------------------------------------------------------------

    def _handle_progress(self, participants: list[str]) -> None:
        self.participants = participants
        # A successful read clears a previously surfaced poll failure
        if self.error is not None and not isinstance(self.error, MatchVerifyError):
            self.error = None

    def _handle_confirmed(self, participants: list[str]) -> None:
        if self.state is not HostState.HOSTING:
            return
        self.participants = participants
        self.state = HostState.CONFIRMED
        # The poller stops itself after confirming; joins need no more nudges
        if self._verifier is not None:
            self._verifier.remove_listener(self._handle_join)
        self._confirmed.set()

    def _handle_poll_failure(self, exc: Exception) -> None:
        self.error = exc

    def _handle_join(self, match_id: str, user_id: str) -> None:
        if self._poller is not None and self.session is not None:
            if match_id == self.session.match_id:
                self._poller.nudge()

    async def _stop_poller(self) -> None:
        if self._verifier is not None:
            self._verifier.remove_listener(self._handle_join)
        if self._poller is not None:
            await self._poller.stop()

    def _require(self, state: HostState, action: str) -> None:
        if self.state is not state:
            raise RuntimeError(
                f"Cannot {action} while {self.state.value}; expected {state.value}"
            )
