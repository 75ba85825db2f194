"""Joiner-side scan view: capture a code (or take a typed one) and verify it.

``JoinFlow`` is the UI-boundary object for a joiner.  Every error ends
up on ``error`` with a user-facing message; none escapes to the caller.

Teardown: ``close()`` releases the camera deterministically.  A verify
call already in flight is shielded from the cancellation and allowed to
finish, but its result is dropped because the view is gone.
"""

import asyncio
import logging
from enum import Enum

from pydantic import ValidationError

from matchverify import codec
from matchverify.capture import Camera, CaptureLoop
from matchverify.config import VerifyConfig
from matchverify.exceptions import (
    CameraUnavailable,
    MalformedPayload,
    MatchVerifyError,
)
from matchverify.models import ScannedCode, VerificationResult
from matchverify.verification import VerificationService

logger = logging.getLogger(__name__)


class JoinState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    ERROR = "error"
    CLOSED = "closed"


class JoinFlow:
    """One joiner's attempt to confirm participation in a match."""

    def __init__(
        self,
        user_id: str,
        verifier: VerificationService,
        camera: Camera | None = None,
        config: VerifyConfig | None = None,
    ) -> None:
        if config is None:
            config = VerifyConfig()
        self.user_id = user_id
        self._verifier = verifier
        self._camera = camera
        self._config = config

        self.state = JoinState.IDLE
        self.error: MatchVerifyError | None = None
        self.result: VerificationResult | None = None
        self.already_joined = False
        self._loop: CaptureLoop | None = None
        self._scan_task: asyncio.Task | None = None
        self._pending_verify: asyncio.Task | None = None

    @property
    def message(self) -> str | None:
        """Inline text for the current state, if any."""
        if self.error is not None:
            return self.error.user_message
        if self.already_joined:
            return "You have already joined this match."
        if self.state is JoinState.VERIFIED:
            return "Participation verified!"
        return None

    @property
    def closed(self) -> bool:
        return self.state is JoinState.CLOSED

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def start_scanning(self) -> asyncio.Task:
        """Open the camera and scan in the background.

        Allowed from IDLE, or from ERROR/VERIFIED to scan again.
        """
        if self._camera is None:
            raise RuntimeError("No camera configured for this join flow")
        if self.state in (JoinState.SCANNING, JoinState.VERIFYING, JoinState.CLOSED):
            raise RuntimeError(f"Cannot start scanning while {self.state.value}")

        self.error = None
        self.state = JoinState.SCANNING
        self._loop = CaptureLoop(
            self._camera,
            on_decoded=self._verify_code,
            config=self._config,
            on_malformed=self._handle_malformed,
        )
        self._scan_task = asyncio.create_task(self._scan(self._loop))
        return self._scan_task

    async def wait(self) -> JoinState:
        """Wait for the current scan (and its verification) to finish."""
        if self._scan_task is not None:
            await asyncio.gather(self._scan_task, return_exceptions=True)
        return self.state

    async def _scan(self, loop: CaptureLoop) -> None:
        try:
            code = await loop.run()
        except CameraUnavailable as exc:
            self._fail(exc)
            return
        if code is None and self.state is JoinState.SCANNING:
            self.state = JoinState.IDLE

    def _handle_malformed(self, exc: MalformedPayload) -> None:
        # The scanner keeps running; only the inline message changes
        if not self.closed:
            self.error = exc

    # ------------------------------------------------------------------
    # Manual entry
    # ------------------------------------------------------------------

    async def submit_manual(self, match_id: str, code: str) -> JoinState:
        """Verify a typed match id and code.

        The code is upper-cased: the secret alphabet has no lower case.
        """
        try:
            scanned = ScannedCode(match_id=match_id, secret=(code or "").upper())
        except ValidationError as exc:
            self._fail(MalformedPayload("Match id and code are required"))
            logger.debug("Manual entry rejected: %s", exc)
            return self.state
        await self._verify_code(scanned)
        return self.state

    async def submit_payload(self, raw: str) -> JoinState:
        """Verify pasted payload text (a link or legacy JSON)."""
        try:
            scanned = codec.decode(raw, self._config)
        except MalformedPayload as exc:
            self._fail(exc)
            return self.state
        await self._verify_code(scanned)
        return self.state

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def _verify_code(self, code: ScannedCode) -> None:
        if self.closed:
            return
        self.state = JoinState.VERIFYING
        self.error = None
        task = asyncio.ensure_future(
            self._verifier.verify(self.user_id, code.match_id, code.secret)
        )
        task.add_done_callback(self._discard_if_closed)
        self._pending_verify = task

        try:
            result = await asyncio.shield(task)
        except MatchVerifyError as exc:
            if self.closed:
                return
            if getattr(exc, "benign", False):
                self.already_joined = True
                self.state = JoinState.VERIFIED
                return
            self._fail(exc)
            return
        finally:
            if self._pending_verify is task and task.done():
                self._pending_verify = None

        if self.closed:
            return
        self.result = result
        self.state = JoinState.VERIFIED

    def _discard_if_closed(self, task: asyncio.Task) -> None:
        # Retrieve the outcome so a late failure is never "unretrieved"
        if task.cancelled():
            return
        exc = task.exception()
        if self.closed:
            logger.info(
                "Discarding verification result after view closed: %s",
                type(exc).__name__ if exc else "success",
            )

    def _fail(self, exc: MatchVerifyError) -> None:
        if self.closed:
            return
        self.error = exc
        self.state = JoinState.ERROR

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close the view: release the camera, drop any late result."""
        self.state = JoinState.CLOSED
        if self._loop is not None:
            self._loop.request_stop()
        if self._scan_task is not None and not self._scan_task.done():
            self._scan_task.cancel()
            await asyncio.gather(self._scan_task, return_exceptions=True)
        if self._loop is not None:
            await self._loop.release()
