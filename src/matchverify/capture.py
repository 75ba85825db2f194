"""Camera capture loop: read frames, decode, surface exactly one code.

The loop pulls frames from a camera collaborator at a bounded rate
(``FrameThrottle``), hands any text found in a frame to the codec, and
reports the first valid code through a single async callback.

Ordering rules:

* The stream is released *before* the success callback is awaited, so a
  later frame can never start a second verification for the same scan.
  The one-shot ``_claimed`` flag is set with no await between the check
  and the set, which is what makes it safe on a single event loop.
* Frames without a code (``decode_frame`` returning None, or a frame read
  error) are the normal case while scanning and are never reported.
  ``frame_error_threshold`` read errors in a row mean the device is
  gone and end the scan with ``CameraUnavailable``.
* Payloads that decode to text but not to a match code are reported via
  ``on_malformed`` and scanning continues.
* However the loop ends -- success, camera error, cancellation -- the
  stream is released in ``finally``.  A stream whose open was still in
  flight when the loop was cancelled is closed once the open completes.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol

from matchverify import codec
from matchverify.config import VerifyConfig
from matchverify.exceptions import CameraUnavailable, MalformedPayload
from matchverify.lifecycle import ConsecutiveFailureTracker
from matchverify.models import ScannedCode
from matchverify.rate_limiter import FrameThrottle

logger = logging.getLogger(__name__)

ENVIRONMENT_FACING = "environment"


class Camera(Protocol):
    """Device capture API consumed by the loop."""

    async def open_stream(self, facing: str = ENVIRONMENT_FACING) -> Any: ...

    async def decode_frame(self, stream: Any) -> Optional[str]: ...

    async def close_stream(self, stream: Any) -> None: ...


class CaptureLoop:
    """Continuous read/decode cycle over one camera stream.

    Usage::

        loop = CaptureLoop(camera, on_decoded=verify_code)
        code = await loop.run()       # or: loop.start(); ...; await loop.stop()

    The caller must have its preview surface ready before starting; the
    loop does not wait for one.
    """

    def __init__(
        self,
        camera: Camera,
        on_decoded: Callable[[ScannedCode], Awaitable[None]],
        config: VerifyConfig | None = None,
        on_malformed: Callable[[MalformedPayload], None] | None = None,
        facing: str = ENVIRONMENT_FACING,
    ) -> None:
        if config is None:
            config = VerifyConfig()
        self._camera = camera
        self._on_decoded = on_decoded
        self._on_malformed = on_malformed
        self._config = config
        self._facing = facing
        self._throttle = FrameThrottle(config)
        self._read_failures = ConsecutiveFailureTracker(config.frame_error_threshold)
        self._late_release: asyncio.Future | None = None

        self._stream: Any = None
        self._released = False
        self._claimed = False
        self._stop_requested = False
        self._task: asyncio.Task | None = None
        self.frames_read = 0

    @property
    def is_scanning(self) -> bool:
        """Whether a stream is open and not yet released."""
        return self._stream is not None and not self._released

    @property
    def claimed(self) -> bool:
        """Whether a code has already been taken from this loop."""
        return self._claimed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> asyncio.Task:
        """Run the loop as a background task."""
        if self._task is not None:
            raise RuntimeError("CaptureLoop already started")
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        """Cancel the loop and release the stream.

        Safe to call at any point, including while a decode or the
        success callback is in flight.
        """
        self._stop_requested = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.debug("Capture task ended with %r during stop", exc)
        await self.release()

    def request_stop(self) -> None:
        """Ask the loop to exit before its next frame."""
        self._stop_requested = True

    async def run(self) -> ScannedCode | None:
        """Acquire the stream and scan until a code is decoded or stopped.

        Returns:
            The decoded code, or None if the loop was stopped first.

        Raises:
            CameraUnavailable: the stream could not be opened, or
                stopped delivering frames.
        """
        try:
            self._stream = await self._acquire()
            logger.info("Camera stream open (%s), scanning", self._facing)

            while not self._stop_requested:
                await self._throttle.wait()
                if self._stop_requested:
                    break
                raw = await self._read_frame()
                if raw is None:
                    continue
                code = await self.handle_decoded_text(raw)
                if code is not None:
                    return code
            return None
        finally:
            await self.release()

    async def release(self) -> None:
        """Close the stream once. Later calls are no-ops."""
        if self._stream is None or self._released:
            return
        # Mark first so a concurrent release never closes twice
        self._released = True
        try:
            await self._camera.close_stream(self._stream)
            logger.debug("Camera stream released after %d frames", self.frames_read)
        except Exception as exc:
            logger.warning("Camera stream close failed: %s", exc)

    # ------------------------------------------------------------------
    # Frame handling
    # ------------------------------------------------------------------

    async def handle_decoded_text(self, raw: str) -> ScannedCode | None:
        """Frame callback: turn decoded frame text into at most one code.

        Returns the code if this call claimed the scan, else None.
        """
        if self._claimed:
            logger.debug("Dropping frame decoded after the scan was claimed")
            return None
        try:
            code = codec.decode(raw, self._config)
        except MalformedPayload as exc:
            logger.info("Scanned text is not a match code: %s", exc)
            if self._on_malformed is not None:
                self._on_malformed(exc)
            return None

        self._claimed = True
        self._stop_requested = True
        await self.release()
        logger.info("Scanned match %s, stream stopped", code.match_id)
        await self._on_decoded(code)
        return code

    async def _acquire(self) -> Any:
        opening = asyncio.ensure_future(self._open_stream())
        try:
            return await asyncio.shield(opening)
        except asyncio.CancelledError:
            # The device call keeps running; a stream it yields after
            # cancellation is closed as soon as it arrives
            opening.add_done_callback(self._close_late_stream)
            raise

    async def _open_stream(self) -> Any:
        try:
            return await self._camera.open_stream(self._facing)
        except CameraUnavailable:
            raise
        except Exception as exc:
            logger.error("Could not open camera: %s", exc)
            raise CameraUnavailable(f"Camera unavailable: {exc}") from exc

    def _close_late_stream(self, opening: asyncio.Future) -> None:
        if opening.cancelled() or opening.exception() is not None:
            return
        logger.debug("Camera stream opened after the scan was stopped; closing it")
        self._stream = opening.result()
        self._late_release = asyncio.ensure_future(self.release())

    async def _read_frame(self) -> str | None:
        self.frames_read += 1
        try:
            raw = await self._camera.decode_frame(self._stream)
        except Exception as exc:
            logger.debug("Frame %d read failed: %s", self.frames_read, exc)
            if self._read_failures.record_failure():
                logger.error(
                    "Camera failed %d frames in a row: %s",
                    self._read_failures.consecutive, exc,
                )
                raise CameraUnavailable(f"Camera stopped delivering frames: {exc}") from exc
            self._throttle.backoff()
            return None
        self._read_failures.record_success()
        self._throttle.recover()
        return raw or None
