"""Frame throttle for the capture loop.

Bounds how often a frame is pulled from the camera and decoded.  The
throttle tracks elapsed time between attempts so decode time counts
toward the interval: if decoding took 60 ms and the interval is 100 ms,
only 40 ms of actual sleep occurs.

Fully async -- uses asyncio.sleep so the event loop (poll ticks, the
in-flight verify call) keeps running between frames.
"""

import asyncio
import logging
import time

from matchverify.config import VerifyConfig

logger = logging.getLogger(__name__)


class FrameThrottle:
    """Spaces decode attempts at most ``scan_fps`` per second.

    After a run of frame read errors, ``backoff()`` stretches the
    interval (capped at one second); ``recover()`` snaps it back to the
    configured rate on the next good frame.
    """

    def __init__(self, config: VerifyConfig | None = None, backoff_factor: float = 2.0):
        if config is None:
            config = VerifyConfig()
        if config.scan_fps <= 0:
            raise ValueError(f"scan_fps must be positive, got {config.scan_fps}")

        self._base_interval = 1.0 / config.scan_fps
        self._max_interval = max(1.0, self._base_interval)
        self._backoff_factor = backoff_factor
        self._interval = self._base_interval
        self._last_frame_time: float = 0.0

    @property
    def interval(self) -> float:
        """Current seconds between decode attempts."""
        return self._interval

    async def wait(self) -> float:
        """Sleep until the next frame is due, net of time already elapsed.

        Returns:
            The seconds actually slept.
        """
        elapsed = time.monotonic() - self._last_frame_time
        remaining = max(0.0, self._interval - elapsed)
        if remaining > 0:
            await asyncio.sleep(remaining)
        else:
            # Still yield so a stop request can land between frames
            await asyncio.sleep(0)
        self._last_frame_time = time.monotonic()
        return remaining

    def backoff(self) -> None:
        self._interval = min(self._interval * self._backoff_factor, self._max_interval)
        logger.debug("Frame throttle backoff: interval now %.3fs", self._interval)

    def recover(self) -> None:
        self._interval = self._base_interval
