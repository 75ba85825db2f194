"""Process lifecycle helpers shared by the CLI and long-running loops.

* **ShutdownHandler** -- cross-platform graceful Ctrl+C via
  ``signal.signal(SIGINT, ...)``.  First press sets a flag; second press
  force-exits.
* **ConsecutiveFailureTracker** -- decides when a run of failures is
  persistent enough to surface instead of retrying quietly.
"""

import asyncio
import logging
import signal

logger = logging.getLogger(__name__)


class ShutdownHandler:
    """Cross-platform graceful shutdown via Ctrl+C.

    Uses ``signal.signal(SIGINT, ...)`` which works on both Windows and
    Unix (unlike ``loop.add_signal_handler`` which raises
    ``NotImplementedError`` on Windows).

    First Ctrl+C sets a flag so a host session can be cancelled or a
    scanner closed cleanly.  Second Ctrl+C raises ``SystemExit(1)``.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._original_handler = None

    def install(self) -> None:
        """Save the current SIGINT handler and install our own."""
        self._original_handler = signal.getsignal(signal.SIGINT)
        signal.signal(signal.SIGINT, self._handle)

    def _handle(self, sig, frame) -> None:  # noqa: ANN001
        if self._event.is_set():
            logger.warning("Force shutdown")
            raise SystemExit(1)
        logger.info("Shutdown requested. Closing session...")
        self._event.set()

    @property
    def is_set(self) -> bool:
        """Whether a shutdown has been requested."""
        return self._event.is_set()

    def restore(self) -> None:
        """Restore the original SIGINT handler if one was saved."""
        if self._original_handler is not None:
            signal.signal(signal.SIGINT, self._original_handler)


class ConsecutiveFailureTracker:
    """Track consecutive failures and flag when a threshold is reached.

    A single failed poll tick is expected noise; *threshold* in a row is
    worth telling the user about.  Any single success resets the counter.
    """

    def __init__(self, threshold: int = 3) -> None:
        self.threshold = threshold
        self.consecutive: int = 0

    def record_success(self) -> None:
        """Reset the consecutive failure counter."""
        self.consecutive = 0

    def record_failure(self) -> bool:
        """Increment the counter. Return ``True`` if threshold is reached."""
        self.consecutive += 1
        return self.consecutive >= self.threshold

    @property
    def should_halt(self) -> bool:
        """Whether the failure threshold has been reached or exceeded."""
        return self.consecutive >= self.threshold
