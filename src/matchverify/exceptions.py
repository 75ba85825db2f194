"""Custom exception hierarchy for match verification.

Exception tree:
    MatchVerifyError
    +-- CameraUnavailable   (camera permission denied / no device)
    +-- MalformedPayload    (scanned text is not a match code)
    +-- CreationFailed      (storage refused the new match)
    +-- VerificationError   (claim rejected by the verification service)
        +-- MatchNotFound
        +-- InvalidCode
        +-- AlreadyJoined   (benign -- the claim was already recorded)
        +-- MatchFull
        +-- MatchCancelled
"""

from typing import Optional


class MatchVerifyError(Exception):
    """Base exception for all match verification errors.

    ``user_message`` is the text shown inline at the UI boundary; the
    exception message itself is meant for logs.
    """

    user_message = "Something went wrong. Please try again."

    def __init__(self, message: str, *, match_id: Optional[str] = None):
        self.match_id = match_id
        super().__init__(message)


class CameraUnavailable(MatchVerifyError):
    """The camera stream could not be acquired.

    Terminal for the current capture attempt -- the user retries manually.
    """

    user_message = "Could not access camera. Please check permissions."


class MalformedPayload(MatchVerifyError):
    """Scanned or typed text does not carry a match id and code."""

    user_message = "Invalid match QR code."


class CreationFailed(MatchVerifyError):
    """The storage collaborator could not create the match."""

    user_message = "Could not create match. Try again."


class VerificationError(MatchVerifyError):
    """Base class for claims rejected by the verification service."""

    benign = False
    user_message = "Could not verify match participation."


class MatchNotFound(VerificationError):
    user_message = "Match not found. The QR code may be expired or invalid."


class InvalidCode(VerificationError):
    user_message = "Invalid verification code."


class AlreadyJoined(VerificationError):
    """The acting user is already a participant.

    Retried submissions of a processed scan are expected, so callers
    present this as a no-op rather than a failure.
    """

    benign = True
    user_message = "You have already joined this match."


class MatchFull(VerificationError):
    user_message = "This match already has all of its players."


class MatchCancelled(VerificationError):
    user_message = "Match has been cancelled."
