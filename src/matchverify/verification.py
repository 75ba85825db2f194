"""Verification service: validate a claim and record participation.

``verify`` checks, in order: the match exists, the secret matches
exactly, the match is not cancelled, the user has not already joined,
and the match has room.  The last two checks and the insert itself are
repeated inside ``MatchRepository.append_participant_if_room`` as one
atomic statement; the early checks only give faster, clearer errors.
"""

import logging
import secrets
import sqlite3
from typing import Callable

from pydantic import ValidationError

from matchverify.exceptions import (
    AlreadyJoined,
    InvalidCode,
    MalformedPayload,
    MatchCancelled,
    MatchFull,
    MatchNotFound,
    VerificationError,
)
from matchverify.models import MatchStatus, VerificationClaim, VerificationResult
from matchverify.repository import AppendResult, MatchRepository

logger = logging.getLogger(__name__)

JoinListener = Callable[[str, str], None]

_REJECTIONS = {
    AppendResult.ALREADY_PRESENT: AlreadyJoined,
    AppendResult.FULL: MatchFull,
    AppendResult.CANCELLED: MatchCancelled,
    AppendResult.NOT_FOUND: MatchNotFound,
}


class VerificationService:
    """Records a joiner as a match participant.

    Idempotent per user per match: a repeated claim raises
    ``AlreadyJoined`` and never adds a second row.

    Listeners registered with ``add_listener`` are called with
    ``(match_id, user_id)`` after each successful join, e.g. to nudge a
    host's poller running in the same process.
    """

    def __init__(self, repo: MatchRepository) -> None:
        self._repo = repo
        self._listeners: list[JoinListener] = []

    def add_listener(self, listener: JoinListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: JoinListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def verify(
        self, acting_user_id: str, match_id: str, secret: str
    ) -> VerificationResult:
        """Validate the claim and append the user to the match.

        Raises:
            MalformedPayload: a claim field is empty.
            MatchNotFound, InvalidCode, MatchCancelled, AlreadyJoined,
            MatchFull: the claim was rejected.
            VerificationError: storage failed while verifying.
        """
        try:
            claim = VerificationClaim(
                acting_user_id=acting_user_id, match_id=match_id, secret=secret
            )
        except ValidationError as exc:
            raise MalformedPayload(
                "Verification claim is incomplete", match_id=match_id or None
            ) from exc

        try:
            result = self._verify(claim)
        except VerificationError as exc:
            log = logger.info if exc.benign else logger.warning
            log(
                "Verification rejected: user %s match %s: %s",
                claim.acting_user_id, claim.match_id, type(exc).__name__,
            )
            raise

        logger.info(
            "User %s verified for match %s (%d/%d)",
            claim.acting_user_id, claim.match_id,
            len(result.participants), result.quorum,
        )
        for listener in list(self._listeners):
            listener(claim.match_id, claim.acting_user_id)
        return result

    def _verify(self, claim: VerificationClaim) -> VerificationResult:
        mid = claim.match_id
        try:
            match = self._repo.get_match(mid)
            if match is None:
                raise MatchNotFound(f"No match {mid}", match_id=mid)
            if not secrets.compare_digest(
                match.secret.encode("utf-8"), claim.secret.encode("utf-8")
            ):
                raise InvalidCode(f"Wrong code for match {mid}", match_id=mid)
            if match.status is MatchStatus.CANCELLED:
                raise MatchCancelled(f"Match {mid} was cancelled", match_id=mid)
            if claim.acting_user_id in match.participants:
                raise AlreadyJoined(
                    f"{claim.acting_user_id} already in match {mid}", match_id=mid
                )

            outcome = self._repo.append_participant_if_room(mid, claim.acting_user_id)
            if outcome is not AppendResult.APPENDED:
                raise _REJECTIONS[outcome](
                    f"Join refused for match {mid}: {outcome.value}", match_id=mid
                )

            participants = self._repo.list_participants(mid)
        except sqlite3.Error as exc:
            raise VerificationError(
                f"Storage error while verifying match {mid}: {exc}", match_id=mid
            ) from exc

        return VerificationResult(
            match_id=mid,
            acting_user_id=claim.acting_user_id,
            participants=participants,
            quorum=match.quorum,
        )
