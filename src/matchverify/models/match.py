"""Pydantic v2 models for hosted matches.

MatchModel validates a match record with its ordered participants.
The match status is derived from the record, never stored.
"""

from enum import Enum

from pydantic import BaseModel, Field, model_validator
from typing_extensions import Self


class MatchType(str, Enum):
    SINGLES = "Singles"
    DOUBLES = "Doubles"

    @property
    def quorum(self) -> int:
        """Distinct participants required to confirm the match."""
        return 2 if self is MatchType.SINGLES else 4


class MatchStatus(str, Enum):
    OPEN = "open"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class MatchModel(BaseModel):
    """Validation model for a match and its participants."""

    match_id: str = Field(min_length=1)
    match_type: MatchType
    secret: str = Field(min_length=1)
    creator_id: str = Field(min_length=1)
    created_at: str = Field(min_length=1)
    cancelled_at: str | None = None
    participants: list[str] = Field(default_factory=list)  # join order

    @property
    def quorum(self) -> int:
        return self.match_type.quorum

    @property
    def status(self) -> MatchStatus:
        if self.cancelled_at is not None:
            return MatchStatus.CANCELLED
        if len(self.participants) >= self.quorum:
            return MatchStatus.CONFIRMED
        return MatchStatus.OPEN

    @model_validator(mode="after")
    def check_participants(self) -> Self:
        """Participants are unique and never exceed the quorum."""
        if len(set(self.participants)) != len(self.participants):
            raise ValueError(
                f"Duplicate participant in match {self.match_id}"
            )
        if len(self.participants) > self.quorum:
            raise ValueError(
                f"{len(self.participants)} participants exceed quorum "
                f"{self.quorum} for {self.match_type.value} match {self.match_id}"
            )
        return self


class CreatedSession(BaseModel):
    """What the host receives from a successful createSession."""

    match_id: str = Field(min_length=1)
    secret: str = Field(min_length=1)
    match_type: MatchType
