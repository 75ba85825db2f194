"""Pydantic v2 models for verification claims and their outcomes."""

from pydantic import BaseModel, ConfigDict, Field


class ScannedCode(BaseModel):
    """The (match id, secret) pair carried by an encoded payload."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    match_id: str = Field(min_length=1)
    secret: str = Field(min_length=1)


class VerificationClaim(BaseModel):
    """A code plus the user claiming participation.

    Values are kept exactly as given: the secret is compared byte for
    byte, so any normalisation happens before a claim is built.
    """

    model_config = ConfigDict(frozen=True)

    match_id: str = Field(min_length=1)
    secret: str = Field(min_length=1)
    acting_user_id: str = Field(min_length=1)


class VerificationResult(BaseModel):
    """Successful verification: the joiner is now a participant."""

    match_id: str
    acting_user_id: str
    participants: list[str]
    quorum: int

    @property
    def opponents(self) -> list[str]:
        """Participants other than the acting user, in join order."""
        return [p for p in self.participants if p != self.acting_user_id]

    @property
    def confirmed(self) -> bool:
        return len(self.participants) >= self.quorum


class PendingVerification(BaseModel):
    """Verification intent preserved across a guest's auth detour."""

    session_key: str = Field(min_length=1)
    match_id: str = Field(min_length=1)
    secret: str = Field(min_length=1)
    return_path: str = Field(min_length=1)
    created_at: str = ""
