"""Pydantic v2 models for matches, claims and verification outcomes.

Re-exports all model classes for convenient import::

    from matchverify.models import MatchModel, ScannedCode, ...
"""

from .claim import (
    PendingVerification,
    ScannedCode,
    VerificationClaim,
    VerificationResult,
)
from .match import CreatedSession, MatchModel, MatchStatus, MatchType

__all__ = [
    "MatchType",
    "MatchStatus",
    "MatchModel",
    "CreatedSession",
    "ScannedCode",
    "VerificationClaim",
    "VerificationResult",
    "PendingVerification",
]
