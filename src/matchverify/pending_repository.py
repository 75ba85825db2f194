"""Data access layer for verification intent held across auth detours.

Follows the same patterns as MatchRepository: receives a raw
``sqlite3.Connection``, uses module-level SQL constants, and wraps
mutations in ``with self.conn:`` for automatic commit/rollback.

An intent is consumed with ``pop`` (read + delete in one transaction),
so a resumed verification runs at most once per stored intent.
"""

import sqlite3
from datetime import datetime, timezone

from matchverify.models import PendingVerification

UPSERT_PENDING = """
    INSERT INTO pending_verifications (
        session_key, match_id, secret, return_path, created_at
    ) VALUES (
        :session_key, :match_id, :secret, :return_path, :created_at
    )
    ON CONFLICT(session_key) DO UPDATE SET
        match_id    = excluded.match_id,
        secret      = excluded.secret,
        return_path = excluded.return_path,
        created_at  = excluded.created_at
"""


class PendingVerificationRepository:
    """Stores one pending verification per client session key.

    Opening a second link before authenticating replaces the first
    intent; only the most recent link is resumed.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def save(self, pending: PendingVerification) -> PendingVerification:
        data = pending.model_dump()
        if not data["created_at"]:
            data["created_at"] = datetime.now(timezone.utc).isoformat()
        with self.conn:
            self.conn.execute(UPSERT_PENDING, data)
        return PendingVerification(**data)

    def get(self, session_key: str) -> PendingVerification | None:
        row = self.conn.execute(
            "SELECT * FROM pending_verifications WHERE session_key = ?",
            (session_key,),
        ).fetchone()
        return PendingVerification(**dict(row)) if row is not None else None

    def pop(self, session_key: str) -> PendingVerification | None:
        """Return and delete the pending intent for *session_key*."""
        with self.conn:
            row = self.conn.execute(
                "SELECT * FROM pending_verifications WHERE session_key = ?",
                (session_key,),
            ).fetchone()
            if row is None:
                return None
            cursor = self.conn.execute(
                "DELETE FROM pending_verifications WHERE session_key = ?",
                (session_key,),
            )
            # Another connection consumed it between our read and delete
            if cursor.rowcount == 0:
                return None
        return PendingVerification(**dict(row))
