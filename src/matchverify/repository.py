"""Data access layer for matches and their participants.

Provides MatchRepository, the storage collaborator consumed by the
session manager, verification service and quorum poller.  Receives a
raw ``sqlite3.Connection`` so tests can pass any connection.

The only shared mutable resource is ``match_participants``; every write
to it goes through ``append_participant_if_room``, a single conditional
INSERT that SQLite executes atomically, so two joiners can never both be
accepted past the quorum.
"""

import sqlite3
from datetime import datetime, timezone
from enum import Enum

from matchverify.models import MatchModel, MatchType

# ---------------------------------------------------------------------------
# SQL constants
# ---------------------------------------------------------------------------

INSERT_MATCH = """
    INSERT INTO matches (
        match_id, match_type, secret, creator_id, quorum, created_at
    ) VALUES (
        :match_id, :match_type, :secret, :creator_id, :quorum, :created_at
    )
"""

INSERT_CREATOR = """
    INSERT INTO match_participants (match_id, user_id, joined_at)
    VALUES (:match_id, :creator_id, :created_at)
"""

# Check-then-append in one statement: the row is only produced when the
# match exists, is not cancelled, and still has room.
APPEND_PARTICIPANT = """
    INSERT INTO match_participants (match_id, user_id, joined_at)
    SELECT m.match_id, :user_id, :joined_at
    FROM matches AS m
    WHERE m.match_id = :match_id
      AND m.cancelled_at IS NULL
      AND (
          SELECT COUNT(*) FROM match_participants AS p
          WHERE p.match_id = m.match_id
      ) < m.quorum
    ON CONFLICT(match_id, user_id) DO NOTHING
"""

CANCEL_MATCH = """
    UPDATE matches SET cancelled_at = ?
    WHERE match_id = ? AND cancelled_at IS NULL
"""

SELECT_PARTICIPANTS = """
    SELECT user_id FROM match_participants
    WHERE match_id = ?
    ORDER BY rowid
"""


class AppendResult(str, Enum):
    """Outcome of ``append_participant_if_room``."""

    APPENDED = "appended"
    ALREADY_PRESENT = "already_present"
    FULL = "full"
    CANCELLED = "cancelled"
    NOT_FOUND = "not_found"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository class
# ---------------------------------------------------------------------------

class MatchRepository:
    """Data access layer for hosted matches.

    Write methods use ``with self.conn:`` for automatic commit on
    success / rollback on exception.  Exceptions (IntegrityError,
    OperationalError) are NOT caught -- they propagate to callers.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_match(
        self,
        match_id: str,
        match_type: MatchType,
        secret: str,
        creator_id: str,
        auto_join_creator: bool = False,
    ) -> MatchModel:
        """Insert a new match, optionally with the creator as first participant.

        Raises ``sqlite3.IntegrityError`` when ``match_id`` or ``secret``
        already exists.
        """
        data = {
            "match_id": match_id,
            "match_type": match_type.value,
            "secret": secret,
            "creator_id": creator_id,
            "quorum": match_type.quorum,
            "created_at": _now(),
        }
        with self.conn:
            self.conn.execute(INSERT_MATCH, data)
            if auto_join_creator:
                self.conn.execute(INSERT_CREATOR, data)

        return MatchModel(
            match_id=match_id,
            match_type=match_type,
            secret=secret,
            creator_id=creator_id,
            created_at=data["created_at"],
            participants=[creator_id] if auto_join_creator else [],
        )

    def append_participant_if_room(
        self, match_id: str, user_id: str
    ) -> AppendResult:
        """Atomically add *user_id* to the match if it has room.

        The insert and the classification of a refused insert run in the
        same transaction.  An identity already present is reported as
        ``ALREADY_PRESENT`` even when the match is also full.
        """
        with self.conn:
            cursor = self.conn.execute(
                APPEND_PARTICIPANT,
                {"match_id": match_id, "user_id": user_id, "joined_at": _now()},
            )
            if cursor.rowcount == 1:
                return AppendResult.APPENDED

            match = self.conn.execute(
                "SELECT cancelled_at FROM matches WHERE match_id = ?",
                (match_id,),
            ).fetchone()
            if match is None:
                return AppendResult.NOT_FOUND

            present = self.conn.execute(
                "SELECT 1 FROM match_participants "
                "WHERE match_id = ? AND user_id = ?",
                (match_id, user_id),
            ).fetchone()
            if present is not None:
                return AppendResult.ALREADY_PRESENT
            if match["cancelled_at"] is not None:
                return AppendResult.CANCELLED
            return AppendResult.FULL

    def cancel_match(self, match_id: str) -> bool:
        """Mark a match cancelled. Returns False if absent or already cancelled.

        Participants are kept; no rows are deleted.
        """
        with self.conn:
            cursor = self.conn.execute(CANCEL_MATCH, (_now(), match_id))
        return cursor.rowcount == 1

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_match(self, match_id: str) -> MatchModel | None:
        """Return the match with its ordered participants, or None."""
        row = self.conn.execute(
            "SELECT * FROM matches WHERE match_id = ?", (match_id,)
        ).fetchone()
        if row is None:
            return None
        return MatchModel(
            match_id=row["match_id"],
            match_type=MatchType(row["match_type"]),
            secret=row["secret"],
            creator_id=row["creator_id"],
            created_at=row["created_at"],
            cancelled_at=row["cancelled_at"],
            participants=self.list_participants(match_id),
        )

    def list_participants(self, match_id: str) -> list[str]:
        """Return participant ids in join order."""
        rows = self.conn.execute(SELECT_PARTICIPANTS, (match_id,)).fetchall()
        return [r["user_id"] for r in rows]

    def secret_exists(self, secret: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM matches WHERE secret = ?", (secret,)
        ).fetchone()
        return row is not None

    def count_matches(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM matches").fetchone()[0]
