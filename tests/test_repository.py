"""Unit tests for MatchRepository.

Tests cover creation, the atomic append-if-room operation, cancellation
and reads, including two connections racing for the last slot.
"""

import sqlite3

import pytest

from matchverify.db import Database
from matchverify.models import MatchStatus, MatchType
from matchverify.repository import AppendResult, MatchRepository


@pytest.fixture
def singles(repo):
    return repo.create_match("m1", MatchType.SINGLES, "7F2QK1", "host")


@pytest.fixture
def doubles(repo):
    return repo.create_match("m2", MatchType.DOUBLES, "AAAAAA", "host")


class TestCreateMatch:
    def test_returns_model(self, repo, singles):
        assert singles.match_id == "m1"
        assert singles.participants == []
        assert singles.status is MatchStatus.OPEN

    def test_round_trip(self, repo, singles):
        match = repo.get_match("m1")
        assert match == singles

    def test_stores_quorum(self, db, repo, doubles):
        quorum = db.conn.execute(
            "SELECT quorum FROM matches WHERE match_id = 'm2'"
        ).fetchone()[0]
        assert quorum == 4

    def test_auto_join_creator(self, repo):
        match = repo.create_match(
            "m3", MatchType.SINGLES, "BBBBBB", "host", auto_join_creator=True
        )
        assert match.participants == ["host"]
        assert repo.list_participants("m3") == ["host"]

    def test_duplicate_secret_raises(self, repo, singles):
        with pytest.raises(sqlite3.IntegrityError):
            repo.create_match("other", MatchType.SINGLES, "7F2QK1", "host")
        assert repo.count_matches() == 1

    def test_duplicate_id_raises(self, repo, singles):
        with pytest.raises(sqlite3.IntegrityError):
            repo.create_match("m1", MatchType.SINGLES, "ZZZZZZ", "host")

    def test_secret_exists(self, repo, singles):
        assert repo.secret_exists("7F2QK1")
        assert not repo.secret_exists("7F2QK2")


class TestAppendParticipant:
    def test_appends_in_order(self, repo, doubles):
        for user in ("b", "a", "c"):
            assert repo.append_participant_if_room("m2", user) is AppendResult.APPENDED
        assert repo.list_participants("m2") == ["b", "a", "c"]

    def test_same_user_twice(self, repo, singles):
        assert repo.append_participant_if_room("m1", "a") is AppendResult.APPENDED
        assert repo.append_participant_if_room("m1", "a") is AppendResult.ALREADY_PRESENT
        assert repo.list_participants("m1") == ["a"]

    def test_full(self, repo, singles):
        repo.append_participant_if_room("m1", "a")
        repo.append_participant_if_room("m1", "b")
        assert repo.append_participant_if_room("m1", "c") is AppendResult.FULL
        assert repo.list_participants("m1") == ["a", "b"]

    def test_present_reported_before_full(self, repo, singles):
        repo.append_participant_if_room("m1", "a")
        repo.append_participant_if_room("m1", "b")
        assert repo.append_participant_if_room("m1", "a") is AppendResult.ALREADY_PRESENT

    def test_not_found(self, repo):
        assert repo.append_participant_if_room("nope", "a") is AppendResult.NOT_FOUND

    def test_cancelled(self, repo, singles):
        repo.cancel_match("m1")
        assert repo.append_participant_if_room("m1", "a") is AppendResult.CANCELLED
        assert repo.list_participants("m1") == []

    def test_racing_connections_never_exceed_quorum(self, tmp_path):
        """Two connections compete for the last Singles slot."""
        path = tmp_path / "race.db"
        first = Database(path)
        first.initialize()
        second = Database(path)
        second.initialize()
        try:
            repo_a = MatchRepository(first.conn)
            repo_b = MatchRepository(second.conn)
            repo_a.create_match("m1", MatchType.SINGLES, "7F2QK1", "host")
            repo_a.append_participant_if_room("m1", "a")

            outcomes = [
                repo_a.append_participant_if_room("m1", "b"),
                repo_b.append_participant_if_room("m1", "c"),
            ]
            assert outcomes == [AppendResult.APPENDED, AppendResult.FULL]
            assert repo_b.list_participants("m1") == ["a", "b"]
        finally:
            first.close()
            second.close()


class TestCancelMatch:
    def test_cancel(self, repo, singles):
        assert repo.cancel_match("m1") is True
        match = repo.get_match("m1")
        assert match.status is MatchStatus.CANCELLED
        assert match.cancelled_at is not None

    def test_cancel_twice(self, repo, singles):
        repo.cancel_match("m1")
        assert repo.cancel_match("m1") is False

    def test_cancel_unknown(self, repo):
        assert repo.cancel_match("nope") is False

    def test_participants_kept(self, repo, singles):
        repo.append_participant_if_room("m1", "a")
        repo.cancel_match("m1")
        assert repo.list_participants("m1") == ["a"]


class TestReads:
    def test_get_missing(self, repo):
        assert repo.get_match("nope") is None

    def test_list_missing(self, repo):
        assert repo.list_participants("nope") == []

    def test_count(self, repo, singles, doubles):
        assert repo.count_matches() == 2

    def test_confirmed_status(self, repo, singles):
        repo.append_participant_if_room("m1", "a")
        repo.append_participant_if_room("m1", "b")
        assert repo.get_match("m1").status is MatchStatus.CONFIRMED
