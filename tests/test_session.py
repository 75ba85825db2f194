"""Tests for SessionManager.create_session and the HostSession state machine."""

import asyncio
import sqlite3
from unittest.mock import AsyncMock, MagicMock

import pytest

from matchverify import codec
from matchverify.config import VerifyConfig
from matchverify.exceptions import CreationFailed
from matchverify.models import MatchStatus, MatchType
from matchverify.repository import MatchRepository
from matchverify.session import HostSession, HostState, SessionManager


def _fixed(*values):
    """Factory returning *values* in order, repeating the last one."""
    it = iter(values)
    last = [values[-1]]

    def factory():
        last[0] = next(it, last[0])
        return last[0]

    return factory


# ---------------------------------------------------------------------------
# SessionManager
# ---------------------------------------------------------------------------

class TestGenerateSecret:
    def test_length_and_alphabet(self, repo):
        manager = SessionManager(repo)
        for _ in range(50):
            secret = manager.generate_secret()
            assert len(secret) == 6
            assert set(secret) <= set("0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ")

    def test_custom_length(self, repo):
        manager = SessionManager(repo, VerifyConfig(secret_length=10))
        assert len(manager.generate_secret()) == 10


class TestCreateSession:
    @pytest.mark.asyncio
    async def test_creates_match(self, repo):
        manager = SessionManager(repo, id_factory=lambda: "m1", secret_factory=lambda: "7F2QK1")
        session = await manager.create_session("host", MatchType.DOUBLES)

        assert (session.match_id, session.secret) == ("m1", "7F2QK1")
        assert session.match_type is MatchType.DOUBLES
        match = repo.get_match("m1")
        assert match.creator_id == "host"
        assert match.quorum == 4
        assert match.participants == []

    @pytest.mark.asyncio
    async def test_default_ids_are_unique(self, repo):
        manager = SessionManager(repo)
        first = await manager.create_session("host", MatchType.SINGLES)
        second = await manager.create_session("host", MatchType.SINGLES)
        assert first.match_id != second.match_id
        assert repo.count_matches() == 2

    @pytest.mark.asyncio
    async def test_host_auto_join(self, repo):
        config = VerifyConfig(host_auto_join=True)
        manager = SessionManager(repo, config, id_factory=lambda: "m1")
        await manager.create_session("host", MatchType.SINGLES)
        assert repo.list_participants("m1") == ["host"]

    @pytest.mark.asyncio
    async def test_empty_host_rejected(self, repo):
        manager = SessionManager(repo)
        with pytest.raises(CreationFailed):
            await manager.create_session("", MatchType.SINGLES)
        assert repo.count_matches() == 0

    @pytest.mark.asyncio
    async def test_secret_collision_regenerates(self, repo):
        repo.create_match("existing", MatchType.SINGLES, "AAAAAA", "other")
        manager = SessionManager(
            repo, id_factory=lambda: "m1", secret_factory=_fixed("AAAAAA", "BBBBBB")
        )
        session = await manager.create_session("host", MatchType.SINGLES)
        assert session.secret == "BBBBBB"
        assert repo.get_match("m1").secret == "BBBBBB"

    @pytest.mark.asyncio
    async def test_collisions_exhaust_attempts(self, repo):
        repo.create_match("existing", MatchType.SINGLES, "AAAAAA", "other")
        manager = SessionManager(
            repo,
            VerifyConfig(secret_attempts=3),
            id_factory=lambda: "m1",
            secret_factory=lambda: "AAAAAA",
        )
        with pytest.raises(CreationFailed, match="No unique secret"):
            await manager.create_session("host", MatchType.SINGLES)
        assert repo.get_match("m1") is None

    @pytest.mark.asyncio
    async def test_duplicate_match_id_fails(self, repo):
        repo.create_match("m1", MatchType.SINGLES, "AAAAAA", "other")
        manager = SessionManager(repo, id_factory=lambda: "m1", secret_factory=lambda: "BBBBBB")
        with pytest.raises(CreationFailed) as excinfo:
            await manager.create_session("host", MatchType.SINGLES)
        assert excinfo.value.match_id == "m1"

    @pytest.mark.asyncio
    async def test_transient_error_retried_with_same_secret(self, repo):
        real_create = repo.create_match
        calls = []

        def flaky(match_id, match_type, secret, creator_id, auto_join_creator=False):
            calls.append(secret)
            if len(calls) == 1:
                raise sqlite3.OperationalError("database is locked")
            return real_create(match_id, match_type, secret, creator_id, auto_join_creator)

        repo.create_match = flaky
        manager = SessionManager(repo, id_factory=lambda: "m1", secret_factory=_fixed("AAAAAA", "BBBBBB"))
        session = await manager.create_session("host", MatchType.SINGLES)

        assert calls == ["AAAAAA", "AAAAAA"]
        assert session.secret == "AAAAAA"

    @pytest.mark.asyncio
    async def test_persistent_storage_error(self, repo):
        repo.create_match = MagicMock(side_effect=sqlite3.OperationalError("disk I/O error"))
        manager = SessionManager(repo, VerifyConfig(max_retries=2))
        with pytest.raises(CreationFailed) as excinfo:
            await manager.create_session("host", MatchType.SINGLES)
        assert repo.create_match.call_count == 2
        assert isinstance(excinfo.value.__cause__, sqlite3.OperationalError)


# ---------------------------------------------------------------------------
# HostSession
# ---------------------------------------------------------------------------

def _host_session(repo, config, verifier=None, host_id="host"):
    manager = SessionManager(
        repo, config, id_factory=lambda: "m1", secret_factory=lambda: "7F2QK1"
    )
    return HostSession(host_id, manager, repo, config, verifier=verifier)


class TestHostSessionStates:
    def test_initial_state(self, repo, fast_config):
        session = _host_session(repo, fast_config)
        assert session.state is HostState.SELECTING
        assert session.match_type is MatchType.SINGLES
        assert session.quorum == 2
        assert session.poller is None

    def test_select_type(self, repo, fast_config):
        session = _host_session(repo, fast_config)
        session.select_type(MatchType.DOUBLES)
        assert session.quorum == 4

    @pytest.mark.asyncio
    async def test_host_starts_polling(self, repo, fast_config):
        session = _host_session(repo, fast_config)
        session.select_type(MatchType.DOUBLES)
        try:
            assert await session.host() is HostState.HOSTING
            assert session.payload == codec.encode("m1", "7F2QK1", fast_config)
            assert session.poller.is_running
            assert session.poller.quorum == 4
        finally:
            await session.close()
        assert not session.poller.is_running

    @pytest.mark.asyncio
    async def test_select_type_locked_while_hosting(self, repo, fast_config):
        session = _host_session(repo, fast_config)
        await session.host()
        try:
            with pytest.raises(RuntimeError):
                session.select_type(MatchType.DOUBLES)
            with pytest.raises(RuntimeError):
                await session.host()
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_creation_failure_stays_selecting(self, repo, fast_config):
        manager = MagicMock()
        manager.create_session = AsyncMock(side_effect=CreationFailed("nope"))
        session = HostSession("host", manager, repo, fast_config)

        assert await session.host() is HostState.SELECTING
        assert isinstance(session.error, CreationFailed)
        assert session.error.user_message == "Could not create match. Try again."
        assert session.poller is None

        # Retry from SELECTING is allowed
        manager.create_session = AsyncMock(side_effect=CreationFailed("again"))
        await session.host()
        assert manager.create_session.await_count == 1

    @pytest.mark.asyncio
    async def test_cancel_while_hosting(self, repo, fast_config):
        session = _host_session(repo, fast_config)
        await session.host()
        assert await session.cancel() is HostState.CANCELLED
        assert not session.poller.is_running
        assert repo.get_match("m1").status is MatchStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_while_selecting(self, repo, fast_config):
        session = _host_session(repo, fast_config)
        assert await session.cancel() is HostState.CANCELLED
        assert repo.count_matches() == 0

    @pytest.mark.asyncio
    async def test_cancel_after_cancel_rejected(self, repo, fast_config):
        session = _host_session(repo, fast_config)
        await session.cancel()
        with pytest.raises(RuntimeError):
            await session.cancel()


class TestHostSessionQuorum:
    @pytest.mark.asyncio
    async def test_confirmed_when_quorum_reached(self, repo, fast_config):
        session = _host_session(repo, fast_config)
        await session.host()
        try:
            repo.append_participant_if_room("m1", "alice")
            repo.append_participant_if_room("m1", "bob")
            assert await session.wait_confirmed(timeout=2)
            assert session.state is HostState.CONFIRMED
            assert session.participants == ["alice", "bob"]
            await asyncio.sleep(0)
            assert not session.poller.is_running
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_cancel_after_confirmed_rejected(self, repo, fast_config):
        session = _host_session(repo, fast_config)
        await session.host()
        repo.append_participant_if_room("m1", "alice")
        repo.append_participant_if_room("m1", "bob")
        await session.wait_confirmed(timeout=2)
        with pytest.raises(RuntimeError):
            await session.cancel()
        await session.close()

    @pytest.mark.asyncio
    async def test_wait_confirmed_times_out(self, repo, fast_config):
        session = _host_session(repo, fast_config)
        await session.host()
        try:
            assert await session.wait_confirmed(timeout=0.05) is False
            assert session.state is HostState.HOSTING
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_join_nudges_poller(self, repo, verifier, tmp_path):
        """A join through the shared verifier confirms without waiting a tick."""
        config = VerifyConfig(base_url="https://x", poll_interval=60.0)
        session = _host_session(repo, config, verifier=verifier)
        await session.host()
        try:
            await verifier.verify("alice", "m1", "7F2QK1")
            await verifier.verify("bob", "m1", "7F2QK1")
            assert await session.wait_confirmed(timeout=2)
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_confirmation_unregisters_listener(self, repo, verifier, fast_config):
        """A shared verifier does not keep listeners of finished sessions."""
        session = _host_session(repo, fast_config, verifier=verifier)
        await session.host()
        try:
            await verifier.verify("alice", "m1", "7F2QK1")
            await verifier.verify("bob", "m1", "7F2QK1")
            assert await session.wait_confirmed(timeout=2)
            assert verifier._listeners == []
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_close_unregisters_listener(self, repo, verifier, fast_config):
        session = _host_session(repo, fast_config, verifier=verifier)
        await session.host()
        await session.close()
        assert verifier._listeners == []

    @pytest.mark.asyncio
    async def test_persistent_poll_failure_surfaced(self, db, fast_config):
        repo = MatchRepository(db.conn)
        session = _host_session(repo, fast_config)
        await session.host()
        try:
            repo.list_participants = MagicMock(
                side_effect=sqlite3.OperationalError("database is locked")
            )
            for _ in range(100):
                if session.error is not None:
                    break
                await asyncio.sleep(0.01)
            assert isinstance(session.error, sqlite3.OperationalError)
            assert session.state is HostState.HOSTING
        finally:
            await session.close()
