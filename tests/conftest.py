"""Shared fixtures: a migrated on-disk database per test."""

import pytest

from matchverify.config import VerifyConfig
from matchverify.db import Database
from matchverify.pending_repository import PendingVerificationRepository
from matchverify.repository import MatchRepository
from matchverify.verification import VerificationService


@pytest.fixture
def db(tmp_path):
    """Provide an initialized Database, closed after the test."""
    database = Database(tmp_path / "test.db")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def repo(db):
    return MatchRepository(db.conn)


@pytest.fixture
def pending_repo(db):
    return PendingVerificationRepository(db.conn)


@pytest.fixture
def verifier(repo):
    return VerificationService(repo)


@pytest.fixture
def fast_config(tmp_path):
    """Config with short intervals so loops finish quickly in tests."""
    return VerifyConfig(
        base_url="https://x",
        poll_interval=0.01,
        scan_fps=1000.0,
        data_dir=str(tmp_path),
        db_path=str(tmp_path / "test.db"),
    )
