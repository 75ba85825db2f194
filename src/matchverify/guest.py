"""Guest entry flow: a verification link opened without being signed in.

States::

    CHECKING_AUTH --actor--> VERIFYING --> SUCCESS | ERROR
          |
          +--no actor--> GUEST_PROMPT --resume() after auth--> VERIFYING

In GUEST_PROMPT the link's match id, code and full return path are kept
in two places: on the signup/login URLs (``?redirect=<return path>``)
and in ``pending_verifications`` under the client's session key.  After
authentication, ``resume()`` (same flow object) or ``from_pending()``
(a fresh process, e.g. an auth callback) verifies without a re-scan.

CHECKING_AUTH runs once per flow object: a second ``open()`` returns the
current state instead of verifying again.
"""

import logging
from enum import Enum
from urllib.parse import parse_qs, quote, urlsplit, urlunsplit

from matchverify import codec
from matchverify.auth import AuthProvider
from matchverify.config import VerifyConfig
from matchverify.exceptions import MalformedPayload, MatchVerifyError
from matchverify.models import (
    MatchModel,
    PendingVerification,
    ScannedCode,
    VerificationResult,
)
from matchverify.pending_repository import PendingVerificationRepository
from matchverify.repository import MatchRepository
from matchverify.verification import VerificationService

logger = logging.getLogger(__name__)

SIGNUP = "signup"
LOGIN = "login"


class GuestState(str, Enum):
    NEW = "new"
    CHECKING_AUTH = "checking_auth"
    GUEST_PROMPT = "guest_prompt"
    VERIFYING = "verifying"
    SUCCESS = "success"
    ERROR = "error"


def auth_url(kind: str, return_path: str) -> str:
    """Build ``/signup?redirect=...`` or ``/login?redirect=...``."""
    if kind not in (SIGNUP, LOGIN):
        raise ValueError(f"Unknown auth page: {kind!r}")
    return f"/{kind}?redirect={quote(return_path, safe='')}"


def return_path_from(url: str) -> str | None:
    """Recover the ``redirect`` return path from an auth URL."""
    values = parse_qs(urlsplit(url).query).get("redirect")
    return values[0] if values else None


def return_path_of(link: str) -> str:
    """Strip scheme and host from *link*, keeping path, query and fragment."""
    parts = urlsplit(link)
    if not parts.netloc:
        return link
    return urlunsplit(("", "", parts.path or "/", parts.query, parts.fragment))


class GuestEntryFlow:
    """Resolves a verification link for whoever opened it."""

    def __init__(
        self,
        link: str,
        session_key: str,
        auth: AuthProvider,
        verifier: VerificationService,
        pending: PendingVerificationRepository,
        repo: MatchRepository | None = None,
        config: VerifyConfig | None = None,
    ) -> None:
        self.link = link
        self.session_key = session_key
        self._auth = auth
        self._verifier = verifier
        self._pending = pending
        self._repo = repo
        self._config = config or VerifyConfig()

        self.state = GuestState.NEW
        self.code: ScannedCode | None = None
        self.return_path = return_path_of(link)
        self.match: MatchModel | None = None
        self.result: VerificationResult | None = None
        self.error: MatchVerifyError | None = None
        self.already_joined = False

    @classmethod
    def from_pending(
        cls,
        pending: PendingVerification,
        auth: AuthProvider,
        verifier: VerificationService,
        pending_repo: PendingVerificationRepository,
        config: VerifyConfig | None = None,
    ) -> "GuestEntryFlow":
        """Rebuild a flow in GUEST_PROMPT from a stored intent."""
        flow = cls(
            pending.return_path,
            pending.session_key,
            auth,
            verifier,
            pending_repo,
            config=config,
        )
        flow.return_path = pending.return_path
        flow.code = ScannedCode(match_id=pending.match_id, secret=pending.secret)
        flow.state = GuestState.GUEST_PROMPT
        return flow

    @property
    def signup_url(self) -> str:
        return auth_url(SIGNUP, self.return_path)

    @property
    def login_url(self) -> str:
        return auth_url(LOGIN, self.return_path)

    async def open(self) -> GuestState:
        """Check authentication and either verify or prompt the guest."""
        if self.state is not GuestState.NEW:
            return self.state
        self.state = GuestState.CHECKING_AUTH

        try:
            self.code = codec.decode(self.link, self._config)
        except MalformedPayload as exc:
            return self._fail(exc)

        if self._repo is not None:
            # Shown on the guest prompt (match type); absence is not fatal here
            self.match = self._repo.get_match(self.code.match_id)

        actor = self._auth.get_current_actor()
        if actor:
            # A stale intent for this session is superseded by this visit
            self._pending.pop(self.session_key)
            return await self._verify(actor, self.code)

        self._pending.save(
            PendingVerification(
                session_key=self.session_key,
                match_id=self.code.match_id,
                secret=self.code.secret,
                return_path=self.return_path,
            )
        )
        logger.info(
            "Guest opened match %s; verification held for session %s",
            self.code.match_id, self.session_key,
        )
        self.state = GuestState.GUEST_PROMPT
        return self.state

    async def resume(self) -> GuestState:
        """Continue after signup/login. No-op unless in GUEST_PROMPT."""
        if self.state is not GuestState.GUEST_PROMPT:
            return self.state
        actor = self._auth.get_current_actor()
        if not actor:
            return self.state

        stored = self._pending.pop(self.session_key)
        if stored is not None:
            code = ScannedCode(match_id=stored.match_id, secret=stored.secret)
        else:
            code = self.code
        if code is None:
            return self._fail(MalformedPayload("No pending verification to resume"))
        return await self._verify(actor, code)

    async def _verify(self, actor: str, code: ScannedCode) -> GuestState:
        self.state = GuestState.VERIFYING
        try:
            self.result = await self._verifier.verify(actor, code.match_id, code.secret)
        except MatchVerifyError as exc:
            if getattr(exc, "benign", False):
                self.already_joined = True
                self.state = GuestState.SUCCESS
                return self.state
            return self._fail(exc)
        self.state = GuestState.SUCCESS
        return self.state

    def _fail(self, exc: MatchVerifyError) -> GuestState:
        self.error = exc
        self.state = GuestState.ERROR
        return self.state
