"""Authentication collaborator interface.

The guest entry flow only needs to ask "who is acting right now?".
``StaticAuthProvider`` answers from an in-process value and is what the
CLI uses (``--user``); a web deployment plugs in its own session lookup.
"""

from typing import Optional, Protocol


class AuthProvider(Protocol):
    def get_current_actor(self) -> Optional[str]: ...


class StaticAuthProvider:
    """Auth provider whose actor is set explicitly."""

    def __init__(self, actor_id: str | None = None) -> None:
        self._actor_id = actor_id or None

    def get_current_actor(self) -> str | None:
        return self._actor_id

    def sign_in(self, actor_id: str) -> None:
        if not actor_id:
            raise ValueError("actor_id is required")
        self._actor_id = actor_id

    def sign_out(self) -> None:
        self._actor_id = None
