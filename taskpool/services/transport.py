"""Interfaces of the collaborators the manager delegates to."""

from typing import Any, Protocol

from taskpool.models import MessageSnapshot


class ExecutionTransport(Protocol):
    """Runs delegated work in execution sessions."""

    async def create_session(self, parent_id: str, title: str) -> str:
        """Create a child session and return its id."""
        ...

    async def prompt(self, session_id: str, body: dict[str, Any]) -> None:
        """Queue a prompt in a session without waiting for the reply."""
        ...

    async def abort(self, session_id: str) -> None:
        """Stop whatever the session is doing."""
        ...

    async def get_session_statuses(self) -> dict[str, str]:
        """Map session id to its status ("idle", "busy", "retry")."""
        ...


class SessionStore(Protocol):
    """Read access to session history."""

    async def get_last_message(self, session_id: str) -> MessageSnapshot | None:
        ...


class NotificationSink(Protocol):
    """Fire-and-forget UI channel."""

    async def show_toast(
        self, title: str, message: str, variant: str = "info", duration_ms: int = 3000
    ) -> None:
        ...
