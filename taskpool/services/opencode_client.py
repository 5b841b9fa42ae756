"""HTTP client for the execution server that hosts agent sessions."""

import logging
from typing import Any

import httpx

from taskpool.core.config import settings
from taskpool.models import MessageSnapshot

logger = logging.getLogger(__name__)


class OpencodeClient:
    """Execution transport, session store and toast sink over HTTP.

    Wraps the execution server's REST API:

    - ``POST /session`` creates a child session
    - ``POST /session/{id}/prompt_async`` queues a prompt
    - ``POST /session/{id}/abort`` stops a session
    - ``GET /session/status`` reports idle/busy per session
    - ``GET /session/{id}/message`` lists a session's messages
    - ``POST /tui/show-toast`` shows a toast in the UI
    """

    def __init__(
        self,
        base_url: str | None = None,
        directory: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Create a client.

        Args:
            base_url: Server URL (defaults to settings.opencode_url)
            directory: Project directory sent as a query parameter, if any
            timeout: Request timeout in seconds (defaults to settings.opencode_timeout)
            client: Pre-built httpx.AsyncClient, mainly for tests
        """
        self._directory = directory if directory is not None else settings.opencode_directory
        self._client = client or httpx.AsyncClient(
            base_url=base_url or settings.opencode_url,
            timeout=timeout if timeout is not None else settings.opencode_timeout,
        )

    @property
    def _params(self) -> dict[str, str]:
        return {"directory": self._directory} if self._directory else {}

    async def __aenter__(self) -> "OpencodeClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def create_session(self, parent_id: str, title: str) -> str:
        response = await self._client.post(
            "/session",
            json={"parentID": parent_id, "title": title},
            params=self._params,
        )
        response.raise_for_status()
        data = response.json()
        session_id = data.get("id") if isinstance(data, dict) else None
        if not session_id:
            raise ValueError("Execution server returned a session without an id")
        return session_id

    async def prompt(self, session_id: str, body: dict[str, Any]) -> None:
        response = await self._client.post(
            f"/session/{session_id}/prompt_async", json=body, params=self._params
        )
        response.raise_for_status()

    async def abort(self, session_id: str) -> None:
        response = await self._client.post(
            f"/session/{session_id}/abort", params=self._params
        )
        response.raise_for_status()

    async def get_session_statuses(self) -> dict[str, str]:
        response = await self._client.get("/session/status", params=self._params)
        response.raise_for_status()
        data = response.json() or {}
        return {
            session_id: status.get("type", "")
            for session_id, status in data.items()
            if isinstance(status, dict)
        }

    async def get_last_message(self, session_id: str) -> MessageSnapshot | None:
        """Agent/model of the most recent message that carries any.

        Returns None when the session has no such message or cannot be read.
        """
        try:
            response = await self._client.get(
                f"/session/{session_id}/message", params=self._params
            )
            response.raise_for_status()
            messages = response.json() or []
        except httpx.HTTPError as e:
            logger.warning(f"Failed to read messages for session {session_id}: {e}")
            return None

        for message in reversed(messages):
            info = message.get("info", {}) if isinstance(message, dict) else {}
            model = info.get("model") or {}
            snapshot = MessageSnapshot(
                agent=info.get("agent"),
                provider_id=model.get("providerID") or info.get("providerID"),
                model_id=model.get("modelID") or info.get("modelID"),
            )
            if snapshot.agent or snapshot.provider_id or snapshot.model_id:
                return snapshot
        return None

    async def show_toast(
        self, title: str, message: str, variant: str = "info", duration_ms: int = 3000
    ) -> None:
        response = await self._client.post(
            "/tui/show-toast",
            json={
                "title": title,
                "message": message,
                "variant": variant,
                "duration": duration_ms,
            },
            params=self._params,
        )
        response.raise_for_status()
