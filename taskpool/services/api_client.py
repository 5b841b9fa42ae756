"""API client service for talking to a running taskpool API."""

import os
from typing import Any

import httpx


class ApiClientService:
    """Service for taskpool API client operations."""

    @staticmethod
    def get_client(
        base_url: str | None = None, api_key: str | None = None
    ) -> httpx.Client:
        """Get configured HTTP client.

        Args:
            base_url: API base URL (defaults to TASKPOOL_URL env var or http://localhost:8000)
            api_key: API key for authentication (defaults to API_SECRET_KEY env var)

        Returns:
            Configured httpx.Client with base_url, headers, and timeout
        """
        if base_url is None:
            base_url = os.getenv("TASKPOOL_URL", "http://localhost:8000")
        if api_key is None:
            api_key = os.getenv("API_SECRET_KEY", "")

        return httpx.Client(
            base_url=base_url,
            headers={"X-API-Key": api_key},
            timeout=30.0,
        )

    @staticmethod
    def _request(
        method: str,
        path: str,
        client: httpx.Client | None = None,
        **kwargs: Any,
    ) -> Any:
        should_close = client is None
        if client is None:
            client = ApiClientService.get_client()

        try:
            response = client.request(method, path, **kwargs)
            response.raise_for_status()
            return response.json()
        finally:
            if should_close:
                client.close()

    @staticmethod
    def list_tasks(
        parent_session_id: str | None = None, client: httpx.Client | None = None
    ) -> list[dict[str, Any]]:
        """List tasks, optionally only the direct children of a session.

        Raises:
            httpx.HTTPStatusError: If API request fails
        """
        params = {}
        if parent_session_id is not None:
            params["parent_session_id"] = parent_session_id
        data = ApiClientService._request("GET", "/v1/tasks", client, params=params)
        return data["tasks"]

    @staticmethod
    def get_task(task_id: str, client: httpx.Client | None = None) -> dict[str, Any]:
        """Get task by ID.

        Raises:
            httpx.HTTPStatusError: If API request fails (e.g., 404 for not found)
        """
        return ApiClientService._request("GET", f"/v1/tasks/{task_id}", client)

    @staticmethod
    def resume_task(
        session_id: str,
        prompt: str,
        parent_session_id: str,
        parent_message_id: str,
        client: httpx.Client | None = None,
    ) -> dict[str, Any]:
        """Resume the task that owns an execution session.

        Raises:
            httpx.HTTPStatusError: If API request fails (e.g., 404 for unknown session)
        """
        payload = {
            "session_id": session_id,
            "prompt": prompt,
            "parent_session_id": parent_session_id,
            "parent_message_id": parent_message_id,
        }
        return ApiClientService._request(
            "POST", "/v1/tasks/resume", client, json=payload
        )

    @staticmethod
    def get_descendants(
        session_id: str, client: httpx.Client | None = None
    ) -> list[dict[str, Any]]:
        """All tasks transitively spawned from a session."""
        data = ApiClientService._request(
            "GET", f"/v1/sessions/{session_id}/descendants", client
        )
        return data["tasks"]

    @staticmethod
    def prune(client: httpx.Client | None = None) -> dict[str, Any]:
        """Run a retention pass and return what was removed."""
        return ApiClientService._request("POST", "/v1/maintenance/prune", client)
