"""Pytest configuration and fixtures."""

import asyncio
import itertools
import os
from datetime import timedelta

import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

# Set test environment
os.environ["APP_ENV"] = "test"

from taskpool.core.config import BackgroundTaskConfig  # noqa: E402
from taskpool.main import create_app  # noqa: E402
from taskpool.models import BackgroundTask, MessageSnapshot, TaskProgress  # noqa: E402
from taskpool.models.task import utcnow  # noqa: E402
from taskpool.services import (  # noqa: E402
    BackgroundManager,
    OpencodeClient,
    ProcessCleanupRegistry,
)


class FakeTransport:
    """In-memory execution server recording every call."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.created: list[tuple[str, str]] = []
        self.prompts: list[tuple[str, dict]] = []
        self.aborted: list[str] = []
        self.toasts: list[tuple[str, str, str]] = []
        self.statuses: dict[str, str] = {}
        self.last_message: MessageSnapshot | None = None
        self.create_error: Exception | None = None
        self.prompt_error: Exception | None = None
        self.hang_parent_prompts = False
        self.on_abort = None

    async def create_session(self, parent_id: str, title: str) -> str:
        if self.create_error is not None:
            raise self.create_error
        self.created.append((parent_id, title))
        return f"ses_child_{next(self._ids)}"

    async def prompt(self, session_id: str, body: dict) -> None:
        self.prompts.append((session_id, body))
        if self.prompt_error is not None and not session_id.startswith("parent"):
            raise self.prompt_error
        if self.hang_parent_prompts and "noReply" in body:
            await asyncio.Event().wait()

    async def abort(self, session_id: str) -> None:
        if self.on_abort is not None:
            self.on_abort(session_id)
        self.aborted.append(session_id)

    async def get_session_statuses(self) -> dict[str, str]:
        return dict(self.statuses)

    async def get_last_message(self, session_id: str) -> MessageSnapshot | None:
        return self.last_message

    async def show_toast(
        self, title: str, message: str, variant: str = "info", duration_ms: int = 3000
    ) -> None:
        self.toasts.append((title, message, variant))

    def notifications_to(self, session_id: str) -> list[dict]:
        """Bodies of completion notices sent to a session."""
        return [
            body for target, body in self.prompts if target == session_id and "noReply" in body
        ]


def create_test_task(
    task_id: str = "task-1",
    session_id: str = "session-1",
    parent_session_id: str = "parent-1",
    status: str = "running",
    started_ago: timedelta = timedelta(seconds=0),
    idle_for: timedelta | None = None,
    **kwargs,
) -> BackgroundTask:
    """Helper function to create a task with default values."""
    now = utcnow()
    progress = kwargs.pop("progress", None)
    if progress is None and idle_for is not None:
        progress = TaskProgress(last_update=now - idle_for)
    return BackgroundTask(
        id=task_id,
        session_id=session_id,
        parent_session_id=parent_session_id,
        parent_message_id=kwargs.pop("parent_message_id", "msg-1"),
        description=kwargs.pop("description", f"Task {task_id}"),
        agent=kwargs.pop("agent", "explore"),
        status=status,
        started_at=now - started_ago,
        progress=progress,
        **kwargs,
    )


def add_task(manager: BackgroundManager, task: BackgroundTask) -> BackgroundTask:
    """Register a task directly in the manager's registry."""
    manager._tasks[task.id] = task
    if task.status == "running":
        manager._add_pending(task)
    return task


@pytest.fixture
def transport():
    """Fake execution server."""
    return FakeTransport()


@pytest.fixture
def cleanup_registry():
    """Registry isolated from the process-wide one."""
    return ProcessCleanupRegistry()


@pytest_asyncio.fixture
async def make_manager(transport, cleanup_registry):
    """Factory building managers that are shut down on the test's loop."""
    managers: list[BackgroundManager] = []

    def _make(**config) -> BackgroundManager:
        manager = BackgroundManager(
            transport=transport,
            toast_sink=transport,
            config=BackgroundTaskConfig(**config),
            cleanup_registry=cleanup_registry,
        )
        managers.append(manager)
        return manager

    yield _make

    for manager in managers:
        manager.shutdown()


@pytest_asyncio.fixture
async def manager(make_manager):
    """Manager with default scheduling policy."""
    return make_manager()


class FakeExecutionServer:
    """Request handler for httpx.MockTransport mimicking the execution server."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "POST" and path == "/session":
            return httpx.Response(200, json={"id": f"ses_api_{next(self._ids)}"})
        if path == "/session/status":
            return httpx.Response(200, json={})
        if path.endswith("/message"):
            return httpx.Response(200, json=[])
        if path.endswith("/prompt_async"):
            return httpx.Response(204)
        return httpx.Response(200, json=True)


@pytest.fixture
def execution_server():
    return FakeExecutionServer()


@pytest.fixture(scope="function")
def test_client(execution_server):
    """Create a test client."""
    opencode = OpencodeClient(
        directory="",
        client=httpx.AsyncClient(
            base_url="http://opencode.test",
            transport=httpx.MockTransport(execution_server),
        ),
    )
    with TestClient(create_app(client=opencode)) as client:
        yield client


@pytest.fixture(scope="function")
def auth_headers():
    """Provide authentication headers for API requests."""
    from taskpool.core.config import settings

    return {"X-API-Key": settings.api_secret_key}
