"""Tests for ApiClientService."""

import os

import httpx
import pytest

from taskpool.services.api_client import ApiClientService

TASK = {
    "id": "bg_1a2b3c4d",
    "session_id": "ses_child_1",
    "parent_session_id": "parent-1",
    "parent_message_id": "msg-1",
    "description": "Find auth usages",
    "agent": "explore",
    "model": None,
    "status": "running",
    "started_at": "2025-01-01T00:00:00Z",
    "completed_at": None,
    "error": None,
    "concurrency_key": "explore",
    "progress": {"tool_calls": 0, "last_tool": None, "last_update": "2025-01-01T00:00:00Z"},
}


def mock_client(mocker, payload):
    """httpx.Client mock whose request() returns payload."""
    mock_response = mocker.Mock()
    mock_response.json.return_value = payload
    mock_client = mocker.Mock(spec=httpx.Client)
    mock_client.request.return_value = mock_response
    return mock_client, mock_response


def test_get_client_default_values(mocker):
    """Test get_client with default values from environment."""
    mocker.patch.dict(
        os.environ,
        {"TASKPOOL_URL": "http://test.example.com", "API_SECRET_KEY": "test-key"},
    )

    client = ApiClientService.get_client()

    assert isinstance(client, httpx.Client)
    assert str(client.base_url) == "http://test.example.com"
    assert client.headers["X-API-Key"] == "test-key"
    assert client.timeout.read == 30.0
    client.close()


def test_get_client_with_explicit_values():
    """Test get_client with explicitly provided values."""
    client = ApiClientService.get_client(
        base_url="http://custom.example.com", api_key="custom-key"
    )

    assert str(client.base_url) == "http://custom.example.com"
    assert client.headers["X-API-Key"] == "custom-key"
    client.close()


def test_list_tasks_passes_parent_filter(mocker):
    """Test listing tasks with a parent filter."""
    client, _ = mock_client(mocker, {"tasks": [TASK], "total": 1})

    tasks = ApiClientService.list_tasks(parent_session_id="parent-1", client=client)

    assert tasks == [TASK]
    client.request.assert_called_once_with(
        "GET", "/v1/tasks", params={"parent_session_id": "parent-1"}
    )
    client.close.assert_not_called()


def test_get_task_success(mocker):
    """Test getting a task by ID."""
    client, response = mock_client(mocker, TASK)

    task = ApiClientService.get_task("bg_1a2b3c4d", client=client)

    assert task["id"] == "bg_1a2b3c4d"
    client.request.assert_called_once_with("GET", "/v1/tasks/bg_1a2b3c4d")
    response.raise_for_status.assert_called_once()


def test_get_task_not_found(mocker):
    """Test getting a non-existent task raises."""
    client, response = mock_client(mocker, {})
    response.raise_for_status.side_effect = httpx.HTTPStatusError(
        "404 Not Found", request=mocker.Mock(), response=mocker.Mock(status_code=404)
    )

    with pytest.raises(httpx.HTTPStatusError):
        ApiClientService.get_task("missing", client=client)


def test_resume_task_posts_payload(mocker):
    """Test resuming posts the session and parent context."""
    client, _ = mock_client(mocker, TASK)

    ApiClientService.resume_task(
        session_id="ses_child_1",
        prompt="continue",
        parent_session_id="parent-2",
        parent_message_id="msg-2",
        client=client,
    )

    client.request.assert_called_once_with(
        "POST",
        "/v1/tasks/resume",
        json={
            "session_id": "ses_child_1",
            "prompt": "continue",
            "parent_session_id": "parent-2",
            "parent_message_id": "msg-2",
        },
    )


def test_get_descendants_and_prune(mocker):
    """Test the tree and maintenance endpoints."""
    client, response = mock_client(mocker, {"tasks": [TASK], "total": 1})

    assert ApiClientService.get_descendants("parent-1", client=client) == [TASK]
    client.request.assert_called_with("GET", "/v1/sessions/parent-1/descendants")

    response.json.return_value = {"pruned_tasks": ["bg_old"], "pruned_notifications": 2}
    assert ApiClientService.prune(client=client)["pruned_tasks"] == ["bg_old"]
    client.request.assert_called_with("POST", "/v1/maintenance/prune")


def test_request_closes_client_it_created(mocker):
    """Test a client built internally is closed after the call."""
    client, _ = mock_client(mocker, TASK)
    mocker.patch.object(ApiClientService, "get_client", return_value=client)

    ApiClientService.get_task("bg_1a2b3c4d")

    client.close.assert_called_once()
