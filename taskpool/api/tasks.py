"""Background task API endpoints."""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from taskpool.core.auth import verify_api_key
from taskpool.core.errors import NotFoundError, ValidationError
from taskpool.models import (
    BackgroundTask,
    LaunchInput,
    ModelRef,
    ResumeInput,
    TaskProgress,
)
from taskpool.services import BackgroundManager

router = APIRouter()


class TaskResponse(BaseModel):
    """Response model for task data."""

    id: str
    session_id: str
    parent_session_id: str
    parent_message_id: str
    description: str
    agent: str
    model: ModelRef | None
    status: str
    started_at: datetime
    completed_at: datetime | None
    error: str | None
    concurrency_key: str | None
    progress: TaskProgress | None


class TaskListResponse(BaseModel):
    """Response model for list of tasks."""

    tasks: list[TaskResponse]
    total: int


class SessionEvent(BaseModel):
    """Session lifecycle event forwarded from the execution server."""

    type: str
    properties: dict[str, Any] = {}


class NotificationListResponse(BaseModel):
    session_id: str
    tasks: list[TaskResponse]


class PruneResponse(BaseModel):
    pruned_tasks: list[str]
    pruned_notifications: int


def get_manager(request: Request) -> BackgroundManager:
    """Manager owned by the running application."""
    return request.app.state.manager


def to_response(task: BackgroundTask) -> TaskResponse:
    return TaskResponse(
        id=task.id,
        session_id=task.session_id,
        parent_session_id=task.parent_session_id,
        parent_message_id=task.parent_message_id,
        description=task.description,
        agent=task.agent,
        model=task.model,
        status=task.status,
        started_at=task.started_at,
        completed_at=task.completed_at,
        error=task.error,
        concurrency_key=task.concurrency_key,
        progress=task.progress,
    )


def to_list_response(tasks: list[BackgroundTask]) -> TaskListResponse:
    return TaskListResponse(tasks=[to_response(task) for task in tasks], total=len(tasks))


@router.post("/tasks", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def launch_task(
    launch: LaunchInput,
    manager: BackgroundManager = Depends(get_manager),
    api_key: str = Depends(verify_api_key),
):
    """Launch a new background task."""
    try:
        task = await manager.launch(launch)
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        ) from e
    return to_response(task)


@router.get("/tasks", response_model=TaskListResponse)
async def list_tasks(
    parent_session_id: str | None = None,
    manager: BackgroundManager = Depends(get_manager),
    api_key: str = Depends(verify_api_key),
):
    """List tasks, optionally only the direct children of a session."""
    return to_list_response(manager.list_tasks(parent_session_id))


@router.post("/tasks/resume", response_model=TaskResponse)
async def resume_task(
    resume: ResumeInput,
    manager: BackgroundManager = Depends(get_manager),
    api_key: str = Depends(verify_api_key),
):
    """Resume the task owning an execution session."""
    try:
        task = await manager.resume(resume)
    except NotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        ) from e
    return to_response(task)


@router.get("/tasks/{task_id}", response_model=TaskResponse)
async def get_task(
    task_id: str,
    manager: BackgroundManager = Depends(get_manager),
    api_key: str = Depends(verify_api_key),
):
    """Get a task by ID."""
    task = manager.get_task(task_id)
    if task is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Task with id {task_id} not found",
        )
    return to_response(task)


@router.get("/sessions/{session_id}/descendants", response_model=TaskListResponse)
async def get_descendants(
    session_id: str,
    manager: BackgroundManager = Depends(get_manager),
    api_key: str = Depends(verify_api_key),
):
    """All tasks transitively spawned from a session."""
    return to_list_response(manager.get_all_descendant_tasks(session_id))


@router.get(
    "/sessions/{session_id}/notifications", response_model=NotificationListResponse
)
async def get_notifications(
    session_id: str,
    manager: BackgroundManager = Depends(get_manager),
    api_key: str = Depends(verify_api_key),
):
    """Finished tasks the session has not been told about yet."""
    tasks = manager.get_pending_notifications(session_id)
    return NotificationListResponse(
        session_id=session_id, tasks=[to_response(task) for task in tasks]
    )


@router.delete(
    "/sessions/{session_id}/notifications", status_code=status.HTTP_204_NO_CONTENT
)
async def clear_notifications(
    session_id: str,
    manager: BackgroundManager = Depends(get_manager),
    api_key: str = Depends(verify_api_key),
):
    """Drop the session's pending notifications."""
    manager.clear_notifications(session_id)


@router.post("/events", status_code=status.HTTP_202_ACCEPTED)
async def post_event(
    event: SessionEvent,
    manager: BackgroundManager = Depends(get_manager),
    api_key: str = Depends(verify_api_key),
):
    """Apply a session lifecycle event."""
    await manager.handle_event(event.model_dump())
    return {"accepted": True}


@router.post("/maintenance/prune", response_model=PruneResponse)
async def prune(
    manager: BackgroundManager = Depends(get_manager),
    api_key: str = Depends(verify_api_key),
):
    """Drop tasks and notifications past the retention window."""
    result = manager.prune_stale_tasks_and_notifications()
    return PruneResponse(
        pruned_tasks=result.pruned_tasks,
        pruned_notifications=result.pruned_notifications,
    )
