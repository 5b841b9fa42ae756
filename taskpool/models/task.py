"""Background task models."""

import uuid
from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

TaskStatus = Literal["running", "completed", "cancelled"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "cancelled"})


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def new_task_id() -> str:
    """Generate an id for a task launched by the manager."""
    return f"bg_{uuid.uuid4().hex[:8]}"


class ModelRef(BaseModel):
    """Provider-qualified model reference."""

    model_config = ConfigDict(protected_namespaces=())

    provider_id: str = Field(description="Model provider, e.g. 'anthropic'")
    model_id: str = Field(description="Model name within the provider")
    variant: str | None = Field(default=None, description="Optional model variant")

    def __str__(self) -> str:
        return f"{self.provider_id}/{self.model_id}"

    def to_body(self) -> dict[str, str]:
        """Wire form expected by the execution server."""
        body = {"providerID": self.provider_id, "modelID": self.model_id}
        if self.variant:
            body["variant"] = self.variant
        return body


class TaskProgress(BaseModel):
    """Activity snapshot reported by the execution transport."""

    tool_calls: int = 0
    last_tool: str | None = None
    last_update: datetime = Field(default_factory=utcnow)


class BackgroundTask(BaseModel):
    """A unit of delegated background work and its lifecycle record."""

    # Identity
    id: str = Field(description="Unique task identifier, never changes")
    session_id: str = Field(description="Execution session doing the work")
    parent_session_id: str = Field(description="Origin session that requested it")
    parent_message_id: str = Field(
        default="", description="Request within the origin session"
    )

    # Descriptive
    description: str
    prompt: str = ""
    agent: str
    model: ModelRef | None = Field(
        default=None, description="Model the execution runs with, if configured"
    )

    # Lifecycle
    status: TaskStatus = "running"
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    error: str | None = None

    # Resource accounting
    concurrency_key: str | None = Field(
        default=None, description="Admission key currently held, if any"
    )
    concurrency_group: str | None = Field(
        default=None, description="Admission key to re-acquire on resume"
    )

    # Activity
    progress: TaskProgress | None = None

    # Origin context at creation time, used as notification fallback
    parent_agent: str | None = None
    parent_model: ModelRef | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class LaunchInput(BaseModel):
    """Request to start a new background task."""

    description: str
    prompt: str
    agent: str
    parent_session_id: str
    parent_message_id: str
    parent_model: ModelRef | None = None
    parent_agent: str | None = None
    model: ModelRef | None = None
    skill_content: str | None = None


class TrackTaskInput(BaseModel):
    """Registration of a task whose execution was launched elsewhere."""

    task_id: str
    session_id: str
    parent_session_id: str
    description: str
    agent: str | None = None
    parent_agent: str | None = None
    concurrency_key: str | None = None


class ResumeInput(BaseModel):
    """Request to continue a finished task in its original session."""

    session_id: str
    prompt: str
    parent_session_id: str
    parent_message_id: str
    parent_model: ModelRef | None = None
    parent_agent: str | None = None


class MessageSnapshot(BaseModel):
    """Agent/model metadata of a session's most recent message.

    Any field may be missing, including only one half of the model
    reference; the notification resolver decides what is usable.
    """

    model_config = ConfigDict(protected_namespaces=())

    agent: str | None = None
    provider_id: str | None = None
    model_id: str | None = None


class PruneResult(BaseModel):
    """Outcome of a retention pass."""

    pruned_tasks: list[str] = Field(default_factory=list)
    pruned_notifications: int = 0
