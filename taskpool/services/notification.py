"""Completion notices sent back to a task's origin session."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from taskpool.models import BackgroundTask, MessageSnapshot, ModelRef
from taskpool.models.task import utcnow


@dataclass(frozen=True)
class PromptTarget:
    """Agent/model override for a prompt.

    Never holds a half-specified model: it is either agent+model, agent
    only, or nothing at all.
    """

    agent: str | None = None
    model: ModelRef | None = None

    @property
    def kind(self) -> Literal["agent+model", "agent", "none"]:
        if self.model is not None:
            return "agent+model"
        if self.agent is not None:
            return "agent"
        return "none"

    def apply(self, body: dict[str, Any]) -> dict[str, Any]:
        """Add the override keys to a prompt body, leaving absent ones out."""
        if self.agent is not None:
            body["agent"] = self.agent
        if self.model is not None:
            body["model"] = self.model.to_body()
        return body


def resolve_prompt_target(
    snapshot: MessageSnapshot | None, fallback_agent: str | None
) -> PromptTarget:
    """Pick the agent/model to address the origin session with.

    The origin's live last message wins when present. Its model is used
    only if both provider and model ids are known; otherwise no model is
    passed. Without a live agent, the agent captured at task creation is
    used.
    """
    agent = snapshot.agent if snapshot and snapshot.agent else fallback_agent
    model = None
    if snapshot and snapshot.provider_id and snapshot.model_id:
        model = ModelRef(provider_id=snapshot.provider_id, model_id=snapshot.model_id)
    if agent is None:
        # model overrides only travel with an agent
        return PromptTarget()
    return PromptTarget(agent=agent, model=model)


def format_duration(start: datetime, end: datetime | None = None) -> str:
    """Human readable elapsed time, e.g. '42s', '3m 5s', '1h 2m'."""
    seconds = int(((end or utcnow()) - start).total_seconds())
    seconds = max(seconds, 0)
    hours, remainder = divmod(seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def build_notification_text(
    task: BackgroundTask,
    remaining: int,
    finished: list[BackgroundTask] | None = None,
) -> str:
    """Render the notice for one finished task.

    Args:
        task: The task that just reached a terminal state
        remaining: How many of the parent's tasks are still running
        finished: Tasks of the parent finished so far, for the summary
            sent when nothing remains

    Returns:
        Message text for the parent session
    """
    duration = format_duration(task.started_at, task.completed_at)

    if remaining == 0 and finished:
        lines = ["[ALL BACKGROUND TASKS COMPLETE]", "", "**Finished:**"]
        for item in finished:
            suffix = f" (cancelled: {item.error})" if item.status == "cancelled" else ""
            lines.append(f"- `{item.id}`: {item.description}{suffix}")
        lines += [
            "",
            "Fetch each result with `background_output(task_id=\"<id>\")`.",
        ]
        return "\n".join(lines)

    header = (
        "[BACKGROUND TASK CANCELLED]"
        if task.status == "cancelled"
        else "[BACKGROUND TASK COMPLETED]"
    )
    lines = [
        header,
        f'Task "{task.description}" finished.',
        f"**ID:** `{task.id}`",
        f"**Duration:** {duration}",
    ]
    if task.error:
        lines.append(f"**Error:** {task.error}")
    if remaining:
        lines += [
            "",
            f"{remaining} task(s) still running. "
            "Another notice follows when all of them finish.",
        ]
    return "\n".join(lines)


def build_notification_body(
    text: str, target: PromptTarget, no_reply: bool
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "noReply": no_reply,
        "parts": [{"type": "text", "text": text}],
    }
    return target.apply(body)
