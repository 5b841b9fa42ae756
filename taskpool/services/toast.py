"""Best-effort UI toasts for background task activity."""

import logging

from taskpool.models import BackgroundTask
from taskpool.services.notification import format_duration
from taskpool.services.transport import NotificationSink

logger = logging.getLogger(__name__)


class TaskToastManager:
    """Shows toasts on task launch and completion.

    Toasts are cosmetic: a missing sink or a failing call never affects
    scheduling.
    """

    def __init__(self, sink: NotificationSink | None = None) -> None:
        self._sink = sink
        self._running: dict[str, BackgroundTask] = {}

    async def add_task(self, task: BackgroundTask) -> None:
        self._running[task.id] = task
        running = len(self._running)
        await self._show(
            "New Background Task",
            f"{task.description} ({task.agent}) - {running} running",
            variant="info",
        )

    async def show_completion(self, task: BackgroundTask) -> None:
        self._running.pop(task.id, None)
        duration = format_duration(task.started_at, task.completed_at)
        if task.status == "cancelled":
            await self._show(
                "Task Cancelled",
                f"{task.description}: {task.error or 'cancelled'}",
                variant="warning",
            )
            return
        await self._show(
            "Task Completed", f"{task.description} ({duration})", variant="success"
        )

    def remove_task(self, task_id: str) -> None:
        self._running.pop(task_id, None)

    def clear(self) -> None:
        self._running.clear()

    async def _show(self, title: str, message: str, variant: str) -> None:
        if self._sink is None:
            return
        try:
            await self._sink.show_toast(title, message, variant=variant)
        except Exception as e:
            logger.debug(f"Toast '{title}' failed: {e}")
