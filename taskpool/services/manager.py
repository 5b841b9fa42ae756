"""Background task registry and lifecycle management."""

import asyncio
import logging
from datetime import timedelta
from typing import Any

from taskpool.core.config import BackgroundTaskConfig
from taskpool.core.errors import TaskNotFoundError, ValidationError
from taskpool.models import (
    BackgroundTask,
    LaunchInput,
    MessageSnapshot,
    PruneResult,
    ResumeInput,
    TaskProgress,
    TrackTaskInput,
)
from taskpool.models.task import new_task_id, utcnow
from taskpool.services.concurrency import ConcurrencyManager
from taskpool.services.lifecycle import ProcessCleanupRegistry, process_cleanup
from taskpool.services.notification import (
    build_notification_body,
    build_notification_text,
    resolve_prompt_target,
)
from taskpool.services.toast import TaskToastManager
from taskpool.services.transport import (
    ExecutionTransport,
    NotificationSink,
    SessionStore,
)

logger = logging.getLogger(__name__)


class BackgroundManager:
    """Owns background tasks from launch to removal.

    All state lives on one instance and is only touched from the event loop
    that drives it. Every path that ends a task gives its admission slot
    back before awaiting anything that may hang (notification, abort).
    """

    def __init__(
        self,
        transport: ExecutionTransport,
        session_store: SessionStore | None = None,
        toast_sink: NotificationSink | None = None,
        config: BackgroundTaskConfig | None = None,
        cleanup_registry: ProcessCleanupRegistry | None = None,
    ) -> None:
        """Create a manager.

        Args:
            transport: Runs and aborts execution sessions
            session_store: Source of the origin session's last message
                (defaults to the transport)
            toast_sink: Optional UI channel for toasts
            config: Scheduling policy (defaults to BackgroundTaskConfig())
            cleanup_registry: Shared exit/signal hook registry
        """
        self._transport = transport
        self._session_store = session_store if session_store is not None else transport
        self._config = config or BackgroundTaskConfig()
        self._concurrency = ConcurrencyManager(self._config)
        self._toasts = TaskToastManager(toast_sink)

        self._tasks: dict[str, BackgroundTask] = {}
        self._notifications: dict[str, list[BackgroundTask]] = {}
        self._pending_by_parent: dict[str, set[str]] = {}

        self._poll_task: asyncio.Task | None = None
        self._shutdown_triggered = False

        self._cleanup_registry = cleanup_registry or process_cleanup
        self._cleanup_registry.register(self)

    @property
    def concurrency(self) -> ConcurrencyManager:
        return self._concurrency

    @property
    def config(self) -> BackgroundTaskConfig:
        return self._config

    # ------------------------------------------------------------------
    # Launch / track / resume
    # ------------------------------------------------------------------

    async def launch(self, input: LaunchInput) -> BackgroundTask:
        """Start a new background task in a fresh child session.

        Waits for an admission slot keyed by the task's model
        ("provider/model") or, without a model, by its agent.

        Args:
            input: Launch parameters

        Returns:
            The running task

        Raises:
            ValidationError: If no agent is given
            Exception: Whatever the transport raised while creating the
                session (the slot is released first, also on cancellation)
        """
        self._ensure_active()
        if not input.agent or not input.agent.strip():
            raise ValidationError("Agent parameter is required")

        concurrency_key = str(input.model) if input.model else input.agent
        await self._concurrency.acquire(concurrency_key)

        try:
            session_id = await self._transport.create_session(
                input.parent_session_id, f"Background: {input.description}"
            )
        except BaseException:
            self._concurrency.release(concurrency_key)
            raise

        task = BackgroundTask(
            id=new_task_id(),
            session_id=session_id,
            parent_session_id=input.parent_session_id,
            parent_message_id=input.parent_message_id,
            description=input.description,
            prompt=input.prompt,
            agent=input.agent,
            model=input.model,
            progress=TaskProgress(),
            concurrency_key=concurrency_key,
            concurrency_group=concurrency_key,
            parent_agent=input.parent_agent,
            parent_model=input.parent_model,
        )
        self._tasks[task.id] = task
        self._add_pending(task)
        self._start_polling()
        logger.info(
            f"Launched task {task.id} ({task.agent}) in session {session_id} "
            f"for parent {task.parent_session_id}"
        )
        await self._toasts.add_task(task)

        body: dict[str, Any] = {
            "agent": task.agent,
            "parts": [{"type": "text", "text": input.prompt}],
        }
        if task.model is not None:
            body["model"] = task.model.to_body()
        if input.skill_content:
            body["system"] = input.skill_content
        await self._send_prompt(task, body)
        return task

    async def track_task(self, input: TrackTaskInput) -> BackgroundTask:
        """Register a task whose session was started by someone else.

        Registering the same task id (or session id) again returns the
        existing record without taking another slot.
        """
        self._ensure_active()
        existing = self._tasks.get(input.task_id) or self.find_by_session(
            input.session_id
        )
        if existing is not None:
            return self._refresh_tracked(existing, input)

        if input.concurrency_key:
            await self._concurrency.acquire(input.concurrency_key)
            raced = self._tasks.get(input.task_id)
            if raced is not None:
                self._concurrency.release(input.concurrency_key)
                return self._refresh_tracked(raced, input)

        task = BackgroundTask(
            id=input.task_id,
            session_id=input.session_id,
            parent_session_id=input.parent_session_id,
            description=input.description,
            agent=input.agent or "delegate_task",
            progress=TaskProgress(),
            concurrency_key=input.concurrency_key,
            concurrency_group=input.concurrency_key,
            parent_agent=input.parent_agent,
        )
        self._tasks[task.id] = task
        self._add_pending(task)
        self._start_polling()
        logger.info(f"Tracking external task {task.id} (session {task.session_id})")
        await self._toasts.add_task(task)
        return task

    def _refresh_tracked(
        self, task: BackgroundTask, input: TrackTaskInput
    ) -> BackgroundTask:
        if input.parent_session_id != task.parent_session_id:
            self._remove_pending(task)
            task.parent_session_id = input.parent_session_id
        if input.parent_agent is not None:
            task.parent_agent = input.parent_agent
        if task.concurrency_group is None and input.concurrency_key:
            task.concurrency_group = input.concurrency_key
        if task.status == "running":
            self._add_pending(task)
            self._start_polling()
        logger.debug(f"Task {task.id} already tracked, not acquiring again")
        return task

    async def resume(self, input: ResumeInput) -> BackgroundTask:
        """Continue a finished task in its original session.

        A task that is still running is returned untouched and the new
        prompt is dropped.

        Raises:
            TaskNotFoundError: If no task owns input.session_id
        """
        self._ensure_active()
        task = self.find_by_session(input.session_id)
        if task is None:
            raise TaskNotFoundError(input.session_id)

        if task.status == "running":
            logger.debug(f"Task {task.id} is already running, ignoring resume")
            return task

        concurrency_key = task.concurrency_key or task.concurrency_group
        if concurrency_key:
            await self._concurrency.acquire(concurrency_key)
            if self._tasks.get(task.id) is not task:
                self._concurrency.release(concurrency_key)
                raise TaskNotFoundError(input.session_id)
            if task.status == "running":
                # Another resume won while we waited for the slot
                self._concurrency.release(concurrency_key)
                return task
            task.concurrency_key = concurrency_key

        task.status = "running"
        task.completed_at = None
        task.error = None
        task.parent_session_id = input.parent_session_id
        task.parent_message_id = input.parent_message_id
        task.parent_model = input.parent_model
        if input.parent_agent is not None:
            task.parent_agent = input.parent_agent
        previous = task.progress or TaskProgress()
        task.progress = TaskProgress(
            tool_calls=previous.tool_calls, last_tool=previous.last_tool
        )

        self._add_pending(task)
        self._start_polling()
        logger.info(f"Resumed task {task.id} for parent {task.parent_session_id}")
        await self._toasts.add_task(task)

        body: dict[str, Any] = {
            "agent": task.agent,
            "parts": [{"type": "text", "text": input.prompt}],
        }
        if task.model is not None:
            body["model"] = task.model.to_body()
        await self._send_prompt(task, body)
        return task

    async def _send_prompt(self, task: BackgroundTask, body: dict[str, Any]) -> None:
        try:
            await self._transport.prompt(task.session_id, body)
        except Exception as e:
            logger.error(f"Failed to send prompt for task {task.id}: {e}")
            task.error = f"Failed to send prompt: {e}"
            await self.try_complete_task(task, "prompt-error")

    # ------------------------------------------------------------------
    # Completion and notification
    # ------------------------------------------------------------------

    async def try_complete_task(self, task: BackgroundTask, source: str) -> bool:
        """Move a running task to completed, exactly once.

        The admission slot is released before the parent is notified, so a
        hanging notification never holds up queued launches.

        Args:
            task: Task to complete
            source: What noticed the completion, for logging

        Returns:
            True if this call completed the task, False if it was already
            terminal
        """
        if task.status != "running":
            logger.debug(
                f"Task {task.id} already {task.status}, ignoring completion from {source}"
            )
            return False

        task.status = "completed"
        task.completed_at = utcnow()
        self._release_slot(task)
        logger.info(f"Task {task.id} completed (via {source})")

        self.mark_for_notification(task)
        try:
            await self.notify_parent_session(task)
        except Exception as e:
            logger.error(f"Failed to notify parent of task {task.id}: {e}")
        return True

    async def notify_parent_session(self, task: BackgroundTask) -> None:
        """Tell the origin session that a task finished.

        Best effort: failures and timeouts are logged and swallowed. Once the
        summary for the last running task is delivered, the tasks it listed
        leave the parent's notification queue.
        """
        parent_id = task.parent_session_id
        pending = self._pending_by_parent.get(parent_id)
        if pending is not None:
            pending.discard(task.id)
            if not pending:
                del self._pending_by_parent[parent_id]
        remaining = len(self._pending_by_parent.get(parent_id, ()))
        finished = self.get_pending_notifications(parent_id) if remaining == 0 else None
        text = build_notification_text(task, remaining, finished)

        try:
            await asyncio.wait_for(
                self._deliver(task, text, no_reply=remaining > 0),
                timeout=self._config.notify_timeout_s,
            )
        except TimeoutError:
            logger.warning(
                f"Notifying {parent_id} about task {task.id} timed out after "
                f"{self._config.notify_timeout_s}s"
            )
        except Exception as e:
            logger.error(f"Failed to notify {parent_id} about task {task.id}: {e}")
        else:
            if finished:
                self._drain_notifications(parent_id, finished)

    async def _deliver(self, task: BackgroundTask, text: str, no_reply: bool) -> None:
        await self._toasts.show_completion(task)
        snapshot = await self._fetch_last_message(task.parent_session_id)
        target = resolve_prompt_target(snapshot, task.parent_agent)
        body = build_notification_body(text, target, no_reply=no_reply)
        await self._transport.prompt(task.parent_session_id, body)
        logger.debug(
            f"Notified {task.parent_session_id} about task {task.id} "
            f"(target: {target.kind})"
        )

    async def _fetch_last_message(self, session_id: str) -> MessageSnapshot | None:
        try:
            return await self._session_store.get_last_message(session_id)
        except Exception as e:
            logger.warning(f"Could not read last message of {session_id}: {e}")
            return None

    def mark_for_notification(self, task: BackgroundTask) -> None:
        queue = self._notifications.setdefault(task.parent_session_id, [])
        queue[:] = [queued for queued in queue if queued.id != task.id]
        queue.append(task)

    def get_pending_notifications(self, session_id: str) -> list[BackgroundTask]:
        return list(self._notifications.get(session_id, []))

    def clear_notifications(self, session_id: str) -> int:
        """Drop the notification queue of a session, returning its length."""
        return len(self._notifications.pop(session_id, []))

    def _drain_notifications(
        self, session_id: str, delivered: list[BackgroundTask]
    ) -> None:
        delivered_ids = {task.id for task in delivered}
        queue = self._notifications.get(session_id)
        if queue is None:
            return
        kept = [queued for queued in queue if queued.id not in delivered_ids]
        if kept:
            self._notifications[session_id] = kept
        else:
            del self._notifications[session_id]

    def _clear_notifications_for_task(self, task_id: str) -> int:
        removed = 0
        for session_id, queue in list(self._notifications.items()):
            kept = [queued for queued in queue if queued.id != task_id]
            removed += len(queue) - len(kept)
            if kept:
                self._notifications[session_id] = kept
            else:
                del self._notifications[session_id]
        return removed

    # ------------------------------------------------------------------
    # Stall watchdog
    # ------------------------------------------------------------------

    async def check_and_interrupt_stale_tasks(self) -> list[BackgroundTask]:
        """Cancel running tasks that stopped reporting activity.

        A task is stale only when it has been idle longer than the stale
        timeout and has also run longer than the minimum runtime guard.

        Returns:
            The tasks cancelled in this pass
        """
        now = utcnow()
        stale_timeout = timedelta(milliseconds=self._config.stale_timeout_ms)
        min_runtime = timedelta(milliseconds=self._config.min_runtime_guard_ms)
        stale_minutes = round(self._config.stale_timeout_ms / 60_000, 1)

        cancelled: list[BackgroundTask] = []
        for task in list(self._tasks.values()):
            if task.status != "running" or task.progress is None:
                continue
            if now - task.started_at <= min_runtime:
                continue
            idle = now - task.progress.last_update
            if idle <= stale_timeout:
                continue

            self._release_slot(task)
            task.status = "cancelled"
            task.error = f"Stale timeout (no activity for {stale_minutes:g}min)"
            task.completed_at = now
            logger.warning(
                f"Task {task.id} stale for {int(idle.total_seconds())}s, cancelling"
            )
            cancelled.append(task)

        if cancelled:
            await asyncio.gather(*(self._interrupt(task) for task in cancelled))
        return cancelled

    async def _interrupt(self, task: BackgroundTask) -> None:
        try:
            await asyncio.wait_for(
                self._transport.abort(task.session_id),
                timeout=self._config.abort_timeout_s,
            )
        except Exception as e:
            logger.warning(f"Abort of session {task.session_id} failed: {e!r}")

        self.mark_for_notification(task)
        try:
            await self.notify_parent_session(task)
        except Exception as e:
            logger.error(f"Failed to notify parent of task {task.id}: {e}")

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def prune_stale_tasks_and_notifications(self) -> PruneResult:
        """Drop tasks and notifications older than the retention window.

        Age is measured from started_at, whatever the task's status.
        """
        now = utcnow()
        ttl = timedelta(milliseconds=self._config.task_ttl_ms)
        result = PruneResult()

        for task_id, task in list(self._tasks.items()):
            if now - task.started_at <= ttl:
                continue
            if task.status == "running":
                logger.warning(f"Pruning task {task_id} that is still running")
            self._release_slot(task)
            result.pruned_notifications += self._clear_notifications_for_task(task_id)
            self._remove_pending(task)
            self._toasts.remove_task(task_id)
            del self._tasks[task_id]
            result.pruned_tasks.append(task_id)

        for session_id, queue in list(self._notifications.items()):
            fresh = [queued for queued in queue if now - queued.started_at <= ttl]
            result.pruned_notifications += len(queue) - len(fresh)
            if fresh:
                self._notifications[session_id] = fresh
            else:
                del self._notifications[session_id]

        if result.pruned_tasks or result.pruned_notifications:
            logger.info(
                f"Pruned {len(result.pruned_tasks)} tasks and "
                f"{result.pruned_notifications} notifications"
            )
        return result

    # ------------------------------------------------------------------
    # Session events
    # ------------------------------------------------------------------

    async def handle_event(self, event: dict[str, Any]) -> None:
        """Apply a session lifecycle event from the execution server.

        Handles ``message.part.updated`` (progress), ``session.idle``
        (completion) and ``session.deleted`` (cleanup). Other events are
        ignored.
        """
        event_type = event.get("type")
        props = event.get("properties") or {}

        if event_type == "message.part.updated":
            part = props.get("part") or {}
            task = self._running_task_for(part.get("sessionID"))
            if task is None:
                return
            progress = task.progress or TaskProgress(last_update=task.started_at)
            now = utcnow()
            if now > progress.last_update:
                progress.last_update = now
            if part.get("type") == "tool" or part.get("tool"):
                progress.tool_calls += 1
                progress.last_tool = part.get("tool")
            task.progress = progress

        elif event_type == "session.idle":
            task = self._running_task_for(props.get("sessionID"))
            if task is None:
                return
            if not self._ran_long_enough(task):
                logger.debug(f"Ignoring early idle for task {task.id}")
                return
            await self.try_complete_task(task, "session.idle")

        elif event_type == "session.deleted":
            info = props.get("info") or {}
            session_id = info.get("id")
            if session_id:
                self._handle_session_deleted(session_id)

    def _handle_session_deleted(self, session_id: str) -> None:
        task = self.find_by_session(session_id)
        if task is not None:
            self._release_slot(task)
            if task.status == "running":
                task.status = "cancelled"
                task.error = "Session deleted"
                task.completed_at = utcnow()
            self._clear_notifications_for_task(task.id)
            self._remove_pending(task)
            self._toasts.remove_task(task.id)
            del self._tasks[task.id]
            logger.info(f"Removed task {task.id} after its session was deleted")

        self._notifications.pop(session_id, None)
        self._pending_by_parent.pop(session_id, None)

    def _running_task_for(self, session_id: str | None) -> BackgroundTask | None:
        if not session_id:
            return None
        task = self.find_by_session(session_id)
        if task is None or task.status != "running":
            return None
        return task

    def _ran_long_enough(self, task: BackgroundTask) -> bool:
        elapsed = utcnow() - task.started_at
        return elapsed >= timedelta(milliseconds=self._config.min_idle_time_ms)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def _start_polling(self) -> None:
        if self._shutdown_triggered:
            return
        if self._poll_task is not None and not self._poll_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._poll_task = loop.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        interval = self._config.poll_interval_ms / 1000
        while not self._shutdown_triggered:
            await asyncio.sleep(interval)
            try:
                await self._poll_running_tasks()
            except Exception as e:
                logger.error(f"Background task poll failed: {e}")
            if not self.get_running_tasks():
                logger.debug("No running tasks, polling stopped")
                return

    async def _poll_running_tasks(self) -> None:
        self.prune_stale_tasks_and_notifications()
        await self.check_and_interrupt_stale_tasks()

        running = self.get_running_tasks()
        if not running:
            return
        try:
            statuses = await self._transport.get_session_statuses()
        except Exception as e:
            logger.warning(f"Could not fetch session statuses: {e}")
            return

        for task in running:
            if task.status != "running":
                continue
            if statuses.get(task.session_id) != "idle":
                continue
            if not self._ran_long_enough(task):
                continue
            await self.try_complete_task(task, "polling")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> BackgroundTask | None:
        return self._tasks.get(task_id)

    def find_by_session(self, session_id: str) -> BackgroundTask | None:
        for task in self._tasks.values():
            if task.session_id == session_id:
                return task
        return None

    def list_tasks(self, parent_session_id: str | None = None) -> list[BackgroundTask]:
        if parent_session_id is None:
            return list(self._tasks.values())
        return self.get_tasks_by_parent_session(parent_session_id)

    def get_running_tasks(self) -> list[BackgroundTask]:
        return [task for task in self._tasks.values() if task.status == "running"]

    def get_completed_tasks(self) -> list[BackgroundTask]:
        return [task for task in self._tasks.values() if task.is_terminal]

    def get_tasks_by_parent_session(self, session_id: str) -> list[BackgroundTask]:
        """Direct children of a session (one hop)."""
        return [
            task
            for task in self._tasks.values()
            if task.parent_session_id == session_id
        ]

    def get_all_descendant_tasks(self, session_id: str) -> list[BackgroundTask]:
        """Every task transitively spawned from a session."""
        result: list[BackgroundTask] = []
        visited = {session_id}

        def collect(parent_id: str) -> None:
            for child in self.get_tasks_by_parent_session(parent_id):
                if child.session_id in visited:
                    continue
                visited.add(child.session_id)
                result.append(child)
                collect(child.session_id)

        collect(session_id)
        return result

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _release_slot(self, task: BackgroundTask) -> None:
        if task.concurrency_key:
            self._concurrency.release(task.concurrency_key)
            task.concurrency_key = None

    def _add_pending(self, task: BackgroundTask) -> None:
        self._pending_by_parent.setdefault(task.parent_session_id, set()).add(task.id)

    def _remove_pending(self, task: BackgroundTask) -> None:
        pending = self._pending_by_parent.get(task.parent_session_id)
        if pending is None:
            return
        pending.discard(task.id)
        if not pending:
            del self._pending_by_parent[task.parent_session_id]

    def _ensure_active(self) -> None:
        if self._shutdown_triggered:
            raise RuntimeError("BackgroundManager has been shut down")

    def shutdown(self) -> None:
        """Stop polling, fail admission waiters and drop all state.

        Safe to call more than once.
        """
        if self._shutdown_triggered:
            return
        self._shutdown_triggered = True
        logger.info(f"Shutting down background manager ({len(self._tasks)} tasks)")

        self._tasks.clear()
        self._notifications.clear()
        self._pending_by_parent.clear()
        self._toasts.clear()

        try:
            if self._poll_task is not None and not self._poll_task.done():
                self._poll_task.cancel()
            self._concurrency.clear()
        except RuntimeError as e:
            # Loop already closed, e.g. when run from atexit
            logger.debug(f"Skipped event loop cleanup: {e}")
        self._poll_task = None

        self._cleanup_registry.unregister(self)
