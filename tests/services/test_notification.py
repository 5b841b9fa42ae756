"""Tests for completion notices and the notification target resolver."""

from datetime import timedelta

import pytest

from taskpool.models import MessageSnapshot, ModelRef
from taskpool.services.notification import (
    PromptTarget,
    build_notification_body,
    build_notification_text,
    format_duration,
    resolve_prompt_target,
)
from tests.conftest import create_test_task


def test_resolve_uses_live_agent_and_full_model():
    """Test a complete live snapshot yields agent and model."""
    snapshot = MessageSnapshot(agent="sisyphus", provider_id="anthropic", model_id="claude-opus")

    target = resolve_prompt_target(snapshot, fallback_agent="build")

    assert target.kind == "agent+model"
    assert target.agent == "sisyphus"
    assert target.model == ModelRef(provider_id="anthropic", model_id="claude-opus")


@pytest.mark.parametrize(
    "snapshot",
    [
        MessageSnapshot(agent="sisyphus", provider_id="anthropic"),
        MessageSnapshot(agent="sisyphus", model_id="claude-opus"),
        MessageSnapshot(agent="sisyphus"),
    ],
)
def test_resolve_never_passes_half_a_model(snapshot):
    """Test a partial model reference is dropped, keeping the agent."""
    target = resolve_prompt_target(snapshot, fallback_agent="build")

    assert target.kind == "agent"
    assert target.agent == "sisyphus"
    assert target.model is None


def test_resolve_falls_back_to_parent_agent():
    """Test the creation-time agent is used when the live one is missing."""
    target = resolve_prompt_target(None, fallback_agent="build")

    assert target == PromptTarget(agent="build")


def test_resolve_keeps_live_model_with_fallback_agent():
    """Test a live model still travels when only the agent falls back."""
    snapshot = MessageSnapshot(provider_id="openai", model_id="gpt-5")

    target = resolve_prompt_target(snapshot, fallback_agent="build")

    assert target.agent == "build"
    assert str(target.model) == "openai/gpt-5"


def test_resolve_without_any_agent_sends_nothing():
    """Test a model never travels without an agent."""
    snapshot = MessageSnapshot(provider_id="openai", model_id="gpt-5")

    target = resolve_prompt_target(snapshot, fallback_agent=None)

    assert target.kind == "none"
    assert target.apply({}) == {}


def test_build_notification_body_applies_target():
    """Test the body carries text, noReply and only the resolved keys."""
    target = PromptTarget(
        agent="sisyphus", model=ModelRef(provider_id="anthropic", model_id="claude-opus")
    )

    body = build_notification_body("done", target, no_reply=True)

    assert body == {
        "noReply": True,
        "parts": [{"type": "text", "text": "done"}],
        "agent": "sisyphus",
        "model": {"providerID": "anthropic", "modelID": "claude-opus"},
    }


@pytest.mark.parametrize(
    "seconds,expected",
    [(0, "0s"), (42, "42s"), (185, "3m 5s"), (3720, "1h 2m")],
)
def test_format_duration(seconds, expected):
    """Test durations are rendered at a readable precision."""
    task = create_test_task()
    end = task.started_at + timedelta(seconds=seconds)

    assert format_duration(task.started_at, end) == expected


def test_notification_text_for_single_completion_with_siblings():
    """Test a per-task notice mentions what is still running."""
    task = create_test_task(status="completed", description="Find auth usages")
    task.completed_at = task.started_at + timedelta(seconds=42)

    text = build_notification_text(task, remaining=2)

    assert text.startswith("[BACKGROUND TASK COMPLETED]")
    assert 'Task "Find auth usages" finished.' in text
    assert "**ID:** `task-1`" in text
    assert "**Duration:** 42s" in text
    assert "2 task(s) still running" in text


def test_notification_text_for_cancelled_task_includes_error():
    """Test a cancelled task's notice carries its error."""
    task = create_test_task(status="cancelled", error="Stale timeout (no activity for 3min)")

    text = build_notification_text(task, remaining=1)

    assert text.startswith("[BACKGROUND TASK CANCELLED]")
    assert "**Error:** Stale timeout (no activity for 3min)" in text


def test_notification_text_summarises_when_all_done():
    """Test the last completion lists every finished task."""
    first = create_test_task("t1", description="First", status="completed")
    second = create_test_task("t2", description="Second", status="cancelled", error="boom")

    text = build_notification_text(second, remaining=0, finished=[first, second])

    assert text.startswith("[ALL BACKGROUND TASKS COMPLETE]")
    assert "- `t1`: First" in text
    assert "- `t2`: Second (cancelled: boom)" in text
