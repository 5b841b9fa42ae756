"""Tests for core exceptions."""

from taskpool.core.errors import ConcurrencyClosedError, NotFoundError, TaskNotFoundError


def test_task_not_found_error_message():
    """Test the missing session is named in the message and kept on the error."""
    error = TaskNotFoundError("ses_42")

    assert isinstance(error, NotFoundError)
    assert str(error) == "Task not found for session: ses_42"
    assert error.session_id == "ses_42"


def test_concurrency_closed_error_names_key():
    """Test the torn-down key is reported."""
    error = ConcurrencyClosedError("anthropic/claude-opus")

    assert error.key == "anthropic/claude-opus"
    assert "anthropic/claude-opus" in str(error)
