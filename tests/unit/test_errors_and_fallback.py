"""Tests for the failure taxonomy and the user-facing WorkflowError."""
import pytest

from farmflow.error_coordination import (
    CapacityExceededError,
    DuplicateOperationError,
    ExecutorUnavailableError,
    FailureKind,
    StepTimeoutError,
    UnknownInstanceError,
    ValidationError,
    WorkflowError,
)


class TestFailureKind:
    def test_retryable_kinds(self):
        retryable = {kind for kind in FailureKind if kind.is_retryable}
        assert retryable == {FailureKind.TRANSIENT, FailureKind.CIRCUIT_OPEN}


class TestErrors:
    def test_error_kinds(self):
        assert ValidationError("bad").kind is FailureKind.VALIDATION
        assert StepTimeoutError("slow", 5.0).kind is FailureKind.TIMEOUT
        assert ExecutorUnavailableError("busy").kind is FailureKind.TRANSIENT

    def test_validation_error_keeps_details(self):
        error = ValidationError("bad input", errors=[{"loc": ("text",)}])
        assert error.errors == [{"loc": ("text",)}]

    def test_capacity_message(self):
        error = CapacityExceededError("device-1", 900, 200, 1000)
        assert "device-1" in str(error)
        assert "cap of 1000 bytes" in str(error)

    def test_duplicate_message(self):
        assert "already replayed" in str(DuplicateOperationError("device-1", 3, replayed=True))
        assert "already queued" in str(DuplicateOperationError("device-1", 3, replayed=False))

    def test_unknown_instance_is_key_error_with_plain_message(self):
        error = UnknownInstanceError("Unknown workflow instance abc")
        assert isinstance(error, KeyError)
        assert str(error) == "Unknown workflow instance abc"


class TestWorkflowError:
    def test_build_uses_kind_message(self):
        error = WorkflowError.build("fetch_price", FailureKind.TRANSIENT, "HTTP 503 from mandi API")

        assert error.step_id == "fetch_price"
        assert error.reason == "HTTP 503 from mandi API"
        assert "temporarily unreachable" in error.message
        assert error.suggested_action
        assert error.fallback_applied is False
        assert error.retryable is True

    def test_fallback_message_marks_fallback_applied(self):
        error = WorkflowError.build(
            "diagnose", FailureKind.PERMANENT, "model rejected photo", "A field officer will follow up."
        )

        assert error.message == "A field officer will follow up."
        assert error.fallback_applied is True
        assert error.retryable is False

    def test_abort_fallback_without_message(self):
        error = WorkflowError.build("fetch_price", FailureKind.TRANSIENT, "down", None, fallback_applied=True)

        assert error.fallback_applied is True
        assert error.retryable is False
        assert "temporarily unreachable" in error.message

    @pytest.mark.parametrize("kind", list(FailureKind))
    def test_every_kind_has_user_message(self, kind):
        error = WorkflowError.build(None, kind, "internal")
        assert error.message and error.suggested_action
        assert "internal" not in error.message

    def test_serializes_to_json(self):
        error = WorkflowError.build("s", FailureKind.TIMEOUT, "slow")
        data = error.model_dump(mode="json")

        assert data["failure_kind"] == "timeout"
        assert WorkflowError.model_validate(data) == error
