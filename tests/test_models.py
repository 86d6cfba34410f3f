"""Tests for NodeExecutionResult and the FlowExecution state machine."""

import pytest

from flowengine.core.errors import ErrorKind, ValidationError
from flowengine.core.models import (
    FlowExecution,
    FlowExecutionStatus,
    NodeExecutionResult,
    NodeExecutionStatus,
)


class TestNodeExecutionResult:
    def test_success(self):
        """success() sets status, output and timing."""
        result = NodeExecutionResult.success("n1", {"a": 1})

        assert result.status == NodeExecutionStatus.SUCCESS
        assert result.is_success and not result.is_failed
        assert result.output == {"a": 1}
        assert result.error is None
        assert result.completed_at >= result.started_at
        assert result.execution_time_ms >= 0

    def test_failed(self):
        result = NodeExecutionResult.failed("n1", "boom")

        assert result.status == NodeExecutionStatus.FAILED
        assert result.is_failed
        assert result.error == "boom"
        assert result.error_kind is None

    def test_failed_keeps_output(self):
        """A failed result can still carry diagnostic output."""
        result = NodeExecutionResult.failed("n1", "boom", output={"success": False})
        assert result.output == {"success": False}

    def test_failed_with_kind(self):
        result = NodeExecutionResult.failed("n1", "denied", error_kind=ErrorKind.FORBIDDEN)

        assert result.error_kind == ErrorKind.FORBIDDEN
        assert result.model_dump(mode="json")["error_kind"] == "forbidden"


class TestFlowExecution:
    def test_new_is_pending(self, tenant_id, user_id):
        execution = FlowExecution.new("flow", tenant_id, user_id, session_id="s1")

        assert execution.status == FlowExecutionStatus.PENDING
        assert execution.flow_version == 1
        assert execution.session_id == "s1"
        assert execution.id

    def test_complete(self, execution):
        execution.start()
        assert execution.is_running

        execution.complete({"ok": True})

        assert execution.is_completed
        assert execution.is_terminal
        assert execution.output_data == {"ok": True}
        assert execution.completed_at is not None
        assert execution.execution_time_ms is not None

    def test_fail(self, execution):
        execution.start()
        execution.fail("Node execution failed")

        assert execution.is_failed
        assert execution.error_message == "Node execution failed"

    def test_cancel(self, execution):
        execution.start()
        execution.cancel("Flow execution cancelled")

        assert execution.status == FlowExecutionStatus.CANCELLED
        assert execution.error_message == "Flow execution cancelled"

    @pytest.mark.parametrize("finish", ["complete", "fail", "cancel"])
    def test_terminal_states_are_final(self, execution, finish):
        """No transition is allowed out of a terminal state."""
        execution.start()
        getattr(execution, finish)("x")

        with pytest.raises(ValidationError, match="already"):
            execution.fail("again")
        with pytest.raises(ValidationError):
            execution.start()

    def test_ownership(self, execution, tenant_id, user_id):
        assert execution.belongs_to_tenant(tenant_id)
        assert not execution.belongs_to_tenant("other")
        assert execution.belongs_to_user(user_id)
