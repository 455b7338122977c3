"""Tests for the execution context."""

import json

import pytest

from core.constants import ErrorType, ExecutionState, StepStatus
from core.exceptions import NotFoundError
from workflow.context import ExecutionContext


@pytest.mark.unit
class TestVariables:
    def test_get_with_default(self, context):
        assert context.get_variable("count") == 10
        assert context.get_variable("missing") is None
        assert context.get_variable("missing", "fallback") == "fallback"

    def test_set_and_update_are_chainable(self, context):
        context.set_variable("a", 1).update_variables({"b": 2, "count": 11})
        assert context.get_variable("a") == 1
        assert context.get_variable("b") == 2
        assert context.get_variable("count") == 11

    def test_get_all_variables_returns_copy(self, context):
        snapshot = context.get_all_variables()
        snapshot["count"] = 999
        assert context.get_variable("count") == 10


@pytest.mark.unit
class TestResultsAndErrors:
    def test_add_result_uses_current_step(self, context):
        context.current_step = 2
        record = context.add_result("s3", {"text": "hi"}, duration=15)
        assert record.step_index == 2
        assert record.status == StepStatus.COMPLETED
        assert context.results == [record]

    def test_add_error_records_message_and_class(self, context):
        context.current_step = 1
        record = context.add_error("s2", ValueError("bad selector"))
        assert record.step_index == 1
        assert record.message == "bad selector"
        assert record.error_class == "ValueError"
        assert record.type == ErrorType.STEP_ERROR
        assert context.has_errors()

    def test_errors_for_step_filters_by_id_and_type(self, context):
        context.add_error("s1", "timeout")
        context.add_error("s1", "timeout again")
        context.add_error("s2", "other")
        context.add_error("s1", "fatal", ErrorType.WORKFLOW_ERROR)
        assert len(context.errors_for_step("s1")) == 2


@pytest.mark.unit
class TestCheckpoints:
    def test_restore_returns_to_snapshot(self, context):
        context.current_step = 1
        context.set_variable("nested", {"items": [1, 2]})
        checkpoint = context.create_checkpoint("before extraction")

        context.current_step = 3
        context.set_variable("count", 0)
        context.get_variable("nested")["items"].append(3)

        context.restore_from_checkpoint(checkpoint.id)
        assert context.current_step == 1
        assert context.get_variable("count") == 10
        assert context.get_variable("nested") == {"items": [1, 2]}

    def test_checkpoint_is_not_corrupted_by_later_mutation(self, context):
        checkpoint = context.create_checkpoint()
        context.restore_from_checkpoint(checkpoint.id)
        context.set_variable("count", 42)
        context.restore_from_checkpoint(checkpoint.id)
        assert context.get_variable("count") == 10

    def test_restore_keeps_results_and_errors(self, context):
        checkpoint = context.create_checkpoint()
        context.add_result("s1", "ok")
        context.add_error("s2", "timeout")
        context.restore_from_checkpoint(checkpoint.id)
        assert len(context.results) == 1
        assert len(context.errors) == 1

    def test_last_checkpoint_tracks_newest(self, context):
        context.create_checkpoint("one")
        second = context.create_checkpoint("two")
        assert context.last_checkpoint is second
        assert len(context.checkpoints) == 2

    def test_unknown_checkpoint(self, context):
        with pytest.raises(NotFoundError):
            context.restore_from_checkpoint("checkpoint_missing")


@pytest.mark.unit
class TestProgress:
    def test_progress_rounding(self, context):
        context.current_step = 1
        assert context.get_progress() == {"current": 1, "total": 3, "percentage": 33, "remaining": 2}
        context.current_step = 2
        assert context.get_progress()["percentage"] == 67

    def test_current_and_next_step(self, context):
        current = context.get_current_step()
        assert current["id"] == "s1"
        assert current["index"] == 0
        assert current["is_last"] is False
        assert context.get_next_step()["id"] == "s2"

        context.current_step = 2
        assert context.get_current_step()["is_last"] is True
        assert context.get_next_step() is None

    def test_is_complete(self, context):
        assert not context.is_complete()
        context.current_step = 3
        assert context.is_complete()
        assert context.get_current_step() is None


@pytest.mark.unit
class TestSerialization:
    def test_round_trip_preserves_state(self, context):
        context.execution_state = ExecutionState.PAUSED
        context.current_step = 2
        context.add_result("s1", {"title": "Example"}, duration=12)
        context.add_error("s2", TimeoutError("timed out"))
        context.create_checkpoint("mid-run")

        restored = ExecutionContext.deserialize(context.serialize())

        assert restored.execution_id == "exec-1"
        assert restored.workflow_id == "wf-1"
        assert restored.execution_state == ExecutionState.PAUSED
        assert restored.current_step == 2
        assert restored.get_all_variables() == context.get_all_variables()
        assert [r.to_dict() for r in restored.results] == [r.to_dict() for r in context.results]
        assert [e.to_dict() for e in restored.errors] == [e.to_dict() for e in context.errors]
        assert len(restored.checkpoints) == 1
        assert restored.last_checkpoint.id == context.last_checkpoint.id

    def test_serialized_form_is_json(self, context):
        context.set_variable("opaque", object())
        data = context.serialize()
        json.dumps(data)
        assert isinstance(data["variables"]["opaque"], str)

    def test_metadata_carries_engine_marker(self):
        ctx = ExecutionContext("e", {"id": "w", "steps": []}, metadata={"source": "api"})
        assert ctx.metadata["source"] == "api"
        assert ctx.metadata["engine"] == "WorkflowEngine"
        assert ctx.session_id
