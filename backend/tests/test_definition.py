"""Tests for definition normalization and the execution registry."""

import pytest

from core.exceptions import InvalidStateError, NotFoundError
from workflow.context import ExecutionContext
from workflow.definition import normalize_definition
from workflow.registry import ExecutionRegistry


@pytest.mark.unit
class TestNormalizeDefinition:
    def test_renames_camel_case_keys(self):
        definition = {
            "id": "wf",
            "settings": {"defaultTimeout": 500, "retryOptions": {"maxRetries": 1, "baseDelay": 10}},
            "steps": [{
                "id": "s1",
                "type": "control",
                "action": "delay",
                "delayType": "random",
                "waitAfter": 20,
                "onError": {"action": "skip"},
                "continueOnError": True,
            }],
        }
        workflow = normalize_definition(definition)

        assert workflow["settings"] == {"default_timeout": 500, "retry_options": {"max_retries": 1, "base_delay": 10}}
        step = workflow["steps"][0]
        assert step["delay_type"] == "random"
        assert step["wait_after"] == 20
        assert step["on_error"] == {"action": "skip"}
        assert step["continue_on_error"] is True
        assert "waitAfter" not in step

    def test_snake_case_wins(self):
        workflow = normalize_definition({"id": "wf", "steps": [{"waitAfter": 1, "wait_after": 2}]})
        assert workflow["steps"][0] == {"wait_after": 2}

    def test_deep_copy(self):
        definition = {"id": "wf", "variables": {"items": [1]}, "steps": [{"id": "s"}]}
        workflow = normalize_definition(definition)
        workflow["variables"]["items"].append(2)
        workflow["steps"][0]["id"] = "changed"
        assert definition == {"id": "wf", "variables": {"items": [1]}, "steps": [{"id": "s"}]}

    def test_non_dict_untouched(self):
        assert normalize_definition(None) is None
        assert normalize_definition({"id": "wf", "steps": ["bad"]})["steps"] == ["bad"]


@pytest.mark.unit
class TestExecutionRegistry:
    def test_add_get_remove(self):
        registry = ExecutionRegistry()
        context = ExecutionContext("e1", {"id": "wf", "steps": []})
        handle = registry.add(context)

        assert registry.get("e1") is handle
        assert registry.require("e1").context is context
        assert "e1" in registry
        assert list(registry) == ["e1"]
        assert registry.contexts() == [context]

        assert registry.remove("e1") is True
        assert registry.remove("e1") is False
        assert len(registry) == 0

    def test_duplicate_id(self):
        registry = ExecutionRegistry()
        registry.add(ExecutionContext("e1", {"id": "wf", "steps": []}))
        with pytest.raises(InvalidStateError, match="already running"):
            registry.add(ExecutionContext("e1", {"id": "wf", "steps": []}))

    def test_require_unknown(self):
        with pytest.raises(NotFoundError, match="Workflow e9 not found"):
            ExecutionRegistry().require("e9")

    def test_iteration_tolerates_removal(self):
        registry = ExecutionRegistry()
        for execution_id in ("a", "b", "c"):
            registry.add(ExecutionContext(execution_id, {"id": "wf", "steps": []}))
        for execution_id in registry:
            registry.remove(execution_id)
        assert len(registry) == 0
