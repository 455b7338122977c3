"""Tests for the built-in control step handler."""

import asyncio

import pytest

from conftest import SyncHandler
from handlers.control import ControlHandler
from handlers.registry import describe_handlers, register_builtin_handlers
from workflow.step_executor import CancellationToken, StepExecutor


@pytest.fixture
def handler():
    return ControlHandler(max_delay_ms=200)


@pytest.mark.unit
class TestControlActions:
    async def test_unsupported_action(self, handler, context):
        with pytest.raises(ValueError, match="Unsupported control action: jump"):
            await handler.execute({"id": "c", "type": "control", "action": "jump"}, context)

    async def test_set_variable_from_target(self, handler, context):
        step = {"id": "c", "type": "control", "action": "set_variable", "target": "mode", "value": "fast"}
        result = await handler.execute(step, context)
        assert result == {"variables_set": ["mode"]}
        assert context.get_variable("mode") == "fast"

    async def test_set_variable_map(self, handler, context):
        step = {"id": "c", "type": "control", "action": "set_variable", "variables": {"a": 1, "b": 2}}
        await handler.execute(step, context)
        assert context.get_variable("a") == 1
        assert context.get_variable("b") == 2

    async def test_set_variable_requires_name(self, handler, context):
        with pytest.raises(ValueError, match="requires target or variables"):
            await handler.execute({"id": "c", "type": "control", "action": "set_variable"}, context)

    async def test_checkpoint(self, handler, context):
        context.current_step = 1
        result = await handler.execute({"id": "c", "type": "control", "action": "checkpoint"}, context)
        assert result["step_index"] == 1
        assert result["description"] == "Checkpoint at step c"
        assert context.last_checkpoint.id == result["checkpoint_id"]

    async def test_log(self, handler, context):
        step = {"id": "c", "type": "control", "action": "log", "value": "hello", "level": "warning"}
        assert await handler.execute(step, context) == {"message": "hello", "level": "warning"}


@pytest.mark.unit
class TestDelay:
    async def test_fixed_delay(self, handler, context):
        result = await handler.execute({"id": "d", "type": "control", "action": "delay", "duration": 20}, context)
        assert result["requested_delay"] == 20
        assert result["actual_delay"] >= 15
        assert result["completed"] is True

    async def test_delay_is_capped(self, handler, context):
        step = {"id": "d", "type": "control", "action": "delay", "duration": 60000}
        result = await handler.execute(step, context)
        assert result["requested_delay"] == 60000
        assert result["actual_delay"] < 1000

    async def test_variable_delay(self, handler, context):
        context.set_variable("pause_ms", "10")
        step = {"id": "d", "type": "control", "action": "delay", "delay_type": "variable", "variable": "pause_ms"}
        result = await handler.execute(step, context)
        assert result["requested_delay"] == 10

    async def test_random_delay_in_range(self, handler, context):
        step = {"id": "d", "type": "control", "action": "delay", "delay_type": "random", "min": 5, "max": 10}
        result = await handler.execute(step, context)
        assert 5 <= result["requested_delay"] <= 10

    async def test_cancel_wakes_delay(self, context):
        handler = ControlHandler(max_delay_ms=5000)
        context.cancel_token = CancellationToken()
        step = {"id": "d", "type": "control", "action": "delay", "duration": 5000}

        task = asyncio.create_task(handler.execute(step, context))
        await asyncio.sleep(0.01)
        context.cancel_token.cancel("stop")
        result = await asyncio.wait_for(task, timeout=1)

        assert result["completed"] is False
        assert result["actual_delay"] < 1000


@pytest.mark.unit
class TestBuiltinRegistry:
    def test_register_builtin_handlers(self):
        executor = StepExecutor()
        register_builtin_handlers(executor)
        assert isinstance(executor.get_step_handler("control"), ControlHandler)

    def test_describe_handlers(self):
        executor = StepExecutor()
        register_builtin_handlers(executor)
        executor.register_step_handler("custom", SyncHandler())
        described = {d["step_type"]: d for d in describe_handlers(executor)}
        assert described["control"]["actions"] == ["delay", "checkpoint", "set_variable", "log"]
        assert described["custom"]["display_name"] == "SyncHandler"
        assert described["custom"]["description"] == "Plain synchronous execute()."
