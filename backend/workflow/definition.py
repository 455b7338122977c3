"""Workflow definition normalization.

Recorded workflows use camelCase keys (``retryOptions``, ``onError``,
``waitAfter``...). The engine works on snake_case keys only, so every accepted
definition is deep-copied and its known keys renamed. When both spellings are
present the snake_case one wins.
"""

import copy
from typing import Any

_KEY_ALIASES = {
    "retryOptions": "retry_options",
    "maxRetries": "max_retries",
    "baseDelay": "base_delay",
    "maxDelay": "max_delay",
    "onError": "on_error",
    "continueOnError": "continue_on_error",
    "waitAfter": "wait_after",
    "defaultTimeout": "default_timeout",
    "delayType": "delay_type",
}

# Nested mappings whose keys are normalized too
_NESTED = ("retry_options", "on_error", "settings")


def _normalize_keys(data: dict) -> dict:
    normalized: dict[str, Any] = {}
    for key, value in data.items():
        target = _KEY_ALIASES.get(key, key)
        if target != key and target in data:
            continue
        normalized[target] = value

    for key in _NESTED:
        if isinstance(normalized.get(key), dict):
            normalized[key] = _normalize_keys(normalized[key])
    return normalized


def normalize_definition(definition: Any) -> Any:
    """Return a deep copy of ``definition`` with snake_case keys.

    Anything that is not a dict is returned untouched so validation can
    report it.
    """
    if not isinstance(definition, dict):
        return definition

    workflow = _normalize_keys(copy.deepcopy(definition))
    steps = workflow.get("steps")
    if isinstance(steps, list):
        workflow["steps"] = [
            _normalize_keys(step) if isinstance(step, dict) else step
            for step in steps
        ]
    return workflow
