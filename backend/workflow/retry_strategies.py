"""Workflow step retry policy.

Two concerns live here:

- Classification: ``is_retryable_error`` decides from the error *message*
  whether a failure is transient (timeouts, network trouble, an element that
  has not rendered yet). Handlers raise arbitrary exceptions, so the message
  is the only thing every failure has in common.
- Backoff: ``RetryStrategy`` computes the delay before the next attempt
  (fixed, exponential or linear, optional jitter).

Usage:
    strategy = RetryStrategy.from_step_options(step.get("retry_options"), defaults)
    if strategy.should_retry(attempt, error):
        await asyncio.sleep(strategy.compute_delay(attempt))
"""

import random
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional


RETRYABLE_PATTERNS = [
    re.compile(r"timeout", re.IGNORECASE),
    re.compile(r"timed\s*out", re.IGNORECASE),
    re.compile(r"network", re.IGNORECASE),
    re.compile(r"connection", re.IGNORECASE),
    re.compile(r"element.*not.*found", re.IGNORECASE),
    re.compile(r"page.*load", re.IGNORECASE),
    re.compile(r"temporar", re.IGNORECASE),
]


def is_retryable_error(error: BaseException | str) -> bool:
    """Keyword heuristic over the error message.

    Invalid selectors and validation failures never match and therefore
    fail fast.
    """
    message = str(error)
    return any(pattern.search(message) for pattern in RETRYABLE_PATTERNS)


class RetryPolicy(str, Enum):
    """Available retry policies."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    NONE = "none"


@dataclass
class RetryStrategy:
    """Retry budget and backoff for one step. Delays are in seconds."""
    policy: RetryPolicy
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: bool = False
    jitter_range: float = 0.5

    @classmethod
    def from_step_options(
        cls,
        options: Optional[dict],
        default_max_retries: int = 3,
        default_delay_ms: int = 1000,
        default_policy: str = "fixed",
        max_delay_ms: int = 60000,
    ) -> 'RetryStrategy':
        """Build a strategy from a step's ``retry_options`` (delays in ms).

        An explicit ``max_retries: 0`` disables retries for the step.
        """
        options = options or {}
        max_retries = options.get("max_retries")
        if max_retries is None:
            max_retries = default_max_retries
        return cls(
            policy=RetryPolicy(options.get("policy", default_policy)),
            max_retries=int(max_retries),
            base_delay=options.get("base_delay", default_delay_ms) / 1000,
            max_delay=options.get("max_delay", max_delay_ms) / 1000,
            jitter=options.get("jitter", False),
        )

    def to_dict(self) -> dict:
        """Serialize back to step ``retry_options`` form (ms)."""
        return {
            'policy': self.policy.value,
            'max_retries': self.max_retries,
            'base_delay': int(self.base_delay * 1000),
            'max_delay': int(self.max_delay * 1000),
            'jitter': self.jitter,
        }

    def compute_delay(self, attempt: int) -> float:
        """Compute the delay for a given attempt number (1-based)."""
        if self.policy == RetryPolicy.NONE:
            return 0.0

        if self.policy == RetryPolicy.FIXED:
            delay = self.base_delay
        elif self.policy == RetryPolicy.EXPONENTIAL:
            delay = self.base_delay * (2 ** (attempt - 1))
        elif self.policy == RetryPolicy.LINEAR:
            delay = self.base_delay * attempt
        else:
            delay = self.base_delay

        delay = min(delay, self.max_delay)

        if self.jitter and delay > 0:
            jitter_amount = delay * self.jitter_range
            delay = delay + random.uniform(-jitter_amount, jitter_amount)
            delay = max(0.0, delay)

        return round(delay, 3)

    def has_budget(self, attempts_so_far: int) -> bool:
        """True while fewer than ``max_retries`` failures have been recorded."""
        if self.policy == RetryPolicy.NONE:
            return False
        return attempts_so_far < self.max_retries

    def should_retry(self, attempts_so_far: int, error: Optional[BaseException] = None) -> bool:
        """Budget left and the error looks transient."""
        if not self.has_budget(attempts_so_far):
            return False
        return error is None or is_retryable_error(error)
