"""
Bounded polling for long-running platform operations.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from moraine.config import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class PollResult(Generic[T]):
    """Last observed value and whether the policy ran out first."""

    value: T
    attempts: int
    timed_out: bool


def poll(
    fetch: Callable[[], T],
    done: Callable[[T], bool],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> PollResult[T]:
    """
    Call ``fetch`` until ``done`` accepts its value or the policy is exhausted.

    Args:
        fetch: Reads the current state
        done: Returns True for a terminal state
        policy: Interval, backoff and attempt ceiling
        sleep: Injected for tests
        label: Used in log messages

    Returns:
        PollResult; ``timed_out`` is True when the ceiling was reached
        without a terminal state
    """
    value = fetch()
    attempts = 1
    if done(value):
        return PollResult(value, attempts, False)

    for delay in policy.delays():
        logger.debug("Waiting %.1fs for %s (attempt %d/%d)", delay, label, attempts, policy.max_attempts)
        sleep(delay)
        value = fetch()
        attempts += 1
        if done(value):
            return PollResult(value, attempts, False)

    logger.warning("%s still in progress after %d status checks", label, attempts)
    return PollResult(value, attempts, True)
