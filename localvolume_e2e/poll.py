"""
Poll - wait for a condition against an eventually-consistent control plane.

A condition is a zero-argument callable returning True when done. Errors it
raises are classified: transient control plane errors are logged and the poll
continues, anything else ends the poll immediately. Running out of time raises
PollTimeout, never the last error seen, so callers can tell "never succeeded"
apart from "the control plane refused".
"""

import logging
from typing import Callable, Optional

from .clock import SYSTEM_CLOCK
from .errors import PollTimeout, is_retryable_api_error

logger = logging.getLogger("localvolume-e2e.poll")

Condition = Callable[[], bool]


def poll_until(
    condition: Condition,
    interval: float,
    timeout: float,
    description: str = "condition",
    clock=None,
) -> None:
    """
    Wait one interval, then evaluate condition every interval until it
    returns True or timeout elapses.

    Args:
        condition: Side-effect free predicate, safe to call repeatedly
        interval: Seconds between evaluations
        timeout: Total seconds to wait
        description: Used in log lines and the timeout message
        clock: Time source (defaults to the system clock)

    Raises:
        PollTimeout: If the condition never returned True in time
        Exception: Whatever non-retryable error the condition raised
    """
    _poll(condition, interval, timeout, description, clock or SYSTEM_CLOCK, immediate=False)


def poll_immediate_until(
    condition: Condition,
    interval: float,
    timeout: float,
    description: str = "condition",
    clock=None,
) -> None:
    """Same as poll_until, but evaluates condition once before the first wait."""
    _poll(condition, interval, timeout, description, clock or SYSTEM_CLOCK, immediate=True)


def _poll(condition, interval, timeout, description, clock, immediate):
    if interval <= 0:
        raise ValueError(f"poll interval must be positive, got {interval}")

    deadline = clock.monotonic() + timeout
    last_error: Optional[BaseException] = None

    if immediate:
        done, last_error = _evaluate(condition, description, last_error)
        if done:
            return

    while True:
        remaining = deadline - clock.monotonic()
        if remaining <= 0:
            raise PollTimeout(
                f"timed out waiting for {description} after {timeout}s",
                last_error=last_error,
            )
        clock.sleep(min(interval, remaining))
        done, last_error = _evaluate(condition, description, last_error)
        if done:
            return


def _evaluate(condition, description, last_error):
    try:
        return bool(condition()), last_error
    except Exception as e:
        if is_retryable_api_error(e):
            logger.info(f"Retryable error while waiting for {description}: {e}")
            return False, e
        logger.error(f"Aborting wait for {description}: {e}")
        raise
