"""
Assertion combinators over a probe.

eventually() keeps polling through any failure until the probe's value
matches. consistently() proves a property holds for a whole window and fails
on the first sample that does not.
"""

import logging
from typing import Any, Callable, Optional

from .clock import SYSTEM_CLOCK
from .errors import AssertionFailure, TimeoutExceeded

logger = logging.getLogger("localvolume-e2e.assertions")

Probe = Callable[[], Any]
Matcher = Callable[[Any], bool]


def eventually(
    probe: Probe,
    timeout: float,
    interval: float,
    matcher: Matcher = bool,
    description: str = "probe",
    clock=None,
) -> Any:
    """
    Evaluate probe now and then every interval until matcher(value) is true.

    A probe error or a non-matching value only means "not yet". An
    AssertionFailure raised by the probe is a verdict, not lag, and is
    re-raised at once.

    Returns:
        The first value that matched

    Raises:
        TimeoutExceeded: With the last observed value and error attached
    """
    clock = clock or SYSTEM_CLOCK
    deadline = clock.monotonic() + timeout
    last_value: Any = None
    last_error: Optional[BaseException] = None

    while True:
        try:
            value = probe()
        except AssertionFailure:
            raise
        except Exception as e:
            logger.debug(f"{description}: not yet ({e})")
            last_error = e
        else:
            last_value = value
            if matcher(value):
                return value
            logger.debug(f"{description}: not yet (got {value!r})")

        remaining = deadline - clock.monotonic()
        if remaining <= 0:
            raise TimeoutExceeded(
                f"{description} did not succeed within {timeout}s",
                last_value=last_value,
                last_error=last_error,
            )
        clock.sleep(min(interval, remaining))


def consistently(
    probe: Probe,
    duration: float,
    interval: float,
    matcher: Matcher = bool,
    description: str = "probe",
    clock=None,
) -> None:
    """
    Sample probe now and every interval for duration seconds.

    Raises:
        AssertionFailure: On the first sample that errors or does not match
    """
    clock = clock or SYSTEM_CLOCK
    deadline = clock.monotonic() + duration
    samples = 0

    while True:
        try:
            value = probe()
        except AssertionFailure:
            raise
        except Exception as e:
            raise AssertionFailure(
                f"{description} errored after {samples} good sample(s): {e}"
            ) from e
        samples += 1
        if not matcher(value):
            raise AssertionFailure(
                f"{description} did not hold on sample {samples}",
                observed=value,
            )

        remaining = deadline - clock.monotonic()
        if remaining <= 0:
            logger.info(f"{description} held for {duration}s ({samples} samples)")
            return
        clock.sleep(min(interval, remaining))
