"""
Error taxonomy for the harness.

Control plane failures are split into transient (retried by the poller) and
permanent (abort the current poll). Assertion failures and timeouts are kept
apart so a failed run says whether a fact was wrong or never showed up.
"""

import errno
import re
from typing import Any, List, Optional, Tuple

# Reasons the API server reports for conditions worth retrying.
RETRYABLE_REASONS = frozenset({
    "InternalError",
    "Timeout",
    "ServerTimeout",
    "TooManyRequests",
})

_PROBABLE_EOF_MARKERS = (
    "unexpected EOF",
    "use of closed network connection",
    "http: server closed idle connection",
    "connection reset by peer",
)

_RETRY_AFTER_RE = re.compile(r"retry[- ]after[:=]?\s*(\d+)", re.IGNORECASE)


class HarnessError(Exception):
    """Base class for every error raised by the harness."""
    pass


class ControlPlaneError(HarnessError):
    """A control plane request failed.

    Attributes:
        reason: API status reason (e.g. "NotFound", "TooManyRequests"), or
            an empty string when the failure happened before a response.
        retry_after: Delay in seconds the server asked for, if any.
    """

    def __init__(self, message: str, reason: str = "", retry_after: Optional[float] = None):
        super().__init__(message)
        self.reason = reason
        self.retry_after = retry_after


class TransientControlPlaneError(ControlPlaneError):
    """Control plane failure that may go away on retry."""
    pass


class PermanentControlPlaneError(ControlPlaneError):
    """Control plane failure that retrying will not fix."""
    pass


class AssertionFailure(HarnessError):
    """A correlated fact did not hold."""

    def __init__(self, message: str, observed: Any = None):
        super().__init__(message)
        self.observed = observed


class TimeoutExceeded(HarnessError):
    """A wait ran out of time before its condition was met.

    Carries the last value and error seen while waiting.
    """

    def __init__(self, message: str, last_value: Any = None, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.last_value = last_value
        self.last_error = last_error

    def __str__(self):
        text = super().__str__()
        details = []
        if self.last_value is not None:
            details.append(f"last value: {self.last_value!r}")
        if self.last_error is not None:
            details.append(f"last error: {self.last_error}")
        if details:
            text = f"{text} ({'; '.join(details)})"
        return text


class PollTimeout(TimeoutExceeded):
    """The poller never saw its condition succeed."""
    pass


class CleanupError(HarnessError):
    """One or more cleanup actions failed."""

    def __init__(self, failures: List[Tuple[str, BaseException]]):
        names = ", ".join(name for name, _ in failures)
        super().__init__(f"{len(failures)} cleanup action(s) failed: {names}")
        self.failures = failures


class StageFailure(HarnessError):
    """A scenario stage failed; the cause is chained."""

    def __init__(self, stage, cause: BaseException):
        kind = "timed out" if isinstance(cause, TimeoutExceeded) else "failed"
        super().__init__(f"stage {stage.value} {kind}: {cause}")
        self.stage = stage
        self.cause = cause


class DiskProvisioningError(HarnessError):
    """Cloud disk provisioning failed."""
    pass


def is_not_found(err: BaseException) -> bool:
    return isinstance(err, ControlPlaneError) and err.reason == "NotFound"


def is_gone(err: BaseException) -> bool:
    return isinstance(err, ControlPlaneError) and err.reason in ("Gone", "Expired")


def is_already_exists(err: BaseException) -> bool:
    return isinstance(err, ControlPlaneError) and err.reason == "AlreadyExists"


def is_probable_eof(err: BaseException) -> bool:
    if isinstance(err, EOFError):
        return True
    message = str(err)
    return message.endswith(" EOF") or message == "EOF" or any(m in message for m in _PROBABLE_EOF_MARKERS)


def is_connection_reset(err: BaseException) -> bool:
    if isinstance(err, ConnectionResetError):
        return True
    if isinstance(err, OSError) and err.errno == errno.ECONNRESET:
        return True
    return "connection reset" in str(err)


def suggests_client_delay(err: BaseException) -> Optional[float]:
    """Return the server-suggested retry delay carried by err, if any."""
    if isinstance(err, ControlPlaneError) and err.retry_after is not None:
        return err.retry_after
    match = _RETRY_AFTER_RE.search(str(err))
    if match:
        return float(match.group(1))
    return None


def is_retryable_api_error(err: BaseException) -> bool:
    """Whether err is a transient control plane failure worth retrying."""
    if isinstance(err, TransientControlPlaneError):
        return True
    if isinstance(err, ControlPlaneError) and err.reason in RETRYABLE_REASONS:
        return True
    if is_probable_eof(err) or is_connection_reset(err):
        return True
    # An explicit Retry-After from the server is taken as permission to retry.
    return suggests_client_delay(err) is not None


def control_plane_error(message: str, reason: str = "", retry_after: Optional[float] = None) -> ControlPlaneError:
    """Build the transient or permanent error matching reason and message."""
    probe = ControlPlaneError(message, reason=reason, retry_after=retry_after)
    if is_retryable_api_error(probe):
        return TransientControlPlaneError(message, reason=reason, retry_after=suggests_client_delay(probe))
    return PermanentControlPlaneError(message, reason=reason, retry_after=retry_after)
