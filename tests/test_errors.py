"""Tests for error classification."""
import errno

import pytest

from localvolume_e2e.errors import (
    ControlPlaneError,
    PermanentControlPlaneError,
    StageFailure,
    TimeoutExceeded,
    TransientControlPlaneError,
    control_plane_error,
    is_gone,
    is_not_found,
    is_retryable_api_error,
    suggests_client_delay,
)
from localvolume_e2e.orchestrator import Stage


class TestRetryClassification:
    """Tests for is_retryable_api_error."""

    @pytest.mark.parametrize("reason", ["InternalError", "Timeout", "ServerTimeout", "TooManyRequests"])
    def test_retryable_reasons(self, reason):
        assert is_retryable_api_error(ControlPlaneError("server trouble", reason=reason))

    @pytest.mark.parametrize("reason", ["NotFound", "Forbidden", "Invalid", "AlreadyExists"])
    def test_permanent_reasons(self, reason):
        assert not is_retryable_api_error(ControlPlaneError("client trouble", reason=reason))

    def test_probable_eof(self):
        assert is_retryable_api_error(Exception('Get "https://api:6443/api": unexpected EOF'))
        assert is_retryable_api_error(EOFError())

    def test_connection_reset(self):
        assert is_retryable_api_error(OSError(errno.ECONNRESET, "Connection reset"))

    def test_retry_after_makes_error_retryable(self):
        err = ControlPlaneError("throttled", reason="Forbidden", retry_after=3)

        assert is_retryable_api_error(err)
        assert suggests_client_delay(err) == 3

    def test_retry_after_in_message(self):
        assert suggests_client_delay(Exception("please Retry-After: 7")) == 7.0

    def test_plain_exception_is_not_retryable(self):
        assert not is_retryable_api_error(ValueError("bad manifest"))


class TestControlPlaneErrorFactory:
    """Tests for control_plane_error."""

    def test_transient(self):
        err = control_plane_error("Error from server (InternalError): boom", reason="InternalError")

        assert isinstance(err, TransientControlPlaneError)

    def test_permanent_keeps_reason(self):
        err = control_plane_error('Error from server (NotFound): pods "x" not found', reason="NotFound")

        assert isinstance(err, PermanentControlPlaneError)
        assert is_not_found(err)

    def test_gone_and_expired(self):
        assert is_gone(control_plane_error("gone", reason="Gone"))
        assert is_gone(control_plane_error("expired", reason="Expired"))


class TestStageFailure:
    """Tests for StageFailure messages."""

    def test_distinguishes_timeout(self):
        failure = StageFailure(Stage.VERIFY_RECLAIMED, TimeoutExceeded("PVs not available"))

        assert str(failure).startswith("stage VerifyReclaimed timed out")
        assert failure.stage is Stage.VERIFY_RECLAIMED

    def test_assertion(self):
        failure = StageFailure(Stage.CORRELATE, ValueError("wrong path"))

        assert str(failure) == "stage Correlate failed: wrong path"
