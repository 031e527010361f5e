"""Tests for the error taxonomy and retry strategy."""

import threading

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError

from landform.state.models import LockToken
from landform.utils.errors import (
    ErrorCategory,
    ErrorContext,
    ErrorHandler,
    FatalProviderError,
    LockHeldError,
    PartialApplyError,
    TransientProviderError,
)
from landform.utils.retry import RetryStrategy, with_retry


def client_error(code, operation="PutItem"):
    return ClientError(
        {"Error": {"Code": code, "Message": f"{code} happened"}, "ResponseMetadata": {"RequestId": "req-1"}},
        operation,
    )


class TestErrorHandler:
    """Test classification of exceptions."""

    def test_transient_classification(self):
        """Test which errors are considered transient."""
        handler = ErrorHandler()

        assert handler.is_transient(TransientProviderError("slow down"))
        assert not handler.is_transient(FatalProviderError("no"))
        assert handler.is_transient(client_error("ThrottlingException"))
        assert not handler.is_transient(client_error("AccessDenied"))
        assert handler.is_transient(EndpointConnectionError(endpoint_url="https://example"))
        assert handler.is_transient(ConnectionResetError())
        assert not handler.is_transient(ValueError("bad"))

    def test_aws_error_mapping(self):
        """Test that AWS errors keep their code, request id and suggestions."""
        error = ErrorHandler().handle_exception(client_error("AccessDenied"), ErrorContext(address="x.y"))

        assert isinstance(error, FatalProviderError)
        assert "AccessDenied" in error.message
        assert error.context.request_id == "req-1"
        assert error.suggestions

    def test_throttling_maps_to_transient(self):
        """Test that throttling AWS errors become transient provider errors."""
        error = ErrorHandler().handle_exception(client_error("Throttling"))

        assert isinstance(error, TransientProviderError)

    def test_credentials(self):
        """Test that missing credentials are reported as such."""
        error = ErrorHandler().handle_exception(NoCredentialsError())

        assert error.category == ErrorCategory.CREDENTIAL

    def test_network(self):
        """Test that connectivity failures are transient network errors."""
        error = ErrorHandler().handle_exception(ConnectionRefusedError("refused"))

        assert isinstance(error, TransientProviderError)
        assert error.category == ErrorCategory.NETWORK

    def test_landform_errors_pass_through(self):
        """Test that landform errors are returned unchanged."""
        original = FatalProviderError("already classified")

        assert ErrorHandler().handle_exception(original) is original


class TestErrorMessages:
    """Test user-facing error text."""

    def test_lock_held_message(self):
        """Test that the holder is described."""
        holder = LockToken.new("prod", ttl=60, operation="destroy")
        error = LockHeldError("prod", holder)

        assert holder.lock_id in error.message
        assert "destroy" in error.message
        assert "force-unlock" in error.to_user_message()

    def test_partial_apply_message(self):
        """Test the partial apply summary."""
        error = PartialApplyError(["a.x"], ["a.y", "a.z"])

        assert "a.x" in error.message
        assert "skipped 2" in error.message

    def test_to_dict(self):
        """Test serialization for logs."""
        data = FatalProviderError("boom", context=ErrorContext(address="a.b")).to_dict()

        assert data["type"] == "FatalProviderError"
        assert data["category"] == "provider"
        assert data["context"]["address"] == "a.b"


class TestRetryStrategy:
    """Test RetryStrategy."""

    def test_retries_transient_until_success(self):
        """Test that transient errors are retried."""
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise TransientProviderError("throttled")
            return "ok"

        strategy = RetryStrategy(max_retries=3, base_delay=0.001, jitter=False)

        assert strategy.execute_with_retry(flaky) == "ok"
        assert len(calls) == 3

    def test_fatal_not_retried(self):
        """Test that fatal errors are raised immediately."""
        calls = []

        def broken():
            calls.append(1)
            raise FatalProviderError("no")

        with pytest.raises(FatalProviderError):
            RetryStrategy(max_retries=3, base_delay=0.001).execute_with_retry(broken)

        assert len(calls) == 1

    def test_cancel_stops_retrying(self):
        """Test that a set cancel event prevents further attempts."""
        cancel_event = threading.Event()
        calls = []

        def throttled():
            calls.append(1)
            cancel_event.set()
            raise TransientProviderError("throttled")

        strategy = RetryStrategy(max_retries=5, base_delay=0.001, cancel_event=cancel_event)
        with pytest.raises(TransientProviderError):
            strategy.execute_with_retry(throttled)

        assert len(calls) == 1

    def test_delay_is_capped(self):
        """Test exponential growth up to max_delay."""
        strategy = RetryStrategy(base_delay=1.0, max_delay=5.0, jitter=False)

        assert strategy.get_delay(0) == 1.0
        assert strategy.get_delay(2) == 4.0
        assert strategy.get_delay(10) == 5.0

    def test_decorator(self):
        """Test the with_retry decorator."""
        calls = []

        @with_retry(max_retries=2, base_delay=0.001)
        def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise client_error("ServiceUnavailable")
            return len(calls)

        assert flaky() == 2
