"""
Tests for the error taxonomy and retry utilities.
"""
import pytest

from api.services.resilience import (
    ConflictError,
    EnqueueError,
    NotFoundError,
    RetryConfig,
    ServiceUnavailableError,
    ValidationError,
    error_payload,
    is_retryable_status,
    retry_sync,
)

pytestmark = pytest.mark.unit


class TestRetrySync:
    """Test sync retry decorator."""

    def test_succeeds_without_retry(self):
        """Should succeed on first attempt."""
        call_count = 0

        @retry_sync()
        def success_func():
            nonlocal call_count
            call_count += 1
            return "success"

        result = success_func()
        assert result == "success"
        assert call_count == 1

    def test_retries_on_failure(self):
        """Should retry on transient failures."""
        call_count = 0

        @retry_sync(config=RetryConfig(max_retries=2, base_delay=0.01))
        def flaky_func():
            nonlocal call_count
            call_count += 1
            if call_count < 2:
                raise TimeoutError("Timeout")
            return "success"

        result = flaky_func()
        assert result == "success"
        assert call_count == 2

    def test_raises_after_max_retries(self):
        """Should raise the last error once retries are exhausted."""
        call_count = 0

        @retry_sync(config=RetryConfig(max_retries=2, base_delay=0.01))
        def always_fails():
            nonlocal call_count
            call_count += 1
            raise ConnectionError("down")

        with pytest.raises(ConnectionError):
            always_fails()
        assert call_count == 3

    def test_non_retryable_raises_immediately(self):
        call_count = 0

        @retry_sync(config=RetryConfig(max_retries=3, base_delay=0.01, retryable_exceptions=(TimeoutError,)))
        def bad_input():
            nonlocal call_count
            call_count += 1
            raise ValueError("bad")

        with pytest.raises(ValueError):
            bad_input()
        assert call_count == 1

    def test_on_retry_callback(self):
        retries_logged = []

        @retry_sync(
            config=RetryConfig(max_retries=2, base_delay=0.01),
            on_retry=lambda n, e: retries_logged.append(n),
        )
        def flaky():
            if len(retries_logged) < 2:
                raise ValueError("Retry me")
            return "done"

        assert flaky() == "done"
        assert retries_logged == [1, 2]


class TestErrors:
    """Test caller-facing errors and their payloads."""

    def test_not_found_payload(self):
        payload = error_payload(NotFoundError("Account", "acc-1"))
        assert payload == {
            "error": "NotFoundError",
            "message": "Account 'acc-1' not found",
            "entity": "Account",
            "entity_id": "acc-1",
        }

    def test_validation_and_conflict_payload(self):
        assert error_payload(ValidationError("Cannot merge an account with itself"))["error"] == "ValidationError"
        assert error_payload(ConflictError("already undone"))["message"] == "already undone"

    def test_service_unavailable_message(self):
        error = ServiceUnavailableError("unified-api", "GET /x failed", status_code=503)
        assert str(error) == "unified-api: GET /x failed"
        assert error.status_code == 503

    def test_enqueue_error_keeps_cause(self):
        cause = ConnectionError("broker down")
        error = EnqueueError("process-call", 3, cause)
        assert error.cause is cause
        assert "after 3 attempts" in str(error)


class TestIsRetryableStatus:
    @pytest.mark.parametrize("status", [429, 500, 502, 503, 599])
    def test_retryable(self, status):
        assert is_retryable_status(status)

    @pytest.mark.parametrize("status", [200, 400, 401, 404, 409])
    def test_not_retryable(self, status):
        assert not is_retryable_status(status)
