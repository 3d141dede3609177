from concierge.services.result import ErrorCode, Result


class TestResult:
    def test_success(self):
        result = Result.success("chat-1", attempts=2)
        assert result.ok
        assert result.value == "chat-1"
        assert result.attempts == 2
        assert result.unwrap_or("fallback") == "chat-1"

    def test_failure(self):
        result = Result.failure("down", ErrorCode.RETRIES_EXHAUSTED.value, attempts=3)
        assert not result.ok
        assert result.error_code == "retries_exhausted"
        assert result.unwrap_or("fallback") == "fallback"
        assert not result.retryable

    def test_transient_failure_is_retryable(self):
        assert Result.failure("timeout", ErrorCode.TRANSIENT.value).retryable
