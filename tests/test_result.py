from relaybot.errors import RetryStateError, ToolExecutionError
from relaybot.services.result import Result


class TestResultSuccess:
    def test_success_creates_ok_result(self):
        result = Result.success("test value")
        assert result.ok is True
        assert result.value == "test value"
        assert result.error is None


class TestResultFailure:
    def test_failure_creates_not_ok_result(self):
        result = Result.failure("Something went wrong", "test_error")
        assert result.ok is False
        assert result.error == "Something went wrong"
        assert result.error_code == "test_error"
        assert result.value is None

    def test_failure_default_code(self):
        assert Result.failure("Error message").error_code == "unknown"

    def test_from_error_uses_user_message(self):
        result = Result.from_error(ToolExecutionError("gemini_image", "HTTP 500 from upstream"))
        assert result.ok is False
        assert result.error == "❌ שגיאה בהפעלת gemini_image. נסה שוב מאוחר יותר."
        assert result.error_code == "tool_error"

    def test_from_error_default_message(self):
        result = Result.from_error(RetryStateError("empty store"))
        assert result.error == "אין פקודה קודמת לחזור עליה. זו הפעם הראשונה שאתה מבקש משהו."
        assert result.error_code == "retry_state"


class TestResultHelpers:
    def test_unwrap_or_returns_value_on_success(self):
        assert Result.success("actual value").unwrap_or("default") == "actual value"

    def test_unwrap_or_returns_default_on_failure(self):
        assert Result.failure("Error", "code").unwrap_or("default") == "default"

    def test_map_on_success(self):
        assert Result.success(2).map(lambda v: v * 10).value == 20

    def test_map_keeps_failure(self):
        result = Result.failure("nope", "x").map(lambda v: v * 10)
        assert result.ok is False
        assert result.error_code == "x"
