from giftbot.services.result import Result


class TestResultSuccess:
    def test_success_creates_ok_result(self):
        result = Result.success("test value")
        assert result.ok is True
        assert result.value == "test value"
        assert result.error is None

    def test_success_without_value(self):
        result = Result.success()
        assert result.ok is True
        assert result.value is None


class TestResultFailure:
    def test_failure_creates_not_ok_result(self):
        result = Result.failure("Something went wrong", "sheets_error")
        assert result.ok is False
        assert result.error == "Something went wrong"
        assert result.error_code == "sheets_error"
        assert result.value is None

    def test_failure_default_code(self):
        result = Result.failure("Error message")
        assert result.error_code == "unknown"


class TestResultUnwrapOr:
    def test_unwrap_or_returns_value_on_success(self):
        assert Result.success("actual value").unwrap_or("default") == "actual value"

    def test_unwrap_or_returns_default_on_failure(self):
        assert Result.failure("Error", "code").unwrap_or("default") == "default"

    def test_unwrap_or_with_none_value(self):
        assert Result.success(None).unwrap_or("default") is None


class TestAsStatus:
    def test_success_status(self):
        assert Result.success({"success": True}).as_status() == {"success": True}

    def test_failure_status_carries_error(self):
        status = Result.failure("(#200) permission denied", "permission_denied").as_status()
        assert status == {"success": False, "error": "(#200) permission denied"}
