"""Unit tests for custom exception hierarchy"""
import pytest
from datetime import datetime

import psycopg

from src.exceptions import (
    GamificationError,
    ValidationError,
    RecordNotFoundError,
    InvariantViolationError,
    DatabaseError,
    ConnectionError,
    QueryError,
    ConfigurationError,
    wrap_external_exception
)


class TestGamificationError:
    """Test base exception class"""

    def test_basic_exception(self):
        """Test basic exception creation"""
        error = GamificationError("Test error")
        assert error.message == "Test error"
        assert error.user_message == GamificationError.default_user_message
        assert "progress" in error.user_message
        assert error.request_id is not None
        assert isinstance(error.timestamp, datetime)

    def test_exception_with_context(self):
        """Test exception with full context"""
        error = GamificationError(
            message="Failed to award XP",
            user_id="user-123",
            operation="complete_task",
            context={"task_id": "abc-123"},
            user_message="Could not record your task"
        )
        assert error.user_id == "user-123"
        assert error.operation == "complete_task"
        assert error.context["task_id"] == "abc-123"
        assert error.user_message == "Could not record your task"

    def test_exception_with_cause(self):
        original_error = ValueError("Invalid value")
        error = GamificationError(message="Validation failed", cause=original_error)
        assert error.cause == original_error

    def test_to_dict(self):
        """Test serialization for API responses"""
        error = GamificationError("Test error", request_id="req-1")
        data = error.to_dict()

        assert data["error"] == "GamificationError"
        assert data["message"] == "Test error"
        assert data["request_id"] == "req-1"
        assert "timestamp" in data

    def test_logs_on_creation(self, caplog):
        with caplog.at_level("ERROR", logger="src.exceptions"):
            GamificationError("Logged error", user_id="user-123")
        assert "GamificationError: Logged error" in caplog.text

    def test_caller_errors_log_at_warning(self, caplog):
        with caplog.at_level("WARNING", logger="src.exceptions"):
            ValidationError("must be positive", field="minutes")
            RecordNotFoundError("Habit h-1 not found", record_type="Habit")
            InvariantViolationError("level mismatch")

        levels = [record.levelname for record in caplog.records]
        assert levels == ["WARNING", "WARNING", "ERROR"]


class TestValidationError:
    """Test caller input errors"""

    def test_validation_error(self):
        error = ValidationError("must be positive", field="minutes", value=-5, operation="complete_focus_session")
        assert error.field == "minutes"
        assert error.value == -5
        assert error.context["field"] == "minutes"
        assert error.operation == "complete_focus_session"
        assert "Invalid minutes" in error.user_message

    def test_validation_error_merges_context(self):
        error = ValidationError("bad", field="kind", context={"allowed": ["daily_review"]})
        assert error.context["field"] == "kind"
        assert error.context["allowed"] == ["daily_review"]


class TestRecordErrors:
    """Test not-found and invariant errors"""

    def test_record_not_found(self):
        error = RecordNotFoundError("Task t-1 not found", record_type="Task", record_id="t-1")
        assert error.record_type == "Task"
        assert error.context["record_id"] == "t-1"
        assert error.user_message == "Task not found."

    def test_invariant_violation(self):
        error = InvariantViolationError("xp_total is negative", invariant="xp_non_negative")
        assert error.invariant == "xp_non_negative"
        assert error.context["invariant"] == "xp_non_negative"


class TestDatabaseErrors:
    """Test database exceptions"""

    def test_connection_error(self):
        error = ConnectionError()
        assert "connection failed" in error.message.lower()
        assert "trouble reaching the database" in error.user_message

    def test_database_error_default_message(self):
        error = DatabaseError("write failed")
        assert "couldn't save your progress" in error.user_message

    def test_query_error(self):
        error = QueryError("Insert failed", query="INSERT INTO completions ...")
        assert error.query == "INSERT INTO completions ..."
        assert error.context["query"] == "INSERT INTO completions ..."


class TestConfigurationError:

    def test_configuration_error(self):
        error = ConfigurationError("DATABASE_URL is required", config_key="DATABASE_URL")
        assert error.config_key == "DATABASE_URL"
        assert "misconfigured" in error.user_message


class TestWrapExternalException:
    """Test wrapping of driver exceptions"""

    def test_wrap_generic_exception(self):
        original = RuntimeError("Something broke")
        wrapped = wrap_external_exception(original, operation="save_profile", user_id="user-123")

        assert type(wrapped) is DatabaseError
        assert wrapped.cause is original
        assert wrapped.user_id == "user-123"
        assert "save_profile failed" in wrapped.message

    def test_wrap_psycopg_operational_error(self):
        original = psycopg.OperationalError("Connection refused")
        wrapped = wrap_external_exception(original, operation="get_or_create_profile")

        assert isinstance(wrapped, ConnectionError)
        assert "Connection refused" in wrapped.message

    def test_wrap_psycopg_error(self):
        original = psycopg.Error("duplicate key value")
        wrapped = wrap_external_exception(original, operation="insert_completion", context={"entity_id": "t-1"})

        assert isinstance(wrapped, QueryError)
        assert wrapped.context["entity_id"] == "t-1"


class TestInheritance:
    """Test exception inheritance"""

    def test_all_inherit_from_base(self):
        for error_class in (
            ValidationError, RecordNotFoundError, InvariantViolationError,
            DatabaseError, ConnectionError, QueryError, ConfigurationError,
        ):
            assert issubclass(error_class, GamificationError)

    def test_database_hierarchy(self):
        assert issubclass(ConnectionError, DatabaseError)
        assert issubclass(QueryError, DatabaseError)

    def test_catch_by_base(self):
        with pytest.raises(GamificationError):
            raise RecordNotFoundError("Habit missing", record_type="Habit")
