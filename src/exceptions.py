"""
Exception hierarchy for the gamification core

Every error carries a request id, a UTC timestamp, the user and operation it
happened in, structured context, and a message safe to show the user. Errors
log themselves when raised: caller mistakes (bad input, missing records) at
WARNING, everything else at ERROR.
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any
from uuid import uuid4
import logging

logger = logging.getLogger(__name__)


class GamificationError(Exception):
    """
    Base exception for the gamification core

    Example:
        raise GamificationError(
            message="Failed to award XP",
            user_id="user-123",
            operation="complete_task",
            context={"task_id": "abc-123"}
        )
    """

    log_level = logging.ERROR
    default_user_message = "Something went wrong while updating your progress. Please try again."

    def __init__(
        self,
        message: str,
        user_id: Optional[str] = None,
        request_id: Optional[str] = None,
        operation: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.user_id = user_id
        self.request_id = request_id or str(uuid4())
        self.operation = operation
        self.context = context or {}
        self.cause = cause
        self.user_message = user_message or self.default_user_message
        self.timestamp = datetime.now(timezone.utc)

        self._log_error()

    def _log_error(self) -> None:
        log_data = {
            "error_type": self.__class__.__name__,
            "error_message": self.message,  # 'message' is reserved on LogRecord
            "request_id": self.request_id,
            "user_id": self.user_id,
            "operation": self.operation,
            "error_context": self.context,
            "timestamp": self.timestamp.isoformat()
        }
        if self.cause:
            log_data["cause"] = str(self.cause)

        logger.log(
            self.log_level,
            f"{self.__class__.__name__}: {self.message}",
            extra=log_data,
            exc_info=self.cause if self.cause else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for the route layer's error response"""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "user_message": self.user_message,
            "request_id": self.request_id,
            "operation": self.operation,
            "timestamp": self.timestamp.isoformat()
        }


def _merged_context(base: Dict[str, Any], kwargs: Dict[str, Any]) -> Dict[str, Any]:
    return {**base, **(kwargs.pop("context", None) or {})}


# ==========================================
# Caller errors (expected, logged at WARNING)
# ==========================================

class ValidationError(GamificationError):
    """
    Input the engines refuse

    Examples:
    - Non-positive base XP or counter increment
    - Focus session shorter than a minute
    - Daily planning with fewer than 3 tasks
    - Completion dated in the future
    """

    log_level = logging.WARNING

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        **kwargs
    ):
        self.field = field
        self.value = value
        super().__init__(
            message=message,
            user_message=f"Invalid {field}: {message}" if field else message,
            context=_merged_context({"field": field, "value": value}, kwargs),
            **kwargs
        )


class RecordNotFoundError(GamificationError):
    """
    Task, habit, schedule block or template that does not exist or belongs
    to another user. The route layer answers with a 404.
    """

    log_level = logging.WARNING

    def __init__(
        self,
        message: str,
        record_type: Optional[str] = None,
        record_id: Optional[str] = None,
        **kwargs
    ):
        self.record_type = record_type
        self.record_id = record_id
        super().__init__(
            message=message,
            user_message=f"{record_type or 'Record'} not found.",
            context=_merged_context({"record_type": record_type, "record_id": record_id}, kwargs),
            **kwargs
        )


# ==========================================
# Internal errors
# ==========================================

class InvariantViolationError(GamificationError):
    """
    A state the engines must never produce: negative XP total, level out of
    step with XP, tier timestamps out of order, longest streak below the
    current one. Always a bug, never the caller's fault.
    """

    def __init__(
        self,
        message: str,
        invariant: Optional[str] = None,
        **kwargs
    ):
        self.invariant = invariant
        super().__init__(
            message=message,
            context=_merged_context({"invariant": invariant}, kwargs),
            **kwargs
        )


class DatabaseError(GamificationError):
    """Persistence failure; always propagated to the caller"""

    default_user_message = "We couldn't save your progress. Please try again."


class ConnectionError(DatabaseError):
    """Pool not ready or server unreachable"""

    default_user_message = "We're having trouble reaching the database. Please try again in a moment."

    def __init__(self, message: str = "Database connection failed", **kwargs):
        super().__init__(message=message, **kwargs)


class QueryError(DatabaseError):
    """A statement failed (constraint, syntax, missing table)"""

    def __init__(
        self,
        message: str,
        query: Optional[str] = None,
        **kwargs
    ):
        self.query = query
        super().__init__(
            message=message,
            context=_merged_context({"query": query}, kwargs),
            **kwargs
        )


class ConfigurationError(GamificationError):
    """Missing or inconsistent settings, raised by validate_config() at startup"""

    default_user_message = "The service is misconfigured. Please contact support."

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        self.config_key = config_key
        super().__init__(
            message=message,
            context=_merged_context({"config_key": config_key}, kwargs),
            **kwargs
        )


# ==========================================
# Driver errors
# ==========================================

def wrap_external_exception(
    error: Exception,
    operation: str,
    user_id: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None
) -> GamificationError:
    """
    Translate a driver exception into the hierarchy above

    psycopg.OperationalError -> ConnectionError, any other psycopg.Error ->
    QueryError, anything else -> DatabaseError.

    Example:
        try:
            await cur.execute(query, params)
        except psycopg.Error as e:
            raise wrap_external_exception(e, operation="insert_completion", user_id=user_id) from e
    """
    # Imported lazily so the engines run without a database driver
    import psycopg

    if isinstance(error, psycopg.OperationalError):
        error_class, message = ConnectionError, f"Database connection failed: {error}"
    elif isinstance(error, psycopg.Error):
        error_class, message = QueryError, f"Database query failed: {error}"
    else:
        error_class, message = DatabaseError, f"{operation} failed: {error}"

    return error_class(
        message=message,
        user_id=user_id,
        operation=operation,
        context=context,
        cause=error
    )
