"""Error taxonomy shared by the schedule lifecycle components."""

from __future__ import annotations


class SchedulerError(RuntimeError):
    """Base class for errors raised by the scheduling service."""


class ValidationError(SchedulerError, ValueError):
    """Raised when a schedule definition or action is malformed."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field

    def to_detail(self) -> dict[str, str | None]:
        return {"field": self.field, "message": str(self)}


class InvalidExpressionError(ValidationError):
    """Raised when a cron expression cannot be parsed or never matches."""

    def __init__(self, expression: str, reason: str, *, field: str) -> None:
        super().__init__(
            f"Invalid cron expression {expression!r} ({field}): {reason}",
            field=field,
        )
        self.expression = expression
        self.reason = reason


class InvalidTimezoneError(ValidationError):
    """Raised when a timezone name is not a known IANA zone."""

    def __init__(self, timezone: str) -> None:
        super().__init__(f"Unknown timezone {timezone!r}", field="timezone")
        self.timezone = timezone


class NotFoundError(SchedulerError, LookupError):
    """Raised when a mutation addresses an unknown schedule id."""

    def __init__(self, schedule_id: str) -> None:
        super().__init__(f"Schedule {schedule_id!r} not found.")
        self.schedule_id = schedule_id


class DispatchError(SchedulerError):
    """Describes a failed actuation; logged by the dispatcher, never surfaced to API callers."""

    def __init__(self, schedule_id: str, cause: str) -> None:
        super().__init__(f"Dispatch for schedule {schedule_id!r} failed: {cause}")
        self.schedule_id = schedule_id
        self.cause = cause


class StoreUnavailableError(SchedulerError):
    """Raised when the durable schedule store cannot be reached."""


__all__ = [
    "SchedulerError",
    "ValidationError",
    "InvalidExpressionError",
    "InvalidTimezoneError",
    "NotFoundError",
    "DispatchError",
    "StoreUnavailableError",
]
