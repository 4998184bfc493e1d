"""Translate fired schedule actions into device-control requests."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Any, Protocol

import requests  # type: ignore[import-untyped]

from .device_control import DeviceControlClient, DeviceControlError
from .errors import DispatchError, ValidationError
from .schemas import (
    FireResult,
    ScheduleAction,
    SetBrightnessAction,
    SetColorAction,
    TurnOffAction,
    TurnOnAction,
)
from .utils import logger

VALUE_RANGE = (0, 100)


def _checked_value(action: SetBrightnessAction | SetColorAction) -> int:
    value = getattr(action, "value", None)
    if value is None:
        raise ValidationError(f"{action.command} requires a value.", field="action.value")
    low, high = VALUE_RANGE
    if not low <= value <= high:
        raise ValidationError(
            f"{action.command} value {value} is outside {low}-{high}.",
            field="action.value",
        )
    return value


def build_device_update(action: ScheduleAction) -> dict[str, Any]:
    """Return the partial device update for an action.

    Models are validated on construction, but records can be edited out of
    band, so the value range is checked again here.

    Raises:
        ValidationError: If the action is unknown or its value is missing or out of range.
    """
    if not getattr(action, "target_device_id", None):
        raise ValidationError("Action requires a target device.", field="action.targetDeviceId")
    if isinstance(action, TurnOnAction):
        status: dict[str, Any] = {"isOn": True}
    elif isinstance(action, TurnOffAction):
        status = {"isOn": False}
    elif isinstance(action, SetBrightnessAction):
        status = {"brightness": _checked_value(action)}
    elif isinstance(action, SetColorAction):
        status = {"color": _checked_value(action)}
    else:
        raise ValidationError(
            f"Unsupported action command {getattr(action, 'command', None)!r}.",
            field="action.command",
        )
    return {"status": status}


class ActionDispatcher(Protocol):
    async def dispatch(
        self, schedule_id: str, action: ScheduleAction, *, fired_at: datetime
    ) -> FireResult:
        ...


class Dispatcher:
    """Issues exactly one actuation request per fire; failures are logged, never retried."""

    def __init__(self, client: DeviceControlClient) -> None:
        self._client = client

    async def dispatch(
        self,
        schedule_id: str,
        action: ScheduleAction,
        *,
        fired_at: datetime | None = None,
    ) -> FireResult:
        fired_at = fired_at or datetime.now(UTC)
        log = logger.bind(
            schedule_id=schedule_id,
            command=getattr(action, "command", None),
            device_id=getattr(action, "target_device_id", None),
            fire_at=fired_at.isoformat(),
        )
        try:
            payload = build_device_update(action)
            await asyncio.to_thread(
                self._client.update_device, action.target_device_id, payload
            )
        except DeviceControlError as exc:
            return self._failure(log, schedule_id, fired_at, str(exc), exc.status_code)
        except requests.RequestException as exc:
            return self._failure(log, schedule_id, fired_at, f"{type(exc).__name__}: {exc}")
        except ValidationError as exc:
            return self._failure(log, schedule_id, fired_at, str(exc))

        log.info("Schedule action dispatched")
        return FireResult(status="success", fired_at=fired_at)

    @staticmethod
    def _failure(
        log: Any,
        schedule_id: str,
        fired_at: datetime,
        cause: str,
        status_code: int | None = None,
    ) -> FireResult:
        error = DispatchError(schedule_id, cause)
        log.bind(cause=cause, status_code=status_code).error("{}", error)
        return FireResult(
            status="failure",
            fired_at=fired_at,
            detail=cause,
            status_code=status_code,
        )


__all__ = ["ActionDispatcher", "Dispatcher", "build_device_update"]
