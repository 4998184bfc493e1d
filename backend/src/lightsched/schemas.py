"""Pydantic models for schedule definitions and the HTTP surface."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


def _to_camel(string: str) -> str:
    first, *rest = string.split("_")
    return first + "".join(word.capitalize() for word in rest)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=_to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Actions
#
# The four supported commands form a closed tagged union discriminated on
# ``command``.  Value-bearing commands carry a required 0-100 value.


class _DeviceAction(CamelModel):
    target_device_id: str = Field(..., min_length=1, max_length=255)


class TurnOnAction(_DeviceAction):
    command: Literal["turnOn"] = "turnOn"


class TurnOffAction(_DeviceAction):
    command: Literal["turnOff"] = "turnOff"


class SetBrightnessAction(_DeviceAction):
    command: Literal["setBrightness"] = "setBrightness"
    value: int = Field(..., ge=0, le=100)


class SetColorAction(_DeviceAction):
    command: Literal["setColor"] = "setColor"
    value: int = Field(..., ge=0, le=100)


ScheduleAction = Annotated[
    Union[TurnOnAction, TurnOffAction, SetBrightnessAction, SetColorAction],
    Field(discriminator="command"),
]

ACTION_COMMANDS: tuple[str, ...] = ("turnOn", "turnOff", "setBrightness", "setColor")


# ---------------------------------------------------------------------------
# Schedules


class ScheduleDefinition(CamelModel):
    """A persisted schedule rule."""

    id: str
    name: str = Field(..., min_length=1, max_length=255)
    cron_expression: str
    timezone: str = "UTC"
    action: ScheduleAction
    is_active: bool = True
    version: int = Field(default=1, ge=1)
    created_at: datetime
    updated_at: datetime


class ScheduleCreateRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=255)
    cron_expression: str = Field(..., min_length=1, max_length=255)
    timezone: str | None = None
    action: ScheduleAction
    is_active: bool = True


class ScheduleUpdateRequest(CamelModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    cron_expression: str | None = Field(default=None, min_length=1, max_length=255)
    timezone: str | None = None
    action: ScheduleAction | None = None
    is_active: bool | None = None


class ScheduleListResponse(CamelModel):
    schedules: list[ScheduleDefinition]


# ---------------------------------------------------------------------------
# Runtime diagnostics


class FireResult(CamelModel):
    status: Literal["success", "failure"]
    fired_at: datetime
    detail: str | None = None
    status_code: int | None = None


class TriggerStatus(CamelModel):
    schedule_id: str
    name: str
    cron_expression: str
    timezone: str
    version: int
    next_fire_at: datetime | None = None
    in_flight: int = 0
    last_fire_result: FireResult | None = None


class TriggerListResponse(CamelModel):
    triggers: list[TriggerStatus]


class ReconcileReportResponse(CamelModel):
    applied: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)


class HealthResponse(CamelModel):
    status: Literal["ok", "degraded"]
    triggers: int = Field(..., ge=0)
    schedules: int | None = None
