from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import pytest
import requests

from lightsched.device_control import DeviceControlClient
from lightsched.dispatcher import Dispatcher, build_device_update
from lightsched.errors import ValidationError
from lightsched.schemas import (
    SetBrightnessAction,
    SetColorAction,
    TurnOffAction,
    TurnOnAction,
)

FIRED_AT = datetime(2025, 6, 2, 11, 0, tzinfo=UTC)


@dataclass
class DummyResponse:
    ok: bool
    status_code: int = 200
    text: str = "OK"


class DummySession:
    def __init__(self, response: DummyResponse | None = None, error: Exception | None = None) -> None:
        self._response = response or DummyResponse(ok=True)
        self._error = error
        self.headers: dict[str, str] = {}
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    def request(self, **kwargs: Any) -> DummyResponse:
        self.calls.append(kwargs)
        if self._error is not None:
            raise self._error
        return self._response

    def close(self) -> None:
        self.closed = True


def _dispatcher(monkeypatch, session: DummySession) -> Dispatcher:
    monkeypatch.setattr("lightsched.device_control.requests.Session", lambda: session)
    client = DeviceControlClient("http://devices.local", timeout=3)
    return Dispatcher(client)


@pytest.mark.parametrize(
    ("action", "expected"),
    [
        (TurnOnAction(target_device_id="lamp-1"), {"status": {"isOn": True}}),
        (TurnOffAction(target_device_id="lamp-1"), {"status": {"isOn": False}}),
        (
            SetBrightnessAction(target_device_id="lamp-1", value=40),
            {"status": {"brightness": 40}},
        ),
        (SetColorAction(target_device_id="lamp-1", value=75), {"status": {"color": 75}}),
    ],
)
def test_build_device_update(action, expected):
    assert build_device_update(action) == expected


def test_build_device_update_rechecks_value_range():
    # model_construct skips validation, as an out-of-band edit would.
    action = SetBrightnessAction.model_construct(
        target_device_id="lamp-1", command="setBrightness", value=150
    )
    with pytest.raises(ValidationError) as excinfo:
        build_device_update(action)
    assert excinfo.value.field == "action.value"


def test_build_device_update_requires_value():
    action = SetColorAction.model_construct(target_device_id="lamp-1", command="setColor")
    with pytest.raises(ValidationError) as excinfo:
        build_device_update(action)
    assert excinfo.value.field == "action.value"


@pytest.mark.asyncio
async def test_dispatch_issues_single_put(monkeypatch):
    session = DummySession()
    dispatcher = _dispatcher(monkeypatch, session)

    result = await dispatcher.dispatch(
        "s1", SetBrightnessAction(target_device_id="lamp 1", value=30), fired_at=FIRED_AT
    )

    assert result.status == "success"
    assert result.fired_at == FIRED_AT
    assert session.calls == [
        {
            "method": "PUT",
            "url": "http://devices.local/devices/lamp%201",
            "params": None,
            "json": {"status": {"brightness": 30}},
            "timeout": 3,
        }
    ]


@pytest.mark.asyncio
async def test_dispatch_failure_is_reported_not_retried(monkeypatch, log_messages):
    session = DummySession(DummyResponse(ok=False, status_code=503, text="busy"))
    dispatcher = _dispatcher(monkeypatch, session)

    result = await dispatcher.dispatch(
        "s1", TurnOnAction(target_device_id="lamp-1"), fired_at=FIRED_AT
    )

    assert result.status == "failure"
    assert result.status_code == 503
    assert len(session.calls) == 1
    assert any("Dispatch for schedule 's1' failed" in message for message in log_messages)


@pytest.mark.asyncio
async def test_dispatch_network_error_is_reported(monkeypatch):
    session = DummySession(error=requests.ConnectionError("refused"))
    dispatcher = _dispatcher(monkeypatch, session)

    result = await dispatcher.dispatch(
        "s1", TurnOffAction(target_device_id="lamp-1"), fired_at=FIRED_AT
    )

    assert result.status == "failure"
    assert result.status_code is None
    assert "ConnectionError" in (result.detail or "")
    assert len(session.calls) == 1


@pytest.mark.asyncio
async def test_dispatch_invalid_action_never_reaches_device(monkeypatch):
    session = DummySession()
    dispatcher = _dispatcher(monkeypatch, session)
    action = SetColorAction.model_construct(
        target_device_id="lamp-1", command="setColor", value=-1
    )

    result = await dispatcher.dispatch("s1", action, fired_at=FIRED_AT)

    assert result.status == "failure"
    assert session.calls == []
