"""HTTP client for the device-control service."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any
from urllib.parse import quote

import requests  # type: ignore[import-untyped]
from requests import Response, Session

from .config import Settings

API_KEY_HEADER = "X-API-KEY"


class DeviceControlError(RuntimeError):
    """Raised when the device-control service answers with a non-2xx status."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DeviceControlClient:
    """Minimal client for the device-control service's partial-update endpoint."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._session: Session | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> DeviceControlClient:
        return cls(
            settings.device_control_url,
            api_key=settings.device_control_api_key,
            timeout=settings.dispatch_timeout_seconds,
        )

    def establish_connection(self) -> Session:
        """Initialize (or reuse) a requests.Session for the device-control API."""
        if self._session is not None:
            return self._session

        session = requests.Session()
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if self.api_key:
            headers[API_KEY_HEADER] = self.api_key
        session.headers.update(headers)

        self._session = session
        return session

    def request(
        self,
        method: str,
        path: str,
        *,
        json: Any | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> Response:
        """Execute one HTTP request with the configured timeout."""
        session = self.establish_connection()
        url = f"{self.base_url}/{path.lstrip('/')}"

        response = session.request(
            method=method.upper(),
            url=url,
            params=params,
            json=json,
            timeout=self.timeout,
        )

        if not response.ok:
            raise DeviceControlError(
                f"Device control request failed ({response.status_code}): {response.text}",
                status_code=response.status_code,
            )

        return response

    def update_device(self, device_id: str, payload: Mapping[str, Any]) -> Response:
        """Apply a partial state update to one device."""
        return self.request("put", f"/devices/{quote(device_id, safe='')}", json=dict(payload))

    def close(self) -> None:
        """Close the underlying session if it was created."""
        if self._session is not None:
            self._session.close()
            self._session = None


__all__ = ["API_KEY_HEADER", "DeviceControlClient", "DeviceControlError"]
