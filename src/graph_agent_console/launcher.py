from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from loguru import logger

_TIMEOUT_SECONDS = 30
_EXECUTE_PATH = "/api/process/execute"


class ProcessStartError(RuntimeError):
    """The backend refused or failed to start an operation. The message is fit for display."""


@dataclass(frozen=True)
class LaunchResult:
    success: bool
    process_id: str | None = None
    error: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> LaunchResult:
        if not isinstance(payload, dict):
            return cls(success=False, error="Backend returned an unexpected response")
        data = payload.get("data") or {}
        process_id = data.get("id") if isinstance(data, dict) else None
        success = bool(payload.get("success")) and bool(process_id)
        error = payload.get("error")
        if not success and not error:
            error = "Backend did not return a process id"
        return cls(
            success=success,
            process_id=str(process_id) if process_id else None,
            error=str(error) if error else None,
        )


class ProcessLauncher(Protocol):
    async def start(self, operation: str, args: list[str]) -> LaunchResult: ...


class HttpProcessLauncher:
    def __init__(
        self,
        base_url: str,
        *,
        api_token: str | None = None,
        timeout: float = _TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._headers = {"Accept": "application/json"}
        if api_token:
            self._headers["Authorization"] = f"Bearer {api_token}"

    async def start(self, operation: str, args: list[str]) -> LaunchResult:
        url = f"{self._base_url}{_EXECUTE_PATH}"
        logger.debug(f"Starting operation {operation!r} via {url}")
        try:
            async with httpx.AsyncClient(
                headers=self._headers,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.post(url, json={"command": operation, "args": args})
        except httpx.TimeoutException:
            return LaunchResult(success=False, error=f"Backend did not respond within {self._timeout:.0f} seconds")
        except httpx.HTTPError as ex:
            return LaunchResult(success=False, error=f"Could not reach backend: {ex}")

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.status_code >= 400:
            detail = payload.get("error") if isinstance(payload, dict) else None
            return LaunchResult(
                success=False,
                error=detail or f"Backend returned HTTP {response.status_code}",
            )

        result = LaunchResult.from_payload(payload)
        if result.success:
            logger.info(f"Operation {operation!r} started as process {result.process_id}")
        else:
            logger.warning(f"Operation {operation!r} failed to start: {result.error}")
        return result
