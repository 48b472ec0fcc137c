import asyncio
import re
import uuid
from typing import Callable, Optional, Protocol

import httpx

from mapsdk.config import settings
from mapsdk.models import DeliveryRequest

DeliveryCallback = Callable[[Optional[Exception]], None]

_uuid_re = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE
)


class TelemetryDeliveryError(RuntimeError):
    """Raised when a telemetry request could not be delivered

    Kept separate from locator errors: delivery failures are absorbed by the
    telemetry queue and never reach SDK callers.
    """


class Cancelable(Protocol):
    def cancel(self) -> bool: ...


class Transport(Protocol):
    """Posts telemetry requests

    ``callback`` is invoked exactly once with ``None`` on success or the error
    otherwise, and never before ``post_data`` has returned.
    """

    def post_data(self, request: DeliveryRequest, callback: DeliveryCallback) -> Cancelable: ...


def new_uuid() -> str:
    return str(uuid.uuid4())


def validate_uuid(value: Optional[str]) -> bool:
    """True when value looks like a random (v4) UUID"""
    return bool(value) and bool(_uuid_re.match(value))


class HttpxTransport:
    """Delivers telemetry with httpx on the running event loop"""

    def __init__(self, timeout: Optional[float] = None) -> None:
        self.timeout = httpx.Timeout(timeout or settings.http_client_timeout)

    def post_data(self, request: DeliveryRequest, callback: DeliveryCallback) -> asyncio.Task:
        """
        Schedule the POST and return its task as the cancelable handle

        Must be called with an event loop running.
        """
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._post(request))
        task.add_done_callback(lambda done: callback(self._task_error(done)))
        return task

    async def _post(self, request: DeliveryRequest) -> None:
        client_headers = {"User-Agent": f"{settings.sdk_identifier}/{settings.sdk_version}"}

        async with httpx.AsyncClient(headers=client_headers, timeout=self.timeout) as client:
            try:
                response = await client.post(request.url, content=request.body, headers=request.headers)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                # The locator carries the access token, so keep it out of the message
                raise TelemetryDeliveryError(f"Telemetry endpoint returned HTTP {exc.response.status_code}") from exc
            except httpx.RequestError as exc:
                raise TelemetryDeliveryError(f"Error posting telemetry: {exc.__class__.__name__}") from exc

    @staticmethod
    def _task_error(task: asyncio.Task) -> Optional[Exception]:
        if task.cancelled():
            return TelemetryDeliveryError("Telemetry request was cancelled")
        return task.exception()
