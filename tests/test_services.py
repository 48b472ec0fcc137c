import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
import httpx

from mapsdk.models import DeliveryRequest
from mapsdk.services import HttpxTransport, TelemetryDeliveryError, new_uuid, validate_uuid


REQUEST = DeliveryRequest(
    url="https://events.example-mapservice.com/events/v2?access_token=pk.test",
    headers={"Content-Type": "text/plain"},
    body='[{"event": "map.load"}]',
)


def mock_async_client(mock_client, response=None, error=None):
    client = AsyncMock()
    if error is not None:
        client.post.side_effect = error
    else:
        client.post.return_value = response
    mock_client.return_value.__aenter__.return_value = client
    return client


async def deliver(transport):
    """Post REQUEST and wait for the completion callback"""
    outcomes = []
    task = transport.post_data(REQUEST, outcomes.append)
    await asyncio.gather(task, return_exceptions=True)
    await asyncio.sleep(0)
    return task, outcomes


def test_new_uuid_is_valid():
    assert validate_uuid(new_uuid())
    assert new_uuid() != new_uuid()


@pytest.mark.parametrize("value,expected", [
    ("0f8b2c4e-3d1a-4b7c-9e2f-1a2b3c4d5e6f", True),
    ("0F8B2C4E-3D1A-4B7C-9E2F-1A2B3C4D5E6F", True),
    ("0f8b2c4e-3d1a-1b7c-9e2f-1a2b3c4d5e6f", False),  # not version 4
    ("0f8b2c4e-3d1a-4b7c-7e2f-1a2b3c4d5e6f", False),  # wrong variant
    ("not-a-uuid", False),
    ("", False),
    (None, False),
])
def test_validate_uuid(value, expected):
    assert validate_uuid(value) is expected


@pytest.mark.asyncio
async def test_post_data_success():
    """Test that a delivered request completes with no error"""
    response = MagicMock()
    response.raise_for_status.return_value = None

    with patch('httpx.AsyncClient') as mock_client:
        client = mock_async_client(mock_client, response=response)

        task, outcomes = await deliver(HttpxTransport(timeout=5))

    assert outcomes == [None]
    client.post.assert_awaited_once_with(
        REQUEST.url,
        content=REQUEST.body,
        headers={"Content-Type": "text/plain"},
    )


@pytest.mark.asyncio
async def test_post_data_http_error():
    response = MagicMock()
    response.raise_for_status.side_effect = httpx.HTTPStatusError(
        "Server error",
        request=httpx.Request("POST", REQUEST.url),
        response=httpx.Response(500),
    )

    with patch('httpx.AsyncClient') as mock_client:
        mock_async_client(mock_client, response=response)

        task, outcomes = await deliver(HttpxTransport())

    assert len(outcomes) == 1
    assert isinstance(outcomes[0], TelemetryDeliveryError)
    assert "HTTP 500" in str(outcomes[0])
    assert "pk.test" not in str(outcomes[0])


@pytest.mark.asyncio
async def test_post_data_request_error():
    with patch('httpx.AsyncClient') as mock_client:
        mock_async_client(mock_client, error=httpx.ConnectError("Connection failed"))

        task, outcomes = await deliver(HttpxTransport())

    assert isinstance(outcomes[0], TelemetryDeliveryError)
    assert "ConnectError" in str(outcomes[0])


@pytest.mark.asyncio
async def test_post_data_cancelled():
    started = asyncio.Event()

    async def never_finishes(*args, **kwargs):
        started.set()
        await asyncio.sleep(3600)

    with patch('httpx.AsyncClient') as mock_client:
        client = mock_async_client(mock_client)
        client.post.side_effect = never_finishes

        outcomes = []
        task = HttpxTransport().post_data(REQUEST, outcomes.append)
        await started.wait()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        await asyncio.sleep(0)

    assert len(outcomes) == 1
    assert isinstance(outcomes[0], TelemetryDeliveryError)


def test_post_data_requires_event_loop():
    with pytest.raises(RuntimeError):
        HttpxTransport().post_data(REQUEST, lambda error: None)
