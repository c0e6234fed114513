"""
HTTP client for the KDS backend, used by the display runtime.

Reads (orders, categories, sound probes) fail fast with ConnectivityError so
the poller can decide how to back off. Mutations (finish, reconnect) retry
with exponential backoff and jitter, and every attempt gets a longer timeout
than the one before it.
"""

import asyncio
import json
import logging
import random
from typing import Any, AsyncIterator, Awaitable, Callable, Optional
from urllib.parse import quote

import httpx

from services.errors import CommandError, ConnectivityError
from services.order_grouping import KitchenTicket

logger = logging.getLogger(__name__)

READ_TIMEOUT_SECONDS = 10.0
MUTATION_ATTEMPTS = 3
MUTATION_BASE_TIMEOUT_SECONDS = 5.0
MUTATION_BASE_DELAY_SECONDS = 0.5


def backoff_delay(attempt: int, base: float = MUTATION_BASE_DELAY_SECONDS) -> float:
    """Delay before retry number `attempt` (1-based): base * 2^(n-1) plus up to `base` of jitter."""
    return base * (2 ** (attempt - 1)) + random.uniform(0, base)


def error_detail(response: httpx.Response) -> str:
    """Best human-readable message from an error response."""
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"

    detail = body.get("detail") if isinstance(body, dict) else None
    if isinstance(detail, str):
        return detail
    if isinstance(detail, dict) and detail.get("message"):
        return str(detail["message"])
    if isinstance(detail, list) and detail:
        # FastAPI validation errors
        return "; ".join(str(item.get("msg", item)) if isinstance(item, dict) else str(item) for item in detail)
    return f"HTTP {response.status_code}"


class KDSApiClient:
    """Client for the KDS backend API."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.transport = transport
        self._sleep = sleep

    def _client(self, timeout: Optional[float] = READ_TIMEOUT_SECONDS) -> httpx.AsyncClient:
        headers = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers=headers,
            transport=self.transport,
        )

    async def _request(self, method: str, path: str, timeout: Optional[float] = READ_TIMEOUT_SECONDS, **kwargs) -> httpx.Response:
        try:
            async with self._client(timeout) as client:
                return await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise ConnectivityError(f"Timed out calling {path}") from e
        except httpx.TransportError as e:
            raise ConnectivityError(f"Could not connect to {self.base_url}: {e}") from e

    async def _read(self, path: str, **kwargs) -> Any:
        response = await self._request("GET", path, **kwargs)
        if response.status_code != 200:
            raise ConnectivityError(f"{path}: {error_detail(response)}")
        return response.json()

    async def _mutate(self, method: str, path: str, **kwargs) -> Any:
        """
        Send a mutation with bounded retries.

        Raises:
            CommandError: the server rejected the request (4xx), no retry
            ConnectivityError: still failing after the last attempt
        """
        last_error = None
        for attempt in range(1, MUTATION_ATTEMPTS + 1):
            timeout = MUTATION_BASE_TIMEOUT_SECONDS * attempt
            try:
                response = await self._request(method, path, timeout=timeout, **kwargs)
            except ConnectivityError as e:
                last_error = e
            else:
                if response.status_code < 400:
                    return response.json() if response.content else {}
                message = error_detail(response)
                if response.status_code < 500:
                    raise CommandError(message, status_code=response.status_code)
                last_error = ConnectivityError(message)

            if attempt < MUTATION_ATTEMPTS:
                delay = backoff_delay(attempt)
                logger.warning(f"{method} {path} failed ({last_error}), retry {attempt}/{MUTATION_ATTEMPTS - 1} in {delay:.2f}s")
                await self._sleep(delay)

        logger.error(f"{method} {path} failed after {MUTATION_ATTEMPTS} attempts: {last_error}")
        raise last_error

    # ========== Auth ==========

    async def login(self, cashier_key: str) -> dict:
        response = await self._request("POST", "/auth/login", json={"password": cashier_key})
        if response.status_code != 200:
            raise CommandError(error_detail(response), status_code=response.status_code)
        data = response.json()
        self.token = data["access_token"]
        logger.info(f"Logged in as {data.get('user', {}).get('name')}")
        return data

    # ========== Orders ==========

    async def get_categories(self) -> list[dict]:
        return await self._read("/api/kds/categories")

    async def get_orders(self, categories: list[int]) -> list[KitchenTicket]:
        """
        Raises:
            ConnectivityError: backend unreachable or the database query failed
        """
        data = await self._read(
            "/api/kds/orders",
            params={"categories": ",".join(str(c) for c in categories)},
        )
        return [KitchenTicket.model_validate(ticket) for ticket in data.get("orders", [])]

    async def finish_order(self, order_number: int) -> dict:
        return await self._mutate("POST", f"/api/kds/orders/{order_number}/finish")

    async def reconnect(self, config: dict) -> dict:
        return await self._mutate("POST", "/api/system/reconnect", json=config)

    # ========== Sounds ==========

    def play_audio_url(self, file_name: str) -> str:
        return f"{self.base_url}/api/audio/play-audio?fileName={quote(file_name)}"

    async def check_audio(self, file_name: str) -> bool:
        data = await self._read("/api/audio/check-audio", params={"fileName": file_name})
        return bool(data.get("exists"))

    async def upload_audio(self, file_name: str, content: bytes) -> dict:
        return await self._mutate(
            "POST",
            "/api/audio/save-audio",
            data={"fileName": file_name},
            files={"file": (file_name, content, "audio/mpeg")},
        )

    async def delete_audio(self, file_name: str) -> dict:
        return await self._mutate("DELETE", "/api/audio", params={"fileName": file_name})

    # ========== Events ==========

    async def stream_events(self) -> AsyncIterator[dict]:
        """
        Yield server-sent KDS events until the connection drops.

        Raises:
            ConnectivityError: the stream could not be opened or was cut
        """
        try:
            async with self._client(timeout=None) as client:
                async with client.stream("GET", "/api/kds/events") as response:
                    if response.status_code != 200:
                        raise ConnectivityError(f"Event stream refused: HTTP {response.status_code}")
                    async for line in response.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        try:
                            yield json.loads(line[5:].strip())
                        except ValueError:
                            logger.debug(f"Ignoring malformed event line: {line!r}")
        except httpx.TransportError as e:
            raise ConnectivityError(f"Event stream lost: {e}") from e
