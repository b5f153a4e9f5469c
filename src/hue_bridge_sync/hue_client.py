from __future__ import annotations

import asyncio
import json
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator

import httpx


logger = logging.getLogger("hue_bridge_sync.hue_client")

EVENTSTREAM_PATH = "/eventstream/clip/v2"

_TRANSPORT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.ReadTimeout, httpx.NetworkError)


class HueTransportError(Exception):
    pass


class HueUpstreamError(Exception):
    def __init__(self, *, status_code: int, body: Any) -> None:
        super().__init__(f"Hue upstream error: {status_code}")
        self.status_code = status_code
        self.body = body


@dataclass(frozen=True)
class BridgeResponse:
    """Raw reply from the bridge; `status_code` is None when no HTTP exchange happened."""

    status_code: int | None
    body: Any = None
    is_json: bool = False
    error: str | None = None

    @classmethod
    def unreachable(cls, error: str) -> "BridgeResponse":
        return cls(status_code=None, body=None, is_json=False, error=error)


class FrameKind(str, Enum):
    START = "start"
    DATA = "data"


@dataclass(frozen=True)
class StreamFrame:
    kind: FrameKind
    payload: Any = None


class HueClient:
    def __init__(
        self,
        *,
        bridge_host: str | None,
        application_key: str | None,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._bridge_host = bridge_host
        self._application_key = application_key
        self._timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def bridge_host(self) -> str | None:
        return self._bridge_host

    @property
    def application_key(self) -> str | None:
        return self._application_key

    def v1_path(self, suffix: str) -> str:
        if not self._application_key:
            raise HueTransportError("application_key not configured")
        return f"/api/{self._application_key}/{suffix.lstrip('/')}"

    def _base_url(self) -> str:
        if not self._bridge_host:
            raise HueTransportError("bridge_host not configured")
        return f"https://{self._bridge_host}"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client:
            return self._client
        headers = {}
        if self._application_key:
            headers["hue-application-key"] = self._application_key
        # The bridge serves a self-signed certificate.
        self._client = httpx.AsyncClient(
            base_url=self._base_url(),
            verify=False,
            timeout=httpx.Timeout(self._timeout_seconds),
            headers=headers,
            transport=self._transport,
        )
        return self._client

    async def request_jsonish(
        self,
        *,
        method: str,
        path: str,
        json_body: Any | None = None,
        retry: bool = False,
        max_attempts: int = 3,
        base_delay_ms: int = 200,
    ) -> BridgeResponse:
        """Perform one request and return the raw reply without judging its status.

        Raises HueTransportError when no HTTP exchange could be completed. `retry`
        is meant for idempotent reads only; commands are sent exactly once.
        """
        client = await self._get_client()
        attempts = max_attempts if retry else 1

        for attempt in range(1, attempts + 1):
            try:
                resp = await client.request(method, path, json=json_body)
            except _TRANSPORT_ERRORS as exc:
                if attempt == attempts:
                    raise HueTransportError(str(exc)) from exc
                await self._sleep_backoff(attempt=attempt, base_delay_ms=base_delay_ms)
                continue

            should_retry = retry and (resp.status_code == 429 or 500 <= resp.status_code <= 599)
            if should_retry and attempt < attempts:
                logger.debug("%s %s -> %s, retrying", method, path, resp.status_code)
                await self._sleep_backoff(attempt=attempt, base_delay_ms=base_delay_ms)
                continue
            return _to_bridge_response(resp)

        raise HueTransportError("request failed")

    async def _sleep_backoff(self, *, attempt: int, base_delay_ms: int) -> None:
        # Exponential backoff with jitter.
        delay = (base_delay_ms / 1000.0) * (2 ** (attempt - 1))
        delay = delay * (0.5 + random.random())
        await asyncio.sleep(min(delay, 5.0))

    async def get_v1(
        self, suffix: str, *, retry: bool = False, max_attempts: int = 3, base_delay_ms: int = 200
    ) -> BridgeResponse:
        return await self.request_jsonish(
            method="GET",
            path=self.v1_path(suffix),
            retry=retry,
            max_attempts=max_attempts,
            base_delay_ms=base_delay_ms,
        )

    async def put_v1(self, suffix: str, *, json_body: Any) -> BridgeResponse:
        return await self.request_jsonish(method="PUT", path=self.v1_path(suffix), json_body=json_body)

    async def stream_sse_frames(self, path: str = EVENTSTREAM_PATH) -> AsyncIterator[StreamFrame]:
        """Yield a START frame once the stream is accepted, then one DATA frame per event block."""
        client = await self._get_client()
        headers = {"Accept": "text/event-stream"}
        try:
            async with client.stream("GET", path, headers=headers, timeout=httpx.Timeout(None, connect=self._timeout_seconds)) as resp:
                if resp.status_code >= 400:
                    body = await resp.aread()
                    raise HueUpstreamError(status_code=resp.status_code, body=body.decode("utf-8", "ignore"))

                yield StreamFrame(kind=FrameKind.START)

                data_lines: list[str] = []
                async for line in resp.aiter_lines():
                    if line == "":
                        if data_lines:
                            payload = "\n".join(data_lines)
                            data_lines = []
                            try:
                                parsed = json.loads(payload)
                            except ValueError:
                                logger.warning("Dropping undecodable eventstream block (%d bytes)", len(payload))
                                continue
                            yield StreamFrame(kind=FrameKind.DATA, payload=parsed)
                        continue
                    if line.startswith("data:"):
                        data_lines.append(line[len("data:") :].lstrip())
        except _TRANSPORT_ERRORS as exc:
            raise HueTransportError(str(exc)) from exc


def _to_bridge_response(resp: httpx.Response) -> BridgeResponse:
    body: Any = None
    is_json = False
    if resp.content:
        try:
            body = resp.json()
            is_json = True
        except ValueError:
            body = resp.text
    return BridgeResponse(status_code=resp.status_code, body=body, is_json=is_json)
