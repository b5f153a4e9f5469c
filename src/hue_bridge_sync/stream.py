from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from hue_bridge_sync.hue_client import FrameKind, HueClient, HueTransportError, HueUpstreamError, StreamFrame


logger = logging.getLogger("hue_bridge_sync.stream")


class StreamState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class BackoffState:
    base: float = 3.0
    maximum: float = 900.0
    current: float | None = None

    def next_delay(self) -> float:
        """Delay to wait before the next attempt; each call doubles the following one."""
        delay = self.base if self.current is None else self.current
        delay = min(delay, self.maximum)
        self.current = min(delay * 2, self.maximum)
        return delay

    def reset(self) -> None:
        self.current = None

    @property
    def pending_delay(self) -> float:
        return min(self.base if self.current is None else self.current, self.maximum)


class LoopScheduler:
    """Timers on the running asyncio loop; handles expose `cancel()`."""

    def call_later(self, delay: float, callback: Callable[[], Any]) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


class StreamSession:
    """Owns the eventstream connection for one bridge.

    A close is only believed once it outlasts the grace period; the bridge tends
    to drop and reopen the stream in quick succession. Confirmed disconnects are
    retried with exponential backoff until `disconnect()` is called.
    """

    def __init__(
        self,
        *,
        hue: HueClient,
        on_frame: Callable[[StreamFrame], Awaitable[None]],
        on_health_changed: Callable[[bool], None] | None = None,
        push_enabled: bool = True,
        grace_seconds: float = 8.0,
        backoff: BackoffState | None = None,
        scheduler: Any | None = None,
    ) -> None:
        self._hue = hue
        self._on_frame = on_frame
        self._on_health_changed = on_health_changed
        self.push_enabled = push_enabled
        self.grace_seconds = grace_seconds
        self.backoff = backoff or BackoffState()
        self._scheduler = scheduler or LoopScheduler()

        self.state = StreamState.DISCONNECTED
        self._generation = 0
        self._task: asyncio.Task | None = None
        self._grace_timer: Any | None = None
        self._reconnect_timer: Any | None = None
        self._reopen_timer: Any | None = None
        self._reported_active: bool | None = None
        self._terminated = False

    @property
    def push_active(self) -> bool:
        return bool(self._reported_active)

    @property
    def terminated(self) -> bool:
        return self._terminated

    def connect(self) -> None:
        if not self.push_enabled:
            logger.info("Event stream disabled; not connecting")
            return
        self._terminated = False
        self._cancel_timer("_reconnect_timer")
        self._cancel_timer("_reopen_timer")
        self._generation += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self.state = StreamState.CONNECTING
        logger.info("Connecting to bridge eventstream")
        self._task = asyncio.create_task(self._consume(self._generation))

    async def _consume(self, generation: int) -> None:
        try:
            async for frame in self._hue.stream_sse_frames():
                if generation != self._generation:
                    return
                await self.frame_received(frame)
        except (HueTransportError, HueUpstreamError) as exc:
            logger.warning("Eventstream error: %s", exc)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Eventstream consumer failed")
        if generation == self._generation and not self._terminated:
            self.closed()

    async def frame_received(self, frame: StreamFrame) -> None:
        if self._terminated:
            return
        if frame.kind is FrameKind.START:
            self._mark_connected()
            self.backoff.reset()
            logger.info("Eventstream connected")
            return
        try:
            await self._on_frame(frame)
        except Exception:
            # A failing consumer must not take down a healthy stream.
            logger.exception("Failed to process eventstream frame")
        # Data proves the stream is alive even if a close notice was seen.
        self._mark_connected()

    def closed(self) -> None:
        if self._terminated:
            return
        if self._grace_timer is not None:
            return
        logger.debug("Eventstream closed; waiting %.0fs before declaring it down", self.grace_seconds)
        self._grace_timer = self._scheduler.call_later(self.grace_seconds, self._grace_expired)
        if self.state is StreamState.CONNECTED:
            self._reopen_timer = self._scheduler.call_later(0, self._reopen)

    def reconnect(self) -> None:
        self._reconnect_timer = None
        if self._terminated or not self.push_enabled:
            return
        if self.state in (StreamState.CONNECTED, StreamState.CONNECTING):
            return
        self.connect()

    def disconnect(self) -> None:
        self._terminated = True
        self._generation += 1
        self._cancel_timer("_grace_timer")
        self._cancel_timer("_reconnect_timer")
        self._cancel_timer("_reopen_timer")
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self.state = StreamState.DISCONNECTED
        self._report(False)
        logger.info("Eventstream closed permanently")

    async def aclose(self) -> None:
        task = self._task
        self.disconnect()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _reopen(self) -> None:
        self._reopen_timer = None
        if self._terminated or self._grace_timer is None:
            return
        self.connect()

    def _grace_expired(self) -> None:
        self._grace_timer = None
        if self._terminated:
            return
        self.state = StreamState.DISCONNECTED
        delay = self.backoff.next_delay()
        logger.warning("Eventstream disconnected; reconnecting in %.0fs", delay)
        self._reconnect_timer = self._scheduler.call_later(delay, self.reconnect)
        self._report(False)

    def _mark_connected(self) -> None:
        self._cancel_timer("_grace_timer")
        self._cancel_timer("_reopen_timer")
        self.state = StreamState.CONNECTED
        self._report(True)

    def _report(self, active: bool) -> None:
        if self._reported_active is None and not active:
            self._reported_active = False
            return
        if self._reported_active == active:
            return
        self._reported_active = active
        if self._on_health_changed is not None:
            self._on_health_changed(active)

    def _cancel_timer(self, attr: str) -> None:
        timer = getattr(self, attr)
        if timer is not None:
            timer.cancel()
            setattr(self, attr, None)
