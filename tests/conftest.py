from dataclasses import dataclass, field
from typing import Any, Callable

import pytest

from hue_bridge_sync.config import AppConfig


@pytest.fixture
def config() -> AppConfig:
    return AppConfig(
        port=8000,
        bridge_host="bridge.test",
        application_key="abc",
        use_event_stream=False,
        auth_tokens=["dev-token"],
        db_path=":memory:",
        hi_rez_hue=False,
        xy_parsing_mode="hs",
        command_event_mode="confirmed",
        stream_grace_seconds=8.0,
        stream_backoff_base_seconds=3.0,
        stream_backoff_max_seconds=900.0,
        request_timeout_seconds=15.0,
        poll_interval_seconds=0,
        rediscovery_cooldown_seconds=300.0,
        retry_max_attempts=3,
        retry_base_delay_ms=1,
        auto_register_devices=True,
        log_level="INFO",
    )


@dataclass
class FakeTimer:
    when: float
    delay: float
    callback: Callable[[], Any]
    cancelled: bool = False
    fired: bool = False

    def cancel(self) -> None:
        self.cancelled = True


@dataclass
class FakeScheduler:
    """Manual clock for timer-driven code; `advance` fires due callbacks in order.

    `timers` keeps every timer ever scheduled so tests can inspect past delays.
    """

    now: float = 0.0
    timers: list[FakeTimer] = field(default_factory=list)

    def call_later(self, delay: float, callback: Callable[[], Any]) -> FakeTimer:
        timer = FakeTimer(when=self.now + delay, delay=delay, callback=callback)
        self.timers.append(timer)
        return timer

    def pending(self) -> list[FakeTimer]:
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [t for t in self.pending() if t.when <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.when)
            timer.fired = True
            self.now = timer.when
            timer.callback()
        self.now = target


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()
