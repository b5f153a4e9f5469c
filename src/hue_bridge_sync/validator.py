from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Union

from hue_bridge_sync.hue_client import BridgeResponse


logger = logging.getLogger("hue_bridge_sync.validator")


@dataclass(frozen=True)
class Ok:
    body: Any


@dataclass(frozen=True)
class SoftError:
    message: str
    body: Any = None


@dataclass(frozen=True)
class TransportError:
    status: int | None
    message: str = ""


Classification = Union[Ok, SoftError, TransportError]


def _soft_error_message(body: Any) -> str | None:
    # v1: [{"error": {...}}, ...]
    if isinstance(body, list) and body:
        first = body[0]
        if isinstance(first, dict) and first.get("error"):
            err = first["error"]
            if isinstance(err, dict):
                return str(err.get("description") or err)
            return str(err)
    # v2: {"errors": [{"description": ...}], "data": [...]}
    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            first = errors[0]
            if isinstance(first, dict) and first.get("description"):
                return str(first["description"])
            return str(first)
    return None


def classify(resp: BridgeResponse) -> Classification:
    if resp.status_code is None:
        return TransportError(status=None, message=resp.error or "bridge unreachable")
    if not 200 <= resp.status_code <= 299:
        return TransportError(status=resp.status_code, message=f"HTTP {resp.status_code}")
    if not resp.is_json or resp.body is None:
        return TransportError(status=resp.status_code, message="no JSON body in bridge response")
    message = _soft_error_message(resp.body)
    if message is not None:
        return SoftError(message=message, body=resp.body)
    return Ok(body=resp.body)


class BridgeHealth:
    """Online/offline flag; listeners hear about changes only."""

    def __init__(self, *, on_changed: Callable[[bool], None] | None = None) -> None:
        self._online: bool | None = None
        self._listeners: list[Callable[[bool], None]] = []
        if on_changed:
            self._listeners.append(on_changed)

    @property
    def online(self) -> bool | None:
        return self._online

    def add_listener(self, listener: Callable[[bool], None]) -> None:
        self._listeners.append(listener)

    def set(self, online: bool) -> bool:
        if self._online == online:
            return False
        self._online = online
        logger.info("Bridge is %s", "online" if online else "offline")
        for listener in list(self._listeners):
            listener(online)
        return True


class ResponseValidator:
    def __init__(
        self,
        *,
        health: BridgeHealth,
        on_possible_address_change: Callable[[], None] | None = None,
        rediscovery_cooldown_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.health = health
        self._on_possible_address_change = on_possible_address_change
        self._cooldown = max(0.0, rediscovery_cooldown_seconds)
        self._clock = clock
        self._last_probe: float | None = None

    def validate(self, resp: BridgeResponse) -> Classification:
        """Classify a reply and apply its effect on bridge health."""
        verdict = classify(resp)
        if isinstance(verdict, Ok):
            self.health.set(True)
        elif isinstance(verdict, SoftError):
            # The bridge answered, so health stays as it was.
            logger.warning("Error from Hue Bridge: %s", verdict.message)
        else:
            logger.warning("Error communicating with Hue Bridge: %s", verdict.message)
            self.health.set(False)
            self._probe_address()
        return verdict

    def _probe_address(self) -> None:
        if self._on_possible_address_change is None:
            return
        now = self._clock()
        if self._last_probe is not None and now - self._last_probe < self._cooldown:
            return
        self._last_probe = now
        logger.info("Requesting bridge rediscovery (address may have changed)")
        self._on_possible_address_change()
