from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from hue_bridge_sync.hue_client import BridgeResponse, HueTransportError
from hue_bridge_sync.projector import EmittedEvent
from hue_bridge_sync.registry import DeviceKind
from hue_bridge_sync.validator import Ok, TransportError

if TYPE_CHECKING:
    from hue_bridge_sync.engine import BridgeEngine


logger = logging.getLogger("hue_bridge_sync.hue_sync")

POLLED_COLLECTIONS: list[tuple[str, DeviceKind]] = [
    ("lights", "light"),
    ("groups", "group"),
    ("sensors", "sensor"),
]


def poll_payload(kind: DeviceKind, resource: dict[str, Any]) -> dict[str, Any]:
    """Flatten a v1 resource listing entry into the state map the codec reads."""
    if kind == "group":
        payload = dict(resource.get("action") or {})
        state = resource.get("state") or {}
        # `any_on` is authoritative for the group switch; `action.on` is only the last command.
        if "any_on" in state:
            payload.pop("on", None)
        payload.update(state)
        return payload
    payload = dict(resource.get("state") or {})
    if kind == "sensor":
        config = resource.get("config") or {}
        if "battery" in config:
            payload["battery"] = config["battery"]
    return payload


async def refresh_all(engine: "BridgeEngine") -> list[EmittedEvent]:
    events: list[EmittedEvent] = []
    for collection, kind in POLLED_COLLECTIONS:
        try:
            resp = await engine.hue.get_v1(
                collection,
                retry=True,
                max_attempts=engine.retry_max_attempts,
                base_delay_ms=engine.retry_base_delay_ms,
            )
        except HueTransportError as exc:
            resp = BridgeResponse.unreachable(str(exc))
        verdict = engine.validator.validate(resp)
        if isinstance(verdict, TransportError):
            break
        if not isinstance(verdict, Ok) or not isinstance(verdict.body, dict):
            continue

        for bridge_id, resource in verdict.body.items():
            if not isinstance(resource, dict):
                continue
            handle = engine.registry.resolve_device(kind, str(bridge_id))
            if handle is None:
                continue
            events.extend(await engine.apply_bridge_state(handle, poll_payload(kind, resource)))
    return events


async def poll_loop(engine: "BridgeEngine", *, seconds: int) -> None:
    """Poll while the eventstream is not carrying updates."""
    while True:
        await asyncio.sleep(seconds)
        if engine.push_active:
            continue
        try:
            await refresh_all(engine)
        except Exception:
            logger.exception("Poll refresh failed")
