from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from hue_bridge_sync.batcher import CommandBatcher
from hue_bridge_sync.codec import (
    MOMENTARY_ATTRS,
    Attr,
    CanonicalAttribute,
    DecodeError,
    decode_v1,
    decode_v2,
    encode_command,
)
from hue_bridge_sync.db import Database
from hue_bridge_sync.event_hub import EventHub, make_event
from hue_bridge_sync.hue_client import BridgeResponse, FrameKind, HueClient, HueTransportError, StreamFrame
from hue_bridge_sync.hue_sync import refresh_all
from hue_bridge_sync.projector import EmissionMode, EmittedEvent, Origin, StateProjector
from hue_bridge_sync.registry import DeviceHandle, DeviceRegistry, parse_id_v1
from hue_bridge_sync.stream import BackoffState, StreamSession
from hue_bridge_sync.validator import BridgeHealth, Classification, Ok, ResponseValidator


logger = logging.getLogger("hue_bridge_sync.engine")

_MOMENTARY_NAMES = frozenset(a.value for a in MOMENTARY_ATTRS)


class UnknownDeviceError(KeyError):
    def __init__(self, device_id: str) -> None:
        super().__init__(device_id)
        self.device_id = device_id


@dataclass(frozen=True)
class CommandOutcome:
    device_id: str
    sent: bool
    wire: dict[str, Any] = field(default_factory=dict)
    verdict: Classification | None = None
    events: list[EmittedEvent] = field(default_factory=list)


# Wire keys that turn a light on when sent, or wait for it to be turned on when staged.
_LIGHTING_KEYS = frozenset({"bri", "hue", "sat", "ct"})
_PRESTAGEABLE_KEYS = _LIGHTING_KEYS | {"transitiontime"}


def command_path(handle: DeviceHandle, wire: Mapping[str, Any] | None = None) -> str:
    if handle.kind == "light":
        return f"lights/{handle.bridge_id}/state"
    if handle.kind == "group":
        return f"groups/{handle.bridge_id}/action"
    if handle.kind == "scene":
        if wire is not None and "scene" not in wire:
            return f"groups/{handle.group_id or '0'}/action"
        return "groups/0/action"
    return f"sensors/{handle.bridge_id}/state"


def _scene_switch(attrs: Mapping[str, Any]) -> bool:
    value = attrs.get(Attr.SWITCH.value)
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value in ("on", "off"):
        return value == "on"
    raise ValueError("scenes only accept switch 'on' or 'off'")


class BridgeEngine:
    """One bridge: stream session, command batches, projection and health."""

    def __init__(
        self,
        *,
        hue: HueClient,
        registry: DeviceRegistry,
        hub: EventHub | None = None,
        db: Database | None = None,
        emission_mode: EmissionMode = EmissionMode.CONFIRMED,
        push_enabled: bool = True,
        grace_seconds: float = 8.0,
        backoff: BackoffState | None = None,
        scheduler: Any | None = None,
        on_possible_address_change: Callable[[], None] | None = None,
        rediscovery_cooldown_seconds: float = 300.0,
        retry_max_attempts: int = 3,
        retry_base_delay_ms: int = 200,
    ) -> None:
        self.hue = hue
        self.registry = registry
        self.hub = hub
        self.db = db
        self.emission_mode = emission_mode
        self.retry_max_attempts = retry_max_attempts
        self.retry_base_delay_ms = retry_base_delay_ms

        self.batcher = CommandBatcher()
        self.projector = StateProjector(batcher=self.batcher)
        self.health = BridgeHealth(on_changed=self._on_bridge_health)
        self.validator = ResponseValidator(
            health=self.health,
            on_possible_address_change=on_possible_address_change,
            rediscovery_cooldown_seconds=rediscovery_cooldown_seconds,
        )
        self.stream = StreamSession(
            hue=hue,
            on_frame=self.handle_stream_frame,
            on_health_changed=self._on_push_health,
            push_enabled=push_enabled,
            grace_seconds=grace_seconds,
            backoff=backoff,
            scheduler=scheduler,
        )
        self._tasks: set[asyncio.Task] = set()

    @property
    def push_active(self) -> bool:
        return self.stream.push_enabled and self.stream.push_active

    async def start(self) -> None:
        if self.db is not None:
            for device_id, attribute, value in await self.db.load_attributes():
                self.projector.seed(device_id, attribute, value)
        if self.stream.push_enabled and self.hue.bridge_host and self.hue.application_key:
            self.stream.connect()

    async def close(self) -> None:
        await self.stream.aclose()
        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            try:
                await task
            except BaseException:
                pass

    def require_device(self, device_id: str) -> DeviceHandle:
        handle = self.registry.get(device_id)
        if handle is None:
            raise UnknownDeviceError(device_id)
        return handle

    # --- outbound ------------------------------------------------------

    async def stage_command(self, device_id: str, attrs: Mapping[str, Any], replace: bool = False) -> dict[str, Any]:
        """Merge canonical writes into the device's pending batch; returns the pending wire map.

        Raises UnknownDeviceError, or ValueError/TypeError for unusable values.
        """
        handle = self.require_device(device_id)
        if handle.kind == "scene":
            if _scene_switch(attrs):
                wire: dict[str, Any] = {"scene": handle.bridge_id}
            elif handle.group_id is None:
                raise ValueError(f"scene {device_id} has no group to switch off")
            else:
                wire = {"on": False}
            # Activating and switching off go to different paths; never merge them.
            replace = True
        else:
            wire = encode_command(attrs, handle.codec_options())
            if self._turns_on(handle, wire, replace):
                wire["on"] = True
        pending = self.batcher.stage(device_id, wire, replace=replace)

        if self.emission_mode is EmissionMode.OPTIMISTIC:
            await self._project_command(handle, wire)
        return pending

    async def send_command(self, device_id: str) -> CommandOutcome:
        handle = self.require_device(device_id)
        wire = self.batcher.flush(device_id)
        if not wire:
            return CommandOutcome(device_id=device_id, sent=False)

        try:
            resp = await self.hue.put_v1(command_path(handle, wire), json_body=wire)
        except HueTransportError as exc:
            resp = BridgeResponse.unreachable(str(exc))
        verdict = self.validator.validate(resp)

        events: list[EmittedEvent] = []
        if isinstance(verdict, Ok) and self.emission_mode is EmissionMode.CONFIRMED:
            events = await self._project_command(handle, wire)
        return CommandOutcome(device_id=device_id, sent=True, wire=wire, verdict=verdict, events=events)

    async def command(
        self, device_id: str, attrs: Mapping[str, Any], *, replace: bool = False, send: bool = True
    ) -> CommandOutcome:
        pending = await self.stage_command(device_id, attrs, replace=replace)
        if not send or self._prestaged(self.require_device(device_id), pending):
            return CommandOutcome(device_id=device_id, sent=False, wire=pending)
        return await self.send_command(device_id)

    def forget_device(self, device_id: str) -> None:
        """Drop a device's handle, staged fields and last-known values."""
        self.registry.unregister(device_id)
        self.batcher.clear(device_id)
        self.projector.forget(device_id)

    def _device_on(self, handle: DeviceHandle) -> bool:
        return self.projector.is_on(handle.device_id)

    def _turns_on(self, handle: DeviceHandle, wire: Mapping[str, Any], replace: bool) -> bool:
        # Level and colour writes switch the light on, unless staging holds them for later.
        if handle.kind not in ("light", "group") or "on" in wire or not _LIGHTING_KEYS & wire.keys():
            return False
        pending = None if replace else self.batcher.peek(handle.device_id)
        if pending is not None and "on" in pending:
            return False
        return not handle.staging_enabled or self._device_on(handle)

    def _prestaged(self, handle: DeviceHandle, pending: Mapping[str, Any]) -> bool:
        if not handle.staging_enabled or handle.kind not in ("light", "group"):
            return False
        keys = pending.keys()
        if "on" in keys or not _LIGHTING_KEYS & keys or not keys <= _PRESTAGEABLE_KEYS:
            return False
        if self._device_on(handle):
            return False
        logger.debug("%s is off; holding %s until it is switched on", handle.device_id, sorted(pending))
        return True

    async def _project_command(self, handle: DeviceHandle, wire: Mapping[str, Any]) -> list[EmittedEvent]:
        if handle.kind == "scene":
            if "scene" in wire:
                return await self._project_scene_activation(handle)
            attrs = [CanonicalAttribute(Attr.SWITCH, "off")]
        else:
            payload = dict(wire)
            if "ct" in payload:
                payload["colormode"] = "ct"
            elif "hue" in payload or "sat" in payload:
                payload["colormode"] = "hs"
            decoded = decode_v1(payload, handle.codec_options())
            if isinstance(decoded, DecodeError):
                logger.warning("%s: could not project sent command: %s", handle.device_id, decoded.message)
                return []
            attrs = decoded.attributes
        events = self.projector.project(
            handle.device_id,
            attrs,
            origin=Origin.FROM_COMMAND,
            is_on=self.projector.is_on(handle.device_id, attrs),
            staging_enabled=handle.staging_enabled,
        )
        await self._emit(events)
        return events

    async def _project_scene_activation(self, handle: DeviceHandle) -> list[EmittedEvent]:
        # Only one scene of a group can be active; scenes of group 0 cover every group.
        group = handle.group_id or "0"
        events: list[EmittedEvent] = []
        for other in self.registry.of_kind("scene"):
            if other.device_id == handle.device_id:
                continue
            if group != "0" and (other.group_id or "0") != group:
                continue
            events += self.projector.project(
                other.device_id,
                [CanonicalAttribute(Attr.SWITCH, "off")],
                origin=Origin.FROM_COMMAND,
                is_on=False,
            )
        events += self.projector.project(
            handle.device_id,
            [CanonicalAttribute(Attr.SWITCH, "on")],
            origin=Origin.FROM_COMMAND,
            is_on=True,
        )
        await self._emit(events)
        return events

    # --- inbound -------------------------------------------------------

    async def apply_bridge_state(self, handle: DeviceHandle, payload: Any) -> list[EmittedEvent]:
        """Project a polled v1 state map for one device."""
        decoded = decode_v1(payload, handle.codec_options())
        if isinstance(decoded, DecodeError):
            logger.warning("%s: dropping bridge state: %s", handle.device_id, decoded.message)
            logger.debug("%s: dropped payload %r", handle.device_id, payload)
            return []
        return await self._project_bridge(handle, decoded.attributes)

    async def handle_stream_frame(self, frame: StreamFrame) -> None:
        if frame.kind is not FrameKind.DATA:
            return
        messages = frame.payload if isinstance(frame.payload, list) else [frame.payload]
        for message in messages:
            if not isinstance(message, dict) or message.get("type") != "update":
                continue
            data = message.get("data")
            if not isinstance(data, list):
                continue
            for item in data:
                if not isinstance(item, dict):
                    continue
                ref = parse_id_v1(item.get("id_v1"))
                if ref is None:
                    continue
                handle = self.registry.resolve_device(*ref)
                if handle is None:
                    continue
                decoded = decode_v2(item, handle.codec_options())
                if isinstance(decoded, DecodeError):
                    logger.warning("%s: dropping eventstream update: %s", handle.device_id, decoded.message)
                    logger.debug("%s: dropped payload %r", handle.device_id, item)
                    continue
                await self._project_bridge(handle, decoded.attributes)

    async def _project_bridge(self, handle: DeviceHandle, attrs: list[CanonicalAttribute]) -> list[EmittedEvent]:
        events = self.projector.project(
            handle.device_id,
            attrs,
            origin=Origin.FROM_BRIDGE,
            is_on=self.projector.is_on(handle.device_id, attrs),
            staging_enabled=handle.staging_enabled,
        )
        await self._emit(events)
        return events

    async def _emit(self, events: list[EmittedEvent]) -> None:
        for event in events:
            logger.info("%s %s is %s%s", event.device_id, event.name, event.value, event.unit or "")
            if self.hub is not None:
                await self.hub.publish(make_event("device.attribute", **event.as_dict()))
            if self.db is not None and event.name not in _MOMENTARY_NAMES:
                await self.db.upsert_attribute(
                    device_id=event.device_id, attribute=event.name, value=event.value, unit=event.unit
                )

    # --- health --------------------------------------------------------

    def _on_bridge_health(self, online: bool) -> None:
        if self.hub is not None:
            self.hub.publish_nowait(make_event("bridge.health", online=online))

    def _on_push_health(self, active: bool) -> None:
        if self.hub is not None:
            self.hub.publish_nowait(make_event("bridge.push", active=active))
        self.health.set(active)
        if not active and not self.stream.terminated:
            # Catch up on whatever the stream missed while it was down.
            self._spawn(self.refresh())

    async def refresh(self) -> list[EmittedEvent]:
        return await refresh_all(self)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
