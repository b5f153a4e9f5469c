from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

from hue_bridge_sync.batcher import CommandBatcher
from hue_bridge_sync.codec import COLOR_ATTRS, MOMENTARY_ATTRS, Attr, CanonicalAttribute


logger = logging.getLogger("hue_bridge_sync.projector")


class Origin(str, Enum):
    FROM_BRIDGE = "bridge"
    FROM_COMMAND = "command"


class EmissionMode(str, Enum):
    # Events for a command are created once the bridge accepted it.
    CONFIRMED = "confirmed"
    # Legacy: events are created when the command is staged.
    OPTIMISTIC = "optimistic"


@dataclass(frozen=True)
class EmittedEvent:
    device_id: str
    name: str
    value: Any
    unit: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"deviceId": self.device_id, "attribute": self.name, "value": self.value, "unit": self.unit}


_PENDING_COLOR_KEYS = ("hue", "sat", "ct")


class StateProjector:
    def __init__(self, *, batcher: CommandBatcher) -> None:
        self._batcher = batcher
        self._last: dict[str, dict[str, Any]] = {}
        self._last_momentary: dict[str, Attr] = {}

    def last_value(self, device_id: str, name: Attr | str) -> Any:
        key = name.value if isinstance(name, Attr) else name
        return self._last.get(device_id, {}).get(key)

    def snapshot(self, device_id: str) -> dict[str, Any]:
        return dict(self._last.get(device_id, {}))

    def seed(self, device_id: str, name: str, value: Any) -> None:
        self._last.setdefault(device_id, {})[name] = value

    def forget(self, device_id: str) -> None:
        self._last.pop(device_id, None)
        self._last_momentary.pop(device_id, None)

    def is_on(self, device_id: str, attrs: Iterable[CanonicalAttribute] = ()) -> bool:
        """On/off as carried by `attrs`, else as last emitted."""
        for attr in attrs:
            if attr.name is Attr.SWITCH:
                return attr.value == "on"
        return self.last_value(device_id, Attr.SWITCH) == "on"

    def project(
        self,
        device_id: str,
        attrs: Iterable[CanonicalAttribute],
        *,
        origin: Origin,
        is_on: bool,
        staging_enabled: bool = False,
    ) -> list[EmittedEvent]:
        events: list[EmittedEvent] = []
        known = self._last.setdefault(device_id, {})
        prestaged = staging_enabled and not is_on and origin is Origin.FROM_BRIDGE

        for attr in attrs:
            if attr.name in MOMENTARY_ATTRS:
                event = self._project_momentary(device_id, attr)
                if event is not None:
                    events.append(event)
                continue

            key = attr.name.value
            if known.get(key) == attr.value:
                continue
            if prestaged and self._held_by_pending(device_id, attr.name):
                logger.debug("%s: prestaged command pending, not emitting %s", device_id, key)
                continue
            known[key] = attr.value
            events.append(EmittedEvent(device_id=device_id, name=key, value=attr.value, unit=attr.unit))
        return events

    def _held_by_pending(self, device_id: str, name: Attr) -> bool:
        if name is Attr.LEVEL:
            return self._batcher.has_pending(device_id, "bri")
        if name in COLOR_ATTRS:
            return self._batcher.has_pending(device_id, *_PENDING_COLOR_KEYS)
        return False

    def _project_momentary(self, device_id: str, attr: CanonicalAttribute) -> EmittedEvent | None:
        previous = self._last_momentary.get(device_id)
        self._last_momentary[device_id] = attr.name
        # The bridge repeats "repeat" while a button is held; report it once.
        if attr.name is Attr.HELD and previous is Attr.HELD:
            return None
        return EmittedEvent(device_id=device_id, name=attr.name.value, value=attr.value, unit=attr.unit)
