from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping


@dataclass
class PendingCommand:
    fields: dict[str, Any] = field(default_factory=dict)


class CommandBatcher:
    """Per-device accumulator of not-yet-sent bridge fields.

    Several logical writes (on, bri, transitiontime) are merged here so they go
    out as one PUT and the bridge performs a single transition.
    """

    def __init__(self) -> None:
        self._pending: dict[str, PendingCommand] = {}

    def stage(self, device_id: str, attrs: Mapping[str, Any], replace: bool = False) -> dict[str, Any]:
        pending = self._pending.get(device_id)
        if pending is None or replace:
            pending = PendingCommand()
            self._pending[device_id] = pending
        pending.fields.update(attrs)
        return dict(pending.fields)

    def flush(self, device_id: str) -> dict[str, Any]:
        pending = self._pending.pop(device_id, None)
        if pending is None:
            return {}
        return pending.fields

    def peek(self, device_id: str) -> dict[str, Any] | None:
        pending = self._pending.get(device_id)
        if pending is None or not pending.fields:
            return None
        return dict(pending.fields)

    def clear(self, device_id: str) -> None:
        self._pending.pop(device_id, None)

    def has_pending(self, device_id: str, *keys: str) -> bool:
        pending = self._pending.get(device_id)
        if pending is None:
            return False
        if not keys:
            return bool(pending.fields)
        return any(pending.fields.get(k) is not None for k in keys)

    def pending_devices(self) -> list[str]:
        return [device_id for device_id, pending in self._pending.items() if pending.fields]
