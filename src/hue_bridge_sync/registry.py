from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal

from hue_bridge_sync.codec import CodecOptions, XYParsingMode


logger = logging.getLogger("hue_bridge_sync.registry")

DeviceKind = Literal["light", "group", "scene", "sensor"]

# v1 path segment -> device kind, as used in eventstream `id_v1` values.
V1_COLLECTIONS: dict[str, DeviceKind] = {
    "lights": "light",
    "groups": "group",
    "scenes": "scene",
    "sensors": "sensor",
}


@dataclass(frozen=True)
class DeviceHandle:
    device_id: str
    kind: DeviceKind
    bridge_id: str
    name: str | None = None
    hi_rez_hue: bool = False
    staging_enabled: bool = False
    # Scenes only: the group a scene belongs to, switched off with the scene.
    group_id: str | None = None
    xy_parsing_mode: XYParsingMode = "hs"
    button_numbers: dict[str, int] = field(default_factory=dict)

    def codec_options(self) -> CodecOptions:
        return CodecOptions(
            hi_rez_hue=self.hi_rez_hue,
            xy_parsing_mode=self.xy_parsing_mode,
            button_numbers=self.button_numbers,
        )


def parse_id_v1(value: str | None) -> tuple[DeviceKind, str] | None:
    """'/lights/3' -> ('light', '3'); None for anything else."""
    if not isinstance(value, str):
        return None
    parts = [p for p in value.split("/") if p]
    if len(parts) != 2:
        return None
    kind = V1_COLLECTIONS.get(parts[0])
    if kind is None or not parts[1]:
        return None
    return kind, parts[1]


class DeviceRegistry:
    """In-memory arena of device handles keyed by (kind, bridge id).

    Several keys may point at the same handle, e.g. the presence, light-level
    and temperature sensors that make up one motion sensor.
    """

    def __init__(
        self,
        *,
        auto_register: bool = True,
        hi_rez_hue: bool = False,
        xy_parsing_mode: XYParsingMode = "hs",
    ) -> None:
        self._auto_register = auto_register
        self._hi_rez_hue = hi_rez_hue
        self._xy_parsing_mode = xy_parsing_mode
        self._by_id: dict[str, DeviceHandle] = {}
        self._by_key: dict[tuple[str, str], str] = {}

    def register(self, handle: DeviceHandle, *, aliases: list[tuple[DeviceKind, str]] | None = None) -> DeviceHandle:
        prev = self._by_id.get(handle.device_id)
        if prev is not None:
            self._by_key.pop((prev.kind, prev.bridge_id), None)
        self._by_id[handle.device_id] = handle
        self._by_key[(handle.kind, handle.bridge_id)] = handle.device_id
        for kind, bridge_id in aliases or []:
            self._by_key[(kind, str(bridge_id))] = handle.device_id
        return handle

    def unregister(self, device_id: str) -> None:
        self._by_id.pop(device_id, None)
        for key in [k for k, v in self._by_key.items() if v == device_id]:
            del self._by_key[key]

    def get(self, device_id: str) -> DeviceHandle | None:
        return self._by_id.get(device_id)

    def of_kind(self, kind: DeviceKind) -> list[DeviceHandle]:
        return [h for h in self._by_id.values() if h.kind == kind]

    def resolve_device(self, kind: DeviceKind, bridge_id: str) -> DeviceHandle | None:
        device_id = self._by_key.get((kind, str(bridge_id)))
        if device_id is not None:
            return self._by_id.get(device_id)
        if not self._auto_register:
            return None
        handle = DeviceHandle(
            device_id=f"{kind}/{bridge_id}",
            kind=kind,
            bridge_id=str(bridge_id),
            hi_rez_hue=self._hi_rez_hue,
            xy_parsing_mode=self._xy_parsing_mode,
        )
        logger.info("Registering %s", handle.device_id)
        return self.register(handle)
