from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    ok: bool = Field(..., description="Process is alive.")


class ReadinessResponse(BaseModel):
    ready: bool = Field(..., description="True when the last bridge exchange succeeded.")
    reason: str | None = Field(
        default=None,
        description="When not ready, a short machine-readable reason (e.g. bridge_offline).",
    )


class BridgeStatusResponse(BaseModel):
    online: bool | None = Field(..., description="Bridge health; null until the first exchange.")
    streamState: Literal["disconnected", "connecting", "connected"]
    pushEnabled: bool
    pushActive: bool
    nextBackoffSeconds: float = Field(..., description="Delay the next confirmed disconnect will wait.")
    pendingDevices: list[str] = Field(default_factory=list, description="Devices with unsent staged commands.")


class DeviceRegisterRequest(BaseModel):
    deviceId: str | None = Field(
        default=None,
        description="Local id; defaults to `<kind>/<bridgeId>`.",
        examples=["kitchen-ceiling"],
    )
    kind: Literal["light", "group", "scene", "sensor"]
    bridgeId: str = Field(..., description="Numeric v1 id on the bridge.", examples=["3"])
    name: str | None = None
    hiRezHue: bool | None = Field(default=None, description="Hue in degrees (0-360) instead of percent.")
    stagingEnabled: bool = Field(
        default=False, description="Hold level/colour commands and read-backs while off until switched on."
    )
    groupId: str | None = Field(default=None, description="Scenes: the group switched off with the scene.", examples=["3"])
    xyParsingMode: Literal["hs", "ct"] | None = None
    aliases: list[str] = Field(
        default_factory=list,
        description="Extra v1 paths routed to this device, e.g. `/sensors/8`.",
        examples=[["/sensors/8", "/sensors/9"]],
    )
    buttonNumbers: dict[str, int] = Field(
        default_factory=dict,
        description="v2 button resource id -> button number reported in pushed/held/released.",
    )


class DeviceResponse(BaseModel):
    deviceId: str
    kind: str
    bridgeId: str
    name: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict, description="Last emitted canonical values.")
    pending: dict[str, Any] | None = Field(default=None, description="Staged, unsent bridge fields.")


class CommandRequest(BaseModel):
    attributes: dict[str, Any] = Field(
        ...,
        description="Canonical writes: switch, level, hue, saturation, colorTemperature, effect, transitionTime, alert.",
        examples=[{"switch": "on", "level": 40, "transitionTime": 2}],
    )
    replace: bool = Field(default=False, description="Discard previously staged fields first.")
    send: bool = Field(default=True, description="Flush the batch to the bridge now.")


class EmittedEventModel(BaseModel):
    deviceId: str
    attribute: str
    value: Any
    unit: str | None = None


class CommandResponse(BaseModel):
    deviceId: str
    sent: bool
    wire: dict[str, Any] = Field(default_factory=dict)
    events: list[EmittedEventModel] = Field(default_factory=list)


class RefreshResponse(BaseModel):
    online: bool | None
    events: list[EmittedEventModel] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    error: str
    message: str | None = None
