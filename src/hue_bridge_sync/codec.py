from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Callable, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, ValidationError


MIN_MIREDS = 153
MAX_MIREDS = 500

XYParsingMode = Literal["hs", "ct"]


class Attr(str, Enum):
    SWITCH = "switch"
    LEVEL = "level"
    HUE = "hue"
    SATURATION = "saturation"
    COLOR_TEMPERATURE = "colorTemperature"
    COLOR_MODE = "colorMode"
    EFFECT = "effect"
    REACHABLE = "reachable"
    MOTION = "motion"
    ILLUMINANCE = "illuminance"
    TEMPERATURE = "temperature"
    BATTERY = "battery"
    PUSHED = "pushed"
    HELD = "held"
    RELEASED = "released"


# Button events fire on every occurrence instead of only on change.
MOMENTARY_ATTRS = frozenset({Attr.PUSHED, Attr.HELD, Attr.RELEASED})
COLOR_ATTRS = frozenset({Attr.HUE, Attr.SATURATION, Attr.COLOR_TEMPERATURE, Attr.COLOR_MODE})


@dataclass(frozen=True)
class CanonicalAttribute:
    name: Attr
    value: Any
    unit: str | None = None


@dataclass(frozen=True)
class Decoded:
    attributes: list[CanonicalAttribute] = field(default_factory=list)


@dataclass(frozen=True)
class DecodeError:
    message: str


DecodeResult = Union[Decoded, DecodeError]


@dataclass(frozen=True)
class CodecOptions:
    hi_rez_hue: bool = False
    xy_parsing_mode: XYParsingMode = "hs"
    button_numbers: Mapping[str, int] = field(default_factory=dict)


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _num(value: Any) -> Decimal:
    # bool is an int subclass; the bridge never sends it for numeric fields.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"expected number, got {type(value).__name__}")
    return Decimal(str(value))


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


# --- scaling -------------------------------------------------------------


def scale_bri_from_bridge(bri: Any) -> int:
    """v1 1-254 brightness to a 1-100 percent level."""
    raw = _num(bri)
    level = _clamp(_round_half_up(raw / 254 * 100), 0, 100)
    if raw > 0 and level < 1:
        level = 1
    return level


def scale_bri_to_bridge(level: Any) -> int:
    """1-100 percent level to v1 1-254 brightness."""
    raw = _num(level)
    if raw == 1:
        return 1
    bri = _clamp(_round_half_up(raw / 100 * 254), 0, 254)
    if raw > 0 and bri < 1:
        bri = 1
    return bri


def scale_bri_from_bridge_v2(brightness: Any) -> int:
    """v2 0.0-100.0 brightness to a percent level; tiny non-zero values floor to 1."""
    raw = _num(brightness)
    if Decimal("0.001") < raw <= Decimal("1.49"):
        return 1
    return _clamp(_round_half_up(raw), 0, 100)


def scale_hue_from_bridge(hue: Any, *, hi_rez: bool = False) -> int:
    top = 360 if hi_rez else 100
    return _clamp(_round_half_up(_num(hue) / 65535 * top), 0, top)


def scale_hue_to_bridge(hue: Any, *, hi_rez: bool = False) -> int:
    top = 360 if hi_rez else 100
    return _clamp(_round_half_up(_num(hue) / top * 65535), 0, 65535)


def scale_sat_from_bridge(sat: Any) -> int:
    return _clamp(_round_half_up(_num(sat) / 254 * 100), 0, 100)


def scale_sat_to_bridge(sat: Any) -> int:
    return _clamp(_round_half_up(_num(sat) / 100 * 254), 0, 254)


def mireds_to_kelvin(mireds: Any) -> int:
    raw = _num(mireds)
    if raw <= 0:
        raise ValueError("mireds must be positive")
    return _round_half_up(Decimal(1_000_000) / raw)


def kelvin_to_mireds(kelvin: Any) -> int:
    raw = _num(kelvin)
    if raw <= 0:
        raise ValueError("kelvin must be positive")
    return _clamp(_round_half_up(Decimal(1_000_000) / raw), MIN_MIREDS, MAX_MIREDS)


def lightlevel_to_lux(light_level: Any) -> int:
    return _round_half_up(Decimal(10 ** ((float(_num(light_level)) - 1) / 10000)))


def _celsius(value: Decimal) -> float:
    return float(value.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


# --- v1 decode -----------------------------------------------------------

_V1Handler = Callable[[Any, CodecOptions, str | None], list[CanonicalAttribute]]


def _expect_bool(value: Any) -> bool:
    if not isinstance(value, bool):
        raise TypeError(f"expected bool, got {type(value).__name__}")
    return value


def _v1_on(value: Any, _: CodecOptions, __: str | None) -> list[CanonicalAttribute]:
    return [CanonicalAttribute(Attr.SWITCH, "on" if _expect_bool(value) else "off")]


def _v1_bri(value: Any, _: CodecOptions, __: str | None) -> list[CanonicalAttribute]:
    return [CanonicalAttribute(Attr.LEVEL, scale_bri_from_bridge(value), "%")]


def _v1_hue(value: Any, opts: CodecOptions, _: str | None) -> list[CanonicalAttribute]:
    return [CanonicalAttribute(Attr.HUE, scale_hue_from_bridge(value, hi_rez=opts.hi_rez_hue))]


def _v1_sat(value: Any, _: CodecOptions, __: str | None) -> list[CanonicalAttribute]:
    return [CanonicalAttribute(Attr.SATURATION, scale_sat_from_bridge(value), "%")]


def _v1_ct(value: Any, _: CodecOptions, color_mode: str | None) -> list[CanonicalAttribute]:
    kelvin = mireds_to_kelvin(value)
    if color_mode == "hs":
        return []
    return [CanonicalAttribute(Attr.COLOR_TEMPERATURE, kelvin, "K")]


def _v1_colormode(value: Any, _: CodecOptions, color_mode: str | None) -> list[CanonicalAttribute]:
    if not isinstance(value, str):
        raise TypeError("colormode must be a string")
    return [CanonicalAttribute(Attr.COLOR_MODE, "CT" if color_mode == "ct" else "RGB")]


def _v1_effect(value: Any, _: CodecOptions, __: str | None) -> list[CanonicalAttribute]:
    return [CanonicalAttribute(Attr.EFFECT, "colorloop" if value == "colorloop" else "none")]


def _v1_reachable(value: Any, _: CodecOptions, __: str | None) -> list[CanonicalAttribute]:
    return [CanonicalAttribute(Attr.REACHABLE, "true" if _expect_bool(value) else "false")]


def _v1_any_on(value: Any, _: CodecOptions, __: str | None) -> list[CanonicalAttribute]:
    return [CanonicalAttribute(Attr.SWITCH, "on" if _expect_bool(value) else "off")]


def _v1_status(value: Any, _: CodecOptions, __: str | None) -> list[CanonicalAttribute]:
    return [CanonicalAttribute(Attr.SWITCH, "on" if int(_num(value)) != 0 else "off")]


def _v1_presence(value: Any, _: CodecOptions, __: str | None) -> list[CanonicalAttribute]:
    return [CanonicalAttribute(Attr.MOTION, "active" if _expect_bool(value) else "inactive")]


def _v1_lightlevel(value: Any, _: CodecOptions, __: str | None) -> list[CanonicalAttribute]:
    return [CanonicalAttribute(Attr.ILLUMINANCE, lightlevel_to_lux(value), "lux")]


def _v1_temperature(value: Any, _: CodecOptions, __: str | None) -> list[CanonicalAttribute]:
    return [CanonicalAttribute(Attr.TEMPERATURE, _celsius(_num(value) / 100), "°C")]


def _v1_battery(value: Any, _: CodecOptions, __: str | None) -> list[CanonicalAttribute]:
    if value is None:
        return []
    return [CanonicalAttribute(Attr.BATTERY, int(_num(value)), "%")]


_V1_DECODERS: dict[str, _V1Handler] = {
    "on": _v1_on,
    "any_on": _v1_any_on,
    "bri": _v1_bri,
    "hue": _v1_hue,
    "sat": _v1_sat,
    "ct": _v1_ct,
    "colormode": _v1_colormode,
    "effect": _v1_effect,
    "reachable": _v1_reachable,
    "status": _v1_status,
    "presence": _v1_presence,
    "lightlevel": _v1_lightlevel,
    "temperature": _v1_temperature,
    "battery": _v1_battery,
}


def resolve_color_mode(mode: Any, *, xy_parsing_mode: XYParsingMode = "hs") -> str | None:
    if not isinstance(mode, str):
        return None
    if mode == "xy":
        return xy_parsing_mode
    return mode


def decode_v1(payload: Any, options: CodecOptions | None = None) -> DecodeResult:
    """Decode a flat v1 state/action map (or a command map that was sent)."""
    opts = options or CodecOptions()
    if not isinstance(payload, Mapping):
        return DecodeError(f"v1 payload must be an object, got {type(payload).__name__}")

    color_mode = resolve_color_mode(payload.get("colormode"), xy_parsing_mode=opts.xy_parsing_mode)
    out: list[CanonicalAttribute] = []
    for key, value in payload.items():
        handler = _V1_DECODERS.get(key)
        if handler is None:
            continue
        try:
            out.extend(handler(value, opts, color_mode))
        except (TypeError, ValueError, ArithmeticError) as exc:
            return DecodeError(f"v1 field {key!r}: {exc}")
    return Decoded(out)


# --- v2 decode -----------------------------------------------------------


class _V2Model(BaseModel):
    model_config = ConfigDict(extra="ignore")


class V2On(_V2Model):
    on: bool


class V2Dimming(_V2Model):
    brightness: float


class V2ColorTemperature(_V2Model):
    mirek: int | None = None


class V2Motion(_V2Model):
    motion: bool


class V2LightLevel(_V2Model):
    light_level: int


class V2Temperature(_V2Model):
    temperature: float


class V2PowerState(_V2Model):
    battery_level: int | None = None


class V2Button(_V2Model):
    last_event: str | None = None


class V2ResourceUpdate(_V2Model):
    id: str | None = None
    id_v1: str | None = None
    type: str | None = None
    on: V2On | None = None
    dimming: V2Dimming | None = None
    color_temperature: V2ColorTemperature | None = None
    # Present on colour lights but not decoded; consumers re-poll for hue/sat.
    color: dict[str, Any] | None = None
    motion: V2Motion | None = None
    light: V2LightLevel | None = None
    temperature: V2Temperature | None = None
    power_state: V2PowerState | None = None
    button: V2Button | None = None


_BUTTON_EVENTS: dict[str, Attr] = {
    "initial_press": Attr.PUSHED,
    "repeat": Attr.HELD,
    "long_release": Attr.RELEASED,
}


def decode_v2(payload: Any, options: CodecOptions | None = None) -> DecodeResult:
    """Decode one resource object from an eventstream `data[]` array."""
    opts = options or CodecOptions()
    if not isinstance(payload, Mapping):
        return DecodeError(f"v2 payload must be an object, got {type(payload).__name__}")
    try:
        update = V2ResourceUpdate.model_validate(payload)
    except ValidationError as exc:
        return DecodeError(f"v2 payload rejected: {exc.error_count()} validation error(s)")

    out: list[CanonicalAttribute] = []
    if update.on is not None:
        out.append(CanonicalAttribute(Attr.SWITCH, "on" if update.on.on else "off"))
    if update.dimming is not None:
        level = scale_bri_from_bridge_v2(update.dimming.brightness)
        if level > 0:
            out.append(CanonicalAttribute(Attr.LEVEL, level, "%"))
    if update.color_temperature is not None and update.color_temperature.mirek is not None:
        out.append(
            CanonicalAttribute(Attr.COLOR_TEMPERATURE, mireds_to_kelvin(update.color_temperature.mirek), "K")
        )
        out.append(CanonicalAttribute(Attr.COLOR_MODE, "CT"))
    if update.motion is not None:
        out.append(CanonicalAttribute(Attr.MOTION, "active" if update.motion.motion else "inactive"))
    if update.light is not None:
        out.append(CanonicalAttribute(Attr.ILLUMINANCE, lightlevel_to_lux(update.light.light_level), "lux"))
    if update.temperature is not None:
        out.append(
            CanonicalAttribute(Attr.TEMPERATURE, _celsius(Decimal(str(update.temperature.temperature))), "°C")
        )
    if update.power_state is not None and update.power_state.battery_level is not None:
        out.append(CanonicalAttribute(Attr.BATTERY, update.power_state.battery_level, "%"))
    if update.button is not None and update.button.last_event in _BUTTON_EVENTS:
        number = opts.button_numbers.get(update.id or "", 1)
        out.append(CanonicalAttribute(_BUTTON_EVENTS[update.button.last_event], number))
    return Decoded(out)


# --- encode --------------------------------------------------------------


def _encode_switch(value: Any, _: CodecOptions) -> dict[str, Any]:
    if isinstance(value, bool):
        return {"on": value}
    if value in ("on", "off"):
        return {"on": value == "on"}
    raise ValueError("switch must be 'on', 'off' or a bool")


def _encode_level(value: Any, _: CodecOptions) -> dict[str, Any]:
    return {"bri": scale_bri_to_bridge(value)}


def _encode_hue(value: Any, opts: CodecOptions) -> dict[str, Any]:
    return {"hue": scale_hue_to_bridge(value, hi_rez=opts.hi_rez_hue)}


def _encode_saturation(value: Any, _: CodecOptions) -> dict[str, Any]:
    return {"sat": scale_sat_to_bridge(value)}


def _encode_color_temperature(value: Any, _: CodecOptions) -> dict[str, Any]:
    return {"ct": kelvin_to_mireds(value)}


def _encode_effect(value: Any, _: CodecOptions) -> dict[str, Any]:
    return {"effect": "colorloop" if value == "colorloop" else "none"}


def _encode_transition(value: Any, _: CodecOptions) -> dict[str, Any]:
    return {"transitiontime": _round_half_up(_num(value) * 10)}


def _encode_alert(value: Any, _: CodecOptions) -> dict[str, Any]:
    if value not in ("select", "lselect", "none"):
        raise ValueError("alert must be select, lselect or none")
    return {"alert": value}


_ENCODERS: dict[str, Callable[[Any, CodecOptions], dict[str, Any]]] = {
    Attr.SWITCH.value: _encode_switch,
    Attr.LEVEL.value: _encode_level,
    Attr.HUE.value: _encode_hue,
    Attr.SATURATION.value: _encode_saturation,
    Attr.COLOR_TEMPERATURE.value: _encode_color_temperature,
    Attr.EFFECT.value: _encode_effect,
    "transitionTime": _encode_transition,
    "alert": _encode_alert,
}


def encode_command(attrs: Mapping[str, Any], options: CodecOptions | None = None) -> dict[str, Any]:
    """Canonical attribute writes to a v1 command map; unknown names are dropped.

    Raises ValueError/TypeError for a known attribute with an unusable value.
    """
    opts = options or CodecOptions()
    wire: dict[str, Any] = {}
    for name, value in attrs.items():
        encoder = _ENCODERS.get(str(name.value if isinstance(name, Attr) else name))
        if encoder is None:
            continue
        wire.update(encoder(value, opts))
    return wire
