import json

import httpx
import pytest

from hue_bridge_sync.db import Database
from hue_bridge_sync.engine import BridgeEngine, UnknownDeviceError
from hue_bridge_sync.event_hub import EventHub
from hue_bridge_sync.hue_client import FrameKind, HueClient, StreamFrame
from hue_bridge_sync.projector import EmissionMode
from hue_bridge_sync.registry import DeviceHandle, DeviceRegistry
from hue_bridge_sync.validator import Ok, SoftError, TransportError


class FakeBridge:
    """Records requests and answers from a path -> (status, body) table."""

    def __init__(self, routes: dict[tuple[str, str], tuple[int, object]] | None = None) -> None:
        self.routes = routes or {}
        self.requests: list[tuple[str, str, object]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body))
        status, payload = self.routes.get((request.method, request.url.path), (200, [{"success": {}}]))
        return httpx.Response(status, json=payload)


def _engine(bridge: FakeBridge, scheduler, **kwargs) -> BridgeEngine:
    hue = HueClient(bridge_host="bridge.test", application_key="abc", transport=httpx.MockTransport(bridge.handler))
    registry = kwargs.pop("registry", None) or DeviceRegistry(auto_register=True)
    registry.register(DeviceHandle(device_id="kitchen", kind="light", bridge_id="1", staging_enabled=True))
    return BridgeEngine(
        hue=hue,
        registry=registry,
        push_enabled=False,
        scheduler=scheduler,
        retry_max_attempts=1,
        **kwargs,
    )


def _names(events):
    return [(e.name, e.value) for e in events]


@pytest.mark.asyncio
async def test_batched_command_is_one_put_and_emits_after_confirmation(scheduler):
    bridge = FakeBridge()
    engine = _engine(bridge, scheduler)
    try:
        await engine.stage_command("kitchen", {"switch": "on"})
        await engine.stage_command("kitchen", {"level": 50, "transitionTime": 2})
        assert engine.projector.snapshot("kitchen") == {}

        outcome = await engine.send_command("kitchen")

        assert bridge.requests == [("PUT", "/api/abc/lights/1/state", {"on": True, "bri": 127, "transitiontime": 20})]
        assert isinstance(outcome.verdict, Ok)
        assert _names(outcome.events) == [("switch", "on"), ("level", 50)]
        assert engine.health.online is True
    finally:
        await engine.close()
        await engine.hue.close()


@pytest.mark.asyncio
async def test_empty_flush_makes_no_request(scheduler):
    bridge = FakeBridge()
    engine = _engine(bridge, scheduler)
    try:
        outcome = await engine.send_command("kitchen")
        assert outcome.sent is False
        assert bridge.requests == []
    finally:
        await engine.close()
        await engine.hue.close()


@pytest.mark.asyncio
async def test_optimistic_mode_emits_at_stage_time(scheduler):
    bridge = FakeBridge()
    engine = _engine(bridge, scheduler, emission_mode=EmissionMode.OPTIMISTIC)
    try:
        await engine.stage_command("kitchen", {"switch": "off"})
        assert engine.projector.last_value("kitchen", "switch") == "off"

        outcome = await engine.send_command("kitchen")
        assert outcome.events == []
        assert len(bridge.requests) == 1
    finally:
        await engine.close()
        await engine.hue.close()


@pytest.mark.asyncio
async def test_soft_error_emits_nothing_and_keeps_health(scheduler):
    bridge = FakeBridge(
        {("PUT", "/api/abc/lights/1/state"): (200, [{"error": {"type": 201, "description": "parameter, bri, is not modifiable. Device is set to off."}}])}
    )
    engine = _engine(bridge, scheduler)
    try:
        engine.registry.register(DeviceHandle(device_id="hall", kind="light", bridge_id="1"))
        outcome = await engine.command("hall", {"level": 10})
        assert isinstance(outcome.verdict, SoftError)
        assert "not modifiable" in outcome.verdict.message
        assert outcome.events == []
        assert engine.health.online is None
    finally:
        await engine.close()
        await engine.hue.close()


@pytest.mark.asyncio
async def test_transport_failure_is_not_retried_and_probes_address(scheduler):
    probes: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("no route", request=request)

    hue = HueClient(bridge_host="bridge.test", application_key="abc", transport=httpx.MockTransport(handler))
    registry = DeviceRegistry()
    registry.register(DeviceHandle(device_id="kitchen", kind="light", bridge_id="1"))
    engine = BridgeEngine(
        hue=hue,
        registry=registry,
        push_enabled=False,
        scheduler=scheduler,
        on_possible_address_change=lambda: probes.append(1),
    )
    try:
        outcome = await engine.command("kitchen", {"switch": "on"})
        assert isinstance(outcome.verdict, TransportError)
        assert engine.health.online is False
        assert probes == [1]
        assert engine.batcher.peek("kitchen") is None
    finally:
        await engine.close()
        await hue.close()


@pytest.mark.asyncio
async def test_unknown_device_and_bad_value(scheduler):
    engine = _engine(FakeBridge(), scheduler)
    try:
        with pytest.raises(UnknownDeviceError):
            await engine.stage_command("porch", {"switch": "on"})
        with pytest.raises(ValueError):
            await engine.stage_command("kitchen", {"switch": "maybe"})
    finally:
        await engine.close()
        await engine.hue.close()


@pytest.mark.asyncio
async def test_group_and_scene_commands(scheduler):
    bridge = FakeBridge()
    engine = _engine(bridge, scheduler)
    engine.registry.register(DeviceHandle(device_id="lounge", kind="group", bridge_id="2"))
    engine.registry.register(DeviceHandle(device_id="relax", kind="scene", bridge_id="AbC123"))
    try:
        await engine.command("lounge", {"switch": "off"})
        outcome = await engine.command("relax", {"switch": "on"})

        assert bridge.requests == [
            ("PUT", "/api/abc/groups/2/action", {"on": False}),
            ("PUT", "/api/abc/groups/0/action", {"scene": "AbC123"}),
        ]
        assert _names(outcome.events) == [("switch", "on")]
        with pytest.raises(ValueError):
            await engine.stage_command("relax", {"switch": "off"})
        with pytest.raises(ValueError):
            await engine.stage_command("relax", {"switch": 1})
    finally:
        await engine.close()
        await engine.hue.close()


@pytest.mark.asyncio
async def test_eventstream_updates_route_by_id_v1(scheduler):
    engine = _engine(FakeBridge(), scheduler)
    hub = EventHub()
    engine.hub = hub
    subscription = await hub.subscribe()
    frame = StreamFrame(
        kind=FrameKind.DATA,
        payload=[
            {
                "type": "update",
                "data": [
                    {"id": "a1", "id_v1": "/lights/1", "type": "light", "on": {"on": True}, "dimming": {"brightness": 1.2}},
                    {"id": "a2", "id_v1": "/lights/7", "type": "light", "on": {"on": False}},
                    {"id": "a3", "type": "zigbee_connectivity", "status": "connected"},
                ],
            },
            {"type": "delete", "data": [{"id": "a4", "id_v1": "/lights/1"}]},
        ],
    )
    try:
        await engine.handle_stream_frame(frame)

        assert engine.projector.snapshot("kitchen") == {"switch": "on", "level": 1}
        assert engine.projector.snapshot("light/7") == {"switch": "off"}
        published = [subscription.queue.get_nowait()["data"] for _ in range(subscription.queue.qsize())]
        assert [(e["deviceId"], e["attribute"]) for e in published] == [
            ("kitchen", "switch"),
            ("kitchen", "level"),
            ("light/7", "switch"),
        ]
    finally:
        await subscription.unsubscribe()
        await engine.close()
        await engine.hue.close()


@pytest.mark.asyncio
async def test_button_events_from_eventstream(scheduler):
    registry = DeviceRegistry(auto_register=False)
    registry.register(
        DeviceHandle(device_id="dimmer", kind="sensor", bridge_id="5", button_numbers={"b-on": 1, "b-off": 4})
    )
    engine = _engine(FakeBridge(), scheduler, registry=registry)
    events = []

    async def _button(rid: str, last_event: str) -> None:
        before = engine.projector.snapshot("dimmer")
        await engine.handle_stream_frame(
            StreamFrame(
                kind=FrameKind.DATA,
                payload=[{"type": "update", "data": [{"id": rid, "id_v1": "/sensors/5", "button": {"last_event": last_event}}]}],
            )
        )
        assert engine.projector.snapshot("dimmer") == before

    hub = EventHub()
    engine.hub = hub
    subscription = await hub.subscribe()
    try:
        for rid, last_event in [("b-on", "initial_press"), ("b-off", "repeat"), ("b-off", "repeat"), ("b-off", "long_release")]:
            await _button(rid, last_event)
        while not subscription.queue.empty():
            data = subscription.queue.get_nowait()["data"]
            events.append((data["attribute"], data["value"]))
        assert events == [("pushed", 1), ("held", 4), ("released", 4)]
    finally:
        await subscription.unsubscribe()
        await engine.close()
        await engine.hue.close()


@pytest.mark.asyncio
async def test_refresh_polls_lights_groups_and_sensors(scheduler):
    bridge = FakeBridge(
        {
            ("GET", "/api/abc/lights"): (200, {"1": {"state": {"on": False, "bri": 254, "reachable": True}}}),
            ("GET", "/api/abc/groups"): (
                200,
                {"2": {"action": {"on": False, "bri": 127}, "state": {"any_on": True, "all_on": False}}},
            ),
            ("GET", "/api/abc/sensors"): (
                200,
                {"8": {"state": {"presence": True}, "config": {"on": True, "battery": 61}}},
            ),
        }
    )
    engine = _engine(bridge, scheduler)
    try:
        await engine.stage_command("kitchen", {"level": 30})
        events = await engine.refresh()

        assert [m for m, _, _ in bridge.requests] == ["GET", "GET", "GET"]
        assert engine.projector.snapshot("kitchen") == {"switch": "off", "reachable": "true"}
        assert engine.projector.snapshot("group/2") == {"switch": "on", "level": 50}
        assert engine.projector.snapshot("sensor/8") == {"motion": "active", "battery": 61}
        assert len(events) == 6
        assert engine.health.online is True
    finally:
        await engine.close()
        await engine.hue.close()


@pytest.mark.asyncio
async def test_refresh_stops_on_transport_error(scheduler):
    bridge = FakeBridge({("GET", "/api/abc/lights"): (503, {"error": "busy"})})
    engine = _engine(bridge, scheduler)
    try:
        assert await engine.refresh() == []
        assert len(bridge.requests) == 1
        assert engine.health.online is False
    finally:
        await engine.close()
        await engine.hue.close()


@pytest.mark.asyncio
async def test_snapshot_seeds_projector_on_start(scheduler):
    db = Database(db_path=":memory:")
    await db.connect()
    await db.upsert_attribute(device_id="kitchen", attribute="switch", value="on", unit=None)
    await db.upsert_attribute(device_id="kitchen", attribute="level", value=50, unit="%")
    bridge = FakeBridge({("GET", "/api/abc/lights"): (200, {"1": {"state": {"on": True, "bri": 127}}})})
    engine = _engine(bridge, scheduler, db=db)
    try:
        await engine.start()
        events = await engine.refresh()
        assert events == []

        await engine.command("kitchen", {"level": 100})
        rows = {(d, a): v for d, a, v in await db.load_attributes()}
        assert rows[("kitchen", "level")] == 100
    finally:
        await engine.close()
        await engine.hue.close()
        await db.close()


def _scene_events(events):
    return [(e.device_id, e.name, e.value) for e in events]


@pytest.mark.asyncio
async def test_level_command_on_staged_off_light_waits_for_switch_on(scheduler):
    bridge = FakeBridge()
    engine = _engine(bridge, scheduler)
    try:
        await engine.apply_bridge_state(engine.require_device("kitchen"), {"on": False, "bri": 30})

        outcome = await engine.command("kitchen", {"level": 80})
        assert outcome.sent is False
        assert outcome.wire == {"bri": 203}
        assert bridge.requests == []
        assert engine.batcher.peek("kitchen") == {"bri": 203}

        outcome = await engine.command("kitchen", {"switch": "on"})
        assert bridge.requests == [("PUT", "/api/abc/lights/1/state", {"bri": 203, "on": True})]
        assert sorted(_names(outcome.events)) == [("level", 80), ("switch", "on")]
    finally:
        await engine.close()
        await engine.hue.close()


@pytest.mark.asyncio
async def test_level_command_turns_light_on_without_staging(scheduler):
    bridge = FakeBridge()
    engine = _engine(bridge, scheduler)
    engine.registry.register(DeviceHandle(device_id="hall", kind="light", bridge_id="2"))
    try:
        await engine.apply_bridge_state(engine.require_device("hall"), {"on": False, "bri": 30})
        engine.projector.seed("kitchen", "switch", "on")

        await engine.command("hall", {"level": 80})
        await engine.command("kitchen", {"colorTemperature": 2700})

        assert bridge.requests == [
            ("PUT", "/api/abc/lights/2/state", {"bri": 203, "on": True}),
            ("PUT", "/api/abc/lights/1/state", {"ct": 370, "on": True}),
        ]
    finally:
        await engine.close()
        await engine.hue.close()


@pytest.mark.asyncio
async def test_staged_switch_off_is_not_overridden(scheduler):
    bridge = FakeBridge()
    engine = _engine(bridge, scheduler)
    engine.registry.register(DeviceHandle(device_id="hall", kind="light", bridge_id="2"))
    try:
        await engine.stage_command("hall", {"switch": "off"})
        await engine.command("hall", {"level": 10})
        assert bridge.requests == [("PUT", "/api/abc/lights/2/state", {"on": False, "bri": 25})]
    finally:
        await engine.close()
        await engine.hue.close()


@pytest.mark.asyncio
async def test_scene_activation_switches_off_other_scenes_of_its_group(scheduler):
    bridge = FakeBridge()
    engine = _engine(bridge, scheduler)
    engine.registry.register(DeviceHandle(device_id="sA", kind="scene", bridge_id="abc", group_id="3"))
    engine.registry.register(DeviceHandle(device_id="sB", kind="scene", bridge_id="def", group_id="3"))
    engine.registry.register(DeviceHandle(device_id="sC", kind="scene", bridge_id="ghi", group_id="4"))
    try:
        first = await engine.command("sA", {"switch": "on"})
        other_group = await engine.command("sC", {"switch": "on"})
        second = await engine.command("sB", {"switch": "on"})
        again = await engine.command("sA", {"switch": "on"})

        assert _scene_events(first.events) == [("sB", "switch", "off"), ("sA", "switch", "on")]
        assert _scene_events(other_group.events) == [("sC", "switch", "on")]
        assert _scene_events(second.events) == [("sA", "switch", "off"), ("sB", "switch", "on")]
        assert _scene_events(again.events) == [("sB", "switch", "off"), ("sA", "switch", "on")]
        assert engine.projector.last_value("sC", "switch") == "on"
        assert {path for _, path, _ in bridge.requests} == {"/api/abc/groups/0/action"}
    finally:
        await engine.close()
        await engine.hue.close()


@pytest.mark.asyncio
async def test_scene_off_switches_its_group_off(scheduler):
    bridge = FakeBridge()
    engine = _engine(bridge, scheduler)
    engine.registry.register(DeviceHandle(device_id="sA", kind="scene", bridge_id="abc", group_id="3"))
    try:
        await engine.command("sA", {"switch": "on"})
        outcome = await engine.command("sA", {"switch": False})

        assert bridge.requests[-1] == ("PUT", "/api/abc/groups/3/action", {"on": False})
        assert _scene_events(outcome.events) == [("sA", "switch", "off")]
    finally:
        await engine.close()
        await engine.hue.close()


@pytest.mark.asyncio
async def test_forget_device_drops_state_and_pending_fields(scheduler):
    engine = _engine(FakeBridge(), scheduler)
    try:
        engine.projector.seed("kitchen", "switch", "on")
        await engine.stage_command("kitchen", {"level": 20})

        engine.forget_device("kitchen")

        assert engine.registry.get("kitchen") is None
        assert engine.batcher.peek("kitchen") is None
        assert engine.projector.snapshot("kitchen") == {}
        with pytest.raises(UnknownDeviceError):
            await engine.command("kitchen", {"switch": "on"})
    finally:
        await engine.close()
        await engine.hue.close()
