from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Callable

import httpx
from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from hue_bridge_sync.config import AppConfig
from hue_bridge_sync.db import Database
from hue_bridge_sync.engine import BridgeEngine, UnknownDeviceError
from hue_bridge_sync.event_hub import EventHub, make_event
from hue_bridge_sync.hue_client import HueClient
from hue_bridge_sync.hue_sync import poll_loop
from hue_bridge_sync.projector import EmissionMode
from hue_bridge_sync.registry import DeviceHandle, DeviceRegistry, parse_id_v1
from hue_bridge_sync.schemas import (
    BridgeStatusResponse,
    CommandRequest,
    CommandResponse,
    DeviceRegisterRequest,
    DeviceResponse,
    ErrorResponse,
    HealthResponse,
    ReadinessResponse,
    RefreshResponse,
)
from hue_bridge_sync.security import AuthContext, require_auth
from hue_bridge_sync.stream import BackoffState
from hue_bridge_sync.validator import SoftError, TransportError


logger = logging.getLogger("hue_bridge_sync")


@dataclass
class AppState:
    config: AppConfig
    db: Database
    hue: HueClient
    registry: DeviceRegistry
    hub: EventHub
    engine: BridgeEngine
    tasks: list[asyncio.Task]


def _handle_to_json(handle: DeviceHandle, aliases: list[str]) -> dict[str, Any]:
    return {
        "deviceId": handle.device_id,
        "kind": handle.kind,
        "bridgeId": handle.bridge_id,
        "name": handle.name,
        "hiRezHue": handle.hi_rez_hue,
        "stagingEnabled": handle.staging_enabled,
        "groupId": handle.group_id,
        "xyParsingMode": handle.xy_parsing_mode,
        "buttonNumbers": dict(handle.button_numbers),
        "aliases": aliases,
    }


def _register(registry: DeviceRegistry, config: AppConfig, request: DeviceRegisterRequest) -> DeviceHandle:
    aliases = []
    for alias in request.aliases:
        ref = parse_id_v1(alias)
        if ref is None:
            raise ValueError(f"invalid alias {alias!r}; expected e.g. /sensors/8")
        aliases.append(ref)
    handle = DeviceHandle(
        device_id=request.deviceId or f"{request.kind}/{request.bridgeId}",
        kind=request.kind,
        bridge_id=request.bridgeId,
        name=request.name,
        hi_rez_hue=config.hi_rez_hue if request.hiRezHue is None else request.hiRezHue,
        staging_enabled=request.stagingEnabled,
        group_id=request.groupId,
        xy_parsing_mode=request.xyParsingMode or config.xy_parsing_mode,
        button_numbers=dict(request.buttonNumbers),
    )
    return registry.register(handle, aliases=aliases)


def create_app(config: AppConfig | None = None, *, hue_transport: httpx.AsyncBaseTransport | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = config or AppConfig.from_env()
        db = Database(db_path=cfg.db_path)
        await db.connect()

        hue = HueClient(
            bridge_host=cfg.bridge_host,
            application_key=cfg.application_key,
            timeout_seconds=cfg.request_timeout_seconds,
            transport=hue_transport,
        )
        registry = DeviceRegistry(
            auto_register=cfg.auto_register_devices,
            hi_rez_hue=cfg.hi_rez_hue,
            xy_parsing_mode=cfg.xy_parsing_mode,
        )
        for stored in await db.list_devices():
            try:
                _register(registry, cfg, DeviceRegisterRequest.model_validate(stored))
            except ValueError as exc:
                logger.warning("Skipping stored device %s: %s", stored.get("deviceId"), exc)
        hub = EventHub()

        def on_possible_address_change() -> None:
            # Discovery is not handled here; tell listeners the address may be stale.
            logger.warning("Bridge at %s unreachable; its address may have changed", hue.bridge_host)
            hub.publish_nowait(make_event("bridge.address_check", bridgeHost=hue.bridge_host))

        engine = BridgeEngine(
            hue=hue,
            registry=registry,
            hub=hub,
            db=db,
            emission_mode=EmissionMode(cfg.command_event_mode),
            push_enabled=cfg.use_event_stream,
            grace_seconds=cfg.stream_grace_seconds,
            backoff=BackoffState(base=cfg.stream_backoff_base_seconds, maximum=cfg.stream_backoff_max_seconds),
            on_possible_address_change=on_possible_address_change,
            rediscovery_cooldown_seconds=cfg.rediscovery_cooldown_seconds,
            retry_max_attempts=cfg.retry_max_attempts,
            retry_base_delay_ms=cfg.retry_base_delay_ms,
        )

        tasks: list[asyncio.Task] = []
        app.state.state = AppState(
            config=cfg, db=db, hue=hue, registry=registry, hub=hub, engine=engine, tasks=tasks
        )

        await engine.start()
        if cfg.bridge_host and cfg.application_key:
            tasks.append(asyncio.create_task(engine.refresh()))
            if cfg.poll_interval_seconds > 0:
                tasks.append(asyncio.create_task(poll_loop(engine, seconds=cfg.poll_interval_seconds)))
        else:
            logger.warning("HUE_BRIDGE_HOST/HUE_APPLICATION_KEY not set; bridge sync is idle")

        try:
            yield
        finally:
            for task in tasks:
                task.cancel()
            for task in tasks:
                try:
                    await task
                except BaseException:
                    pass
            await engine.close()
            await hue.close()
            await db.close()

    app = FastAPI(
        title="Hue Bridge Sync",
        version="0.1.0",
        description=(
            "Mirrors Hue bridge lights, groups, scenes, sensors and buttons as canonical attributes.\n\n"
            "All `/v1/*` endpoints require `Authorization: Bearer <token>`.\n\n"
            "- **404** unknown device\n"
            "- **424** bridge unreachable\n"
            "- **502** bridge rejected the command\n"
        ),
        lifespan=lifespan,
    )
    _install_routes(app)
    return app


def _state(request: Request) -> AppState:
    return request.app.state.state


def _install_routes(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        code = "invalid_request"
        for err in exc.errors():
            if err.get("type") == "json_invalid":
                code = "invalid_json"
                break
        details = json.loads(json.dumps(exc.errors(), default=str))
        return JSONResponse(
            {"error": code, "message": "Request validation failed", "details": details},
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    @app.middleware("http")
    async def access_log(request: Request, call_next: Callable[[Request], Response]):
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "%s %s -> %s (%.1fms)",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
        )
        return response

    @app.get("/healthz", summary="Liveness check", response_model=HealthResponse, tags=["meta"])
    async def healthz() -> HealthResponse:
        return {"ok": True}

    @app.get(
        "/readyz",
        summary="Readiness check",
        description="Ready once the bridge is configured and the last exchange with it succeeded.",
        response_model=ReadinessResponse,
        tags=["meta"],
    )
    async def readyz(request: Request) -> ReadinessResponse:
        state = _state(request)
        if not state.hue.bridge_host:
            return JSONResponse({"ready": False, "reason": "missing_bridge_host"}, status_code=503)
        if not state.hue.application_key:
            return JSONResponse({"ready": False, "reason": "missing_application_key"}, status_code=503)
        if state.engine.health.online is not True:
            return JSONResponse({"ready": False, "reason": "bridge_offline"}, status_code=503)
        return {"ready": True}

    @app.get("/v1/bridge", response_model=BridgeStatusResponse, tags=["bridge"])
    async def bridge_status(request: Request, _: AuthContext = Depends(require_auth)) -> BridgeStatusResponse:
        engine = _state(request).engine
        return {
            "online": engine.health.online,
            "streamState": engine.stream.state.value,
            "pushEnabled": engine.stream.push_enabled,
            "pushActive": engine.push_active,
            "nextBackoffSeconds": engine.stream.backoff.pending_delay,
            "pendingDevices": engine.batcher.pending_devices(),
        }

    @app.post(
        "/v1/devices",
        status_code=status.HTTP_201_CREATED,
        response_model=DeviceResponse,
        responses={400: {"model": ErrorResponse}},
        tags=["devices"],
    )
    async def register_device(
        request: Request, payload: DeviceRegisterRequest, _: AuthContext = Depends(require_auth)
    ) -> DeviceResponse:
        state = _state(request)
        try:
            handle = _register(state.registry, state.config, payload)
        except ValueError as exc:
            return JSONResponse({"error": "invalid_alias", "message": str(exc)}, status_code=400)
        await state.db.upsert_device(
            device_id=handle.device_id,
            kind=handle.kind,
            bridge_id=handle.bridge_id,
            data=_handle_to_json(handle, payload.aliases),
        )
        return _device_response(state, handle)

    @app.post(
        "/v1/devices/{device_id:path}/commands",
        response_model=CommandResponse,
        responses={
            400: {"model": ErrorResponse},
            404: {"model": ErrorResponse},
            424: {"model": ErrorResponse},
            502: {"model": ErrorResponse},
        },
        tags=["devices"],
    )
    async def device_command(
        request: Request, device_id: str, payload: CommandRequest, _: AuthContext = Depends(require_auth)
    ) -> CommandResponse:
        engine = _state(request).engine
        try:
            outcome = await engine.command(
                device_id, payload.attributes, replace=payload.replace, send=payload.send
            )
        except UnknownDeviceError:
            return JSONResponse({"error": "unknown_device", "message": device_id}, status_code=404)
        except (TypeError, ValueError) as exc:
            return JSONResponse({"error": "invalid_command", "message": str(exc)}, status_code=400)

        if isinstance(outcome.verdict, SoftError):
            return JSONResponse({"error": "bridge_error", "message": outcome.verdict.message}, status_code=502)
        if isinstance(outcome.verdict, TransportError):
            return JSONResponse({"error": "bridge_unreachable", "message": outcome.verdict.message}, status_code=424)
        return {
            "deviceId": outcome.device_id,
            "sent": outcome.sent,
            "wire": outcome.wire,
            "events": [e.as_dict() for e in outcome.events],
        }

    @app.delete(
        "/v1/devices/{device_id:path}",
        status_code=status.HTTP_204_NO_CONTENT,
        responses={404: {"model": ErrorResponse}},
        tags=["devices"],
    )
    async def delete_device(request: Request, device_id: str, _: AuthContext = Depends(require_auth)) -> Response:
        state = _state(request)
        if state.registry.get(device_id) is None:
            return JSONResponse({"error": "unknown_device", "message": device_id}, status_code=404)
        state.engine.forget_device(device_id)
        await state.db.delete_device_state(device_id)
        await state.db.delete_device(device_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get(
        "/v1/devices/{device_id:path}",
        response_model=DeviceResponse,
        responses={404: {"model": ErrorResponse}},
        tags=["devices"],
    )
    async def get_device(request: Request, device_id: str, _: AuthContext = Depends(require_auth)) -> DeviceResponse:
        state = _state(request)
        handle = state.registry.get(device_id)
        if handle is None:
            return JSONResponse({"error": "unknown_device", "message": device_id}, status_code=404)
        return _device_response(state, handle)

    @app.post("/v1/refresh", response_model=RefreshResponse, tags=["bridge"])
    async def refresh(request: Request, _: AuthContext = Depends(require_auth)) -> RefreshResponse:
        engine = _state(request).engine
        events = await engine.refresh()
        if engine.health.online is False:
            return JSONResponse({"error": "bridge_unreachable", "message": "poll failed"}, status_code=424)
        return {"online": engine.health.online, "events": [e.as_dict() for e in events]}

    @app.get(
        "/v1/events/stream",
        summary="Canonical event stream (SSE)",
        description=(
            "Each emitted attribute change, bridge health change and push state change is sent as one "
            "`data: <json>` frame. `: keepalive` comments are sent when idle."
        ),
        tags=["events"],
    )
    async def events_stream(request: Request, _: AuthContext = Depends(require_auth)):
        subscription = await _state(request).hub.subscribe()

        async def _gen():
            try:
                while True:
                    try:
                        event = await asyncio.wait_for(subscription.queue.get(), timeout=15.0)
                        yield f"data: {json.dumps(event, separators=(',', ':'), ensure_ascii=False)}\n\n"
                    except asyncio.TimeoutError:
                        yield ": keepalive\n\n"
            finally:
                await subscription.unsubscribe()

        return StreamingResponse(_gen(), media_type="text/event-stream")


def _device_response(state: AppState, handle: DeviceHandle) -> dict[str, Any]:
    return {
        "deviceId": handle.device_id,
        "kind": handle.kind,
        "bridgeId": handle.bridge_id,
        "name": handle.name,
        "attributes": state.engine.projector.snapshot(handle.device_id),
        "pending": state.engine.batcher.peek(handle.device_id),
    }


app = create_app()
