"""HTTP API server exposing the device control surface."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn

from .config import Config
from .control import ControlService
from .logging import get_logger, redact_mapping
from .metrics import (
    METRICS_CONTENT_TYPE,
    latest_metrics,
    observe_request,
)
from .models import Envelope

_STATUS_BY_KIND: Dict[Optional[str], int] = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "validation": status.HTTP_400_BAD_REQUEST,
    "unsupported": status.HTTP_400_BAD_REQUEST,
    "protocol": status.HTTP_502_BAD_GATEWAY,
}


def envelope_response(envelope: Envelope, success_status: int = status.HTTP_200_OK) -> JSONResponse:
    """Render an envelope with the status code matching its error kind."""

    if envelope.success:
        code = success_status
    else:
        code = _STATUS_BY_KIND.get(envelope.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    return JSONResponse(status_code=code, content=envelope.as_dict())


def _build_auth_dependency(config: Config) -> Callable[[Request], Any]:
    async def _auth_guard(request: Request) -> None:
        if not config.api_key and not config.api_bearer_token:
            return
        api_key_header = request.headers.get("X-API-Key")
        auth_header = request.headers.get("Authorization")
        if config.api_key and api_key_header == config.api_key:
            return
        if config.api_key and auth_header and auth_header.lower().startswith("apikey "):
            if auth_header.split(" ", 1)[1] == config.api_key:
                return
        if config.api_bearer_token and auth_header and auth_header.startswith("Bearer "):
            if auth_header.split(" ", 1)[1] == config.api_bearer_token:
                return
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return _auth_guard


class DeviceCreate(BaseModel):
    """Payload for registering a device."""

    id: str
    ip: str
    name: Optional[str] = None
    alias: Optional[str] = None
    type: Optional[str] = None
    brand: Optional[str] = None
    capabilities: Optional[List[str]] = None
    room: Optional[str] = None
    model: Optional[str] = None
    mac: Optional[str] = None
    note: Optional[str] = None
    probe: bool = False


class DeviceUpdate(BaseModel):
    """Partial update payload for a device; omitted fields are left alone."""

    name: Optional[str] = None
    alias: Optional[str] = None
    ip: Optional[str] = None
    type: Optional[str] = None
    brand: Optional[str] = None
    capabilities: Optional[List[str]] = None
    room: Optional[str] = None
    model: Optional[str] = None
    mac: Optional[str] = None
    note: Optional[str] = None


class ColorValue(BaseModel):
    r: int
    g: int
    b: int


class ControlBody(BaseModel):
    """Unified control payload."""

    action: str
    brightness: Optional[int] = None
    color: Optional[ColorValue] = None
    color_temp: Optional[int] = None
    hue: Optional[int] = None
    saturation: Optional[int] = None


class PowerBody(BaseModel):
    state: str


class BrightnessBody(BaseModel):
    level: int


class ColorBody(BaseModel):
    r: int
    g: int
    b: int
    brightness: Optional[int] = None


def create_app(config: Config, service: ControlService) -> FastAPI:
    """Create and configure a FastAPI application."""

    logger = get_logger("smarthome.api")
    request_logger = get_logger("smarthome.api.middleware")
    auth_dependency = _build_auth_dependency(config)
    app = FastAPI(
        title="Smart Home LAN Bridge API",
        docs_url="/docs" if config.api_docs else None,
        redoc_url="/redoc" if config.api_docs else None,
        openapi_url="/openapi.json" if config.api_docs else None,
    )

    @app.middleware("http")
    async def _logging_middleware(request: Request, call_next: Callable[..., Any]) -> Response:
        start = time.perf_counter()
        redacted_headers = redact_mapping(dict(request.headers))
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("Unhandled API error", extra={"method": request.method, "path": request.url.path})
            response = envelope_response(Envelope.fail("Internal server error"))
        duration_seconds = time.perf_counter() - start
        path_template = getattr(request.scope.get("route"), "path", request.url.path)
        observe_request(
            request.method,
            path_template,
            response.status_code,
            duration_seconds,
        )
        request_logger.info(
            "Handled request",
            extra={
                "method": request.method,
                "path": path_template,
                "status": response.status_code,
                "duration_ms": round(duration_seconds * 1000, 2),
                "client": request.client.host if request.client else None,
                "headers": redacted_headers,
            },
        )
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _http_exc_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        request_logger.warning(
            "API error",
            extra={"path": request.url.path, "status": exc.status_code, "detail": exc.detail},
        )
        message = "Endpoint not found" if exc.status_code == status.HTTP_404_NOT_FOUND else str(exc.detail)
        return JSONResponse(
            status_code=exc.status_code,
            content=Envelope.fail(message).as_dict(),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        request_logger.warning(
            "Validation error",
            extra={"path": request.url.path, "errors": exc.errors()},
        )
        details = "; ".join(
            f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}"
            for error in exc.errors()
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=Envelope.fail(f"Invalid request: {details}").as_dict(),
        )

    guarded = [Depends(auth_dependency)]

    @app.get("/health", dependencies=guarded)
    async def health() -> JSONResponse:
        return envelope_response(Envelope.ok({"status": "ok", "devices": len(service.registry)}))

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=latest_metrics(), media_type=METRICS_CONTENT_TYPE)

    @app.get("/api/devices", dependencies=guarded)
    async def list_devices(
        room: Optional[str] = None,
        type: Optional[str] = None,
        brand: Optional[str] = None,
        online: Optional[bool] = None,
    ) -> JSONResponse:
        return envelope_response(await service.list_devices(room=room, device_type=type, brand=brand, online=online))

    @app.post("/api/devices", dependencies=guarded)
    async def register_device(payload: DeviceCreate) -> JSONResponse:
        fields = payload.model_dump(exclude_none=True, exclude={"probe"})
        envelope = await service.register_device(fields, probe=payload.probe)
        return envelope_response(envelope, success_status=status.HTTP_201_CREATED)

    @app.get("/api/devices/search/{query}", dependencies=guarded)
    async def search_devices(query: str) -> JSONResponse:
        return envelope_response(await service.search_devices(query))

    @app.get("/api/devices/{device_id}", dependencies=guarded)
    async def get_device(device_id: str) -> JSONResponse:
        return envelope_response(await service.get_device(device_id))

    @app.patch("/api/devices/{device_id}", dependencies=guarded)
    async def update_device(device_id: str, payload: DeviceUpdate) -> JSONResponse:
        return envelope_response(await service.update_device(device_id, payload.model_dump(exclude_unset=True)))

    @app.delete("/api/devices/{device_id}", dependencies=guarded)
    async def remove_device(device_id: str) -> JSONResponse:
        return envelope_response(await service.remove_device(device_id))

    @app.post("/api/devices/{device_id}/control", dependencies=guarded)
    async def control_device(device_id: str, payload: ControlBody) -> JSONResponse:
        return envelope_response(await service.control(device_id, payload.model_dump(exclude_none=True)))

    @app.post("/api/devices/{device_id}/power", dependencies=guarded)
    async def set_power(device_id: str, payload: PowerBody) -> JSONResponse:
        return envelope_response(await service.set_power(device_id, payload.state))

    @app.post("/api/devices/{device_id}/brightness", dependencies=guarded)
    async def set_brightness(device_id: str, payload: BrightnessBody) -> JSONResponse:
        return envelope_response(await service.set_brightness(device_id, payload.level))

    @app.post("/api/devices/{device_id}/color", dependencies=guarded)
    async def set_color(device_id: str, payload: ColorBody) -> JSONResponse:
        return envelope_response(
            await service.set_rgb_color(device_id, payload.r, payload.g, payload.b, payload.brightness)
        )

    @app.get("/api/registry/stats", dependencies=guarded)
    async def registry_stats() -> JSONResponse:
        return envelope_response(await service.stats())

    return app


class ApiService:
    """Lifecycle wrapper for the FastAPI/uvicorn server."""

    def __init__(self, config: Config, service: ControlService) -> None:
        self.config = config
        self.service = service
        self.logger = get_logger("smarthome.api")
        self._server: Optional[uvicorn.Server] = None
        self._server_task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        if self._server:
            return
        app = create_app(self.config, self.service)
        uvicorn_config = uvicorn.Config(
            app,
            host=self.config.api_host,
            port=self.config.api_port,
            log_config=None,
            loop="asyncio",
        )
        self._server = uvicorn.Server(config=uvicorn_config)
        self._server_task = asyncio.create_task(self._server.serve())
        self.logger.info(
            "API server starting",
            extra={"host": self.config.api_host, "port": self.config.api_port},
        )

    async def stop(self) -> None:
        if not self._server:
            return
        self.logger.info("Stopping API server")
        self._server.should_exit = True
        if self._server_task:
            await self._server_task
        self._server = None
        self._server_task = None
