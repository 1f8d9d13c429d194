"""HTTP facade over the tunnel manager.

Every route is a thin translation between JSON and a ``TunnelManager``
call. Handlers are plain ``def`` functions so FastAPI runs the blocking
manager operations in its worker thread pool.
"""

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .common.logging import get_logger
from .exceptions import (
    AlreadyActiveError,
    BindError,
    ConfigNotFoundError,
    InvalidPortError,
    PortInUseError,
    SshConnectError,
    SSHForwardError,
    TunnelNotFoundError,
)
from .tunnel import TunnelInfo, TunnelManager, TunnelSpec
from .utils import LOCAL_BIND_HOST

logger = get_logger(__name__)

_STATUS_CODES: dict[type[SSHForwardError], int] = {
    InvalidPortError: 400,
    ConfigNotFoundError: 404,
    TunnelNotFoundError: 404,
    AlreadyActiveError: 409,
    PortInUseError: 409,
    BindError: 409,
    SshConnectError: 502,
}


def status_code_for(error: SSHForwardError) -> int:
    for error_type, status_code in _STATUS_CODES.items():
        if isinstance(error, error_type):
            return status_code
    return 500


def error_message(error: SSHForwardError) -> str:
    if isinstance(error, SshConnectError):
        return error.user_message
    return str(error)


class ForwardRequest(BaseModel):
    """Body of ``POST /api/forward``."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    host: str = Field(min_length=1)
    local_port: int = Field(alias="localPort", ge=1, le=65535)
    remote_port: int = Field(alias="remotePort", ge=1, le=65535)
    remote_host: str | None = Field(default=None, alias="remoteHost")

    def to_spec(self) -> TunnelSpec:
        return TunnelSpec(
            host_alias=self.host,
            local_port=self.local_port,
            remote_port=self.remote_port,
            remote_host=self.remote_host,
        )


class HostCheckRequest(BaseModel):
    host: str = Field(min_length=1)


def serialize_tunnel(info: TunnelInfo) -> dict[str, Any]:
    spec = info.spec
    return {
        "connectionKey": info.key,
        "host": spec.host_alias,
        "config": {
            "srcHost": LOCAL_BIND_HOST,
            "srcPort": spec.local_port,
            "dstHost": spec.remote_host,
            "dstPort": spec.remote_port,
        },
        "startTime": info.start_time.isoformat(),
        "activeConnections": info.active_connections,
    }


def create_app(
    manager: TunnelManager,
    *,
    api_port: int | None = None,
    restore_on_startup: bool = True,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        manager: Tunnel manager to expose
        api_port: Port reported by ``/api/status``
        restore_on_startup: Replay the saved snapshot when the app starts

    Returns:
        Configured FastAPI application
    """
    started_at = time.monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if restore_on_startup:
            app.state.restore_result = await asyncio.to_thread(manager.restore_all)
        yield
        logger.info("Shutting down, closing all tunnels")
        await asyncio.to_thread(manager.close)

    app = FastAPI(title="sshfwd", lifespan=lifespan)
    app.state.manager = manager

    def uptime() -> float:
        return round(time.monotonic() - started_at, 3)

    @app.exception_handler(SSHForwardError)
    async def handle_forward_error(_request: Request, exc: SSHForwardError) -> JSONResponse:
        status_code = status_code_for(exc)
        if status_code >= 500:
            logger.error("Port forwarding error", error=str(exc))
        return JSONResponse(status_code=status_code, content={"error": error_message(exc)})

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(
        _request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        logger.debug("Rejected request", errors=str(exc))
        return JSONResponse(
            status_code=400,
            content={"error": "Missing or invalid parameters"},
        )

    @app.get("/api/ssh-configs")
    def list_ssh_configs() -> list[dict[str, Any]]:
        return [
            {
                "host": host.alias,
                "hostname": host.hostname,
                "port": host.port,
                "user": host.user,
                "identityFile": host.identity_file,
            }
            for host in manager.list_hosts()
        ]

    def start_forward(spec: TunnelSpec) -> dict[str, Any]:
        key = manager.create_tunnel(spec)
        return {"success": True, "message": spec.describe(), "connectionKey": str(key)}

    @app.post("/api/forward")
    def create_forward(body: ForwardRequest) -> dict[str, Any]:
        return start_forward(body.to_spec())

    @app.post("/api/quick-forward")
    def quick_forward(body: ForwardRequest) -> dict[str, Any]:
        return start_forward(body.model_copy(update={"remote_host": None}).to_spec())

    @app.delete("/api/forward/{connection_key}")
    def stop_forward(connection_key: str) -> dict[str, Any]:
        manager.stop_tunnel(connection_key)
        return {"success": True, "message": "Port forwarding stopped"}

    @app.get("/api/connections")
    def list_connections() -> list[dict[str, Any]]:
        return [serialize_tunnel(info) for info in manager.list_active()]

    @app.delete("/api/connections")
    def stop_all_connections() -> dict[str, Any]:
        result = manager.stop_all()
        response: dict[str, Any] = {
            "success": True,
            "message": f"Stopped {len(result.stopped)} connections",
            "stopped": result.stopped,
        }
        if result.errors:
            response["errors"] = [
                {"connectionKey": error.connection_key, "error": error.error}
                for error in result.errors
            ]
        return response

    @app.get("/api/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "activeConnections": len(manager.list_active()),
            "uptime": uptime(),
        }

    @app.get("/api/status")
    def status() -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        active = manager.list_active()
        return {
            "server": {
                "status": "running",
                "port": api_port,
                "uptime": uptime(),
                "timestamp": now.isoformat(),
            },
            "connections": {
                "total": len(active),
                "active": [
                    {
                        "connectionKey": info.key,
                        "host": info.spec.host_alias,
                        "localPort": info.spec.local_port,
                        "remotePort": info.spec.remote_port,
                        "remoteHost": info.spec.remote_host,
                        "startTime": info.start_time.isoformat(),
                        "duration": int((now - info.start_time).total_seconds() * 1000),
                        "activeConnections": info.active_connections,
                    }
                    for info in active
                ],
            },
        }

    @app.post("/api/test-ssh")
    def test_ssh(body: HostCheckRequest) -> dict[str, Any]:
        result = manager.check_host(body.host)
        return {
            "success": True,
            "host": result.host,
            "hostname": result.hostname,
            "port": result.port,
            "user": result.user,
            "connectTime": f"{result.connect_time_ms}ms",
            "testCommand": result.output,
        }

    @app.get("/api/ports/check/{port}")
    def check_port(port: str) -> dict[str, Any]:
        try:
            port_number = int(port)
        except ValueError as e:
            raise InvalidPortError("Invalid port number") from e

        available = manager.probe_port(port_number)
        return {
            "port": port_number,
            "available": available,
            "status": "free" if available else "in_use",
        }

    return app
