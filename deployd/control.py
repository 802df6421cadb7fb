"""
Loopback HTTP control plane shared by the Manager and Processor daemons.

Each daemon serves a small FastAPI application on its own port. Responses are
tagged variants (`status`, `ack`, `error`) serialized as JSON. Recoverable
errors are answered with status 200 and `kind: "error"`; only unexpected
exceptions produce a 500.

A daemon that finds its port taken assumes a predecessor is listening there,
asks it to terminate and retries the bind a bounded number of times.
"""

import asyncio
import errno
import logging
import os
import socket
from pathlib import Path
from typing import Any, Literal, Optional, Union

import httpx
import uvicorn
from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import Config
from .errors import (
    ControlPlaneUnreachable,
    DeploydError,
    LeaseIntegrityError,
    PortUnavailable,
)
from .lease import Lease, is_alive
from .logs import read_tail

logger = logging.getLogger(__name__)

ROLES = ("manager", "processor")
BIND_ATTEMPTS = 8
BIND_DELAY = 0.5
STATUS_RETRIES = 40
STATUS_RETRY_DELAY = 0.1
STATUS_LOG_LINES = 20


# Response variants
class StatusResponse(BaseModel):
    kind: Literal["status"] = "status"
    role: str
    pid: int
    alive: bool = True
    current_path: str
    details: dict[str, Any] = Field(default_factory=dict)
    log_tail: list[dict[str, Any]] = Field(default_factory=list)


class AckResponse(BaseModel):
    kind: Literal["ack"] = "ack"
    action: str
    message: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    kind: Literal["error"] = "error"
    error: str
    message: str


ControlResponse = Union[StatusResponse, AckResponse, ErrorResponse]

RESPONSE_KINDS = {
    "status": StatusResponse,
    "ack": AckResponse,
    "error": ErrorResponse,
}


def parse_response(data: dict) -> ControlResponse:
    """Turn a decoded JSON body into its response variant."""
    model = RESPONSE_KINDS.get(data.get("kind")) if isinstance(data, dict) else None
    if model is None:
        return ErrorResponse(error="InvalidResponse", message=f"Unrecognized response: {data!r}")
    return model.model_validate(data)


# Requests
class RestartRequest(BaseModel):
    upcomingPath: Optional[str] = Field(None, description="Built instance to swap in before restarting")


class DeployRequest(BaseModel):
    id: Optional[str] = Field(None, description="Pipeline run id, generated when omitted")
    repositoryPath: Optional[str] = Field(None, description="Repository to check out from")
    ref: Optional[str] = Field(None, description="Reference to deploy, HEAD when omitted")


class DaemonContext:
    """Mutable state of one daemon process, shared by its request handlers."""

    def __init__(self, role: str, config: Config, lease: Lease | None = None):
        if role not in ROLES:
            raise ValueError(f"Unknown daemon role: {role}")
        self.role = role
        self.config = config
        self.lease = lease or Lease(role, config.root)
        self.pid = os.getpid()
        self.server: uvicorn.Server | None = None
        self.stopping = False
        self.terminating = False

    async def ensure_ownership(self):
        """Re-read the daemon lease before a mutation.

        A live foreign owner means another daemon took over: we schedule our
        own exit and raise. Absent or dead-owner leases are rewritten as ours.
        """
        info = self.lease.read()
        if info is not None and info.pid == self.pid:
            return
        if info is not None and await is_alive(info.pid):
            logger.error(
                f"The {self.role} lease is held by pid {info.pid}, pid {self.pid} is exiting"
            )
            self.request_exit()
            raise LeaseIntegrityError(
                f"Lease {self.lease.name} at {self.lease.path} is held by pid {info.pid}"
            )
        if info is not None:
            logger.info(f"Overwriting lease {self.lease.name} of dead pid {info.pid}")
        self.lease.write(self.pid)

    def request_exit(self):
        self.terminating = True
        if self.server is not None:
            self.server.should_exit = True

    def release_lease(self):
        try:
            if self.lease.is_owned_by(self.pid):
                self.lease.release(self.pid)
        except LeaseIntegrityError as e:
            logger.warning(str(e))

    async def stop_managed(self):
        """Stop whatever the daemon manages. Overridden by each daemon."""

    async def shutdown(self):
        """Stop managed work (best effort) and exit the daemon, once."""
        if self.stopping:
            return
        self.stopping = True
        logger.info(f"Shutting down {self.role} daemon {self.pid}")
        try:
            await self.stop_managed()
        finally:
            self.request_exit()

    def log_tail(self, lines: int = STATUS_LOG_LINES) -> list[dict]:
        records = read_tail(self.config.log_path(self.role))
        return [r.to_dict() for r in records[-lines:]]

    async def details(self) -> dict:
        return {}

    async def status(self) -> StatusResponse:
        return StatusResponse(
            role=self.role,
            pid=self.pid,
            alive=not self.terminating,
            current_path=str(self.config.current_path),
            details=await self.details(),
            log_tail=self.log_tail(),
        )


def create_app(ctx: DaemonContext, lifespan=None) -> FastAPI:
    """FastAPI application with the routes every daemon serves."""
    app = FastAPI(
        title=f"deployd {ctx.role}",
        description=f"Control plane of the deployd {ctx.role} daemon",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.ctx = ctx

    @app.exception_handler(DeploydError)
    async def deployd_error_handler(request: Request, exc: DeploydError):
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        body = ErrorResponse(error=type(exc).__name__, message=str(exc))
        return JSONResponse(status_code=200, content=body.model_dump())

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unexpected error in {request.method} {request.url.path}")
        body = ErrorResponse(error=type(exc).__name__, message=str(exc))
        return JSONResponse(status_code=500, content=body.model_dump())

    @app.get("/status", response_model=StatusResponse)
    async def get_status():
        """Liveness, current slot and daemon specific details."""
        return await ctx.status()

    @app.post("/shutdown", response_model=AckResponse)
    async def shutdown():
        """Stop managed work, then exit. Answers once the stop is done."""
        if ctx.stopping:
            return AckResponse(action="shutdown", message="Shutdown already in progress")
        await ctx.shutdown()
        return AckResponse(action="shutdown", message=f"{ctx.role} is exiting")

    @app.post("/terminate", response_model=AckResponse)
    async def terminate(background_tasks: BackgroundTasks):
        """Exit the daemon. Answers immediately."""
        if ctx.stopping or ctx.terminating:
            return AckResponse(action="terminate", message="Termination already in progress")
        ctx.terminating = True
        background_tasks.add_task(ctx.shutdown)
        return AckResponse(action="terminate", message=f"{ctx.role} is exiting")

    return app


class ControlClient:
    """Client for a daemon's control plane."""

    def __init__(self, role: str, config: Config, timeout: float = 30.0):
        self.role = role
        self.config = config
        self.base_url = f"http://{config.host}:{config.port_for(role)}"
        self.timeout = httpx.Timeout(timeout, connect=2.0)

    async def request(
        self, method: str, path: str, json: dict | None = None, timeout: float | None = None
    ) -> ControlResponse:
        url = f"{self.base_url}{path}"
        request_timeout = httpx.Timeout(timeout, connect=2.0) if timeout else self.timeout
        try:
            async with httpx.AsyncClient(timeout=request_timeout) as client:
                response = await client.request(method, url, json=json)
        except httpx.ConnectError as e:
            if path in ("/terminate", "/shutdown"):
                return AckResponse(
                    action=path.lstrip("/"), message=f"The {self.role} daemon is not running"
                )
            raise ControlPlaneUnreachable(self.role, url) from e
        try:
            data = response.json()
        except ValueError:
            return ErrorResponse(
                error="InvalidResponse",
                message=f"{method} {path} returned {response.status_code}: {response.text[:200]}",
            )
        return parse_response(data)

    async def status(
        self, retries: int = STATUS_RETRIES, delay: float = STATUS_RETRY_DELAY
    ) -> ControlResponse:
        """GET /status, retrying while the daemon is not accepting connections."""
        for attempt in range(1, retries + 1):
            try:
                return await self.request("GET", "/status")
            except ControlPlaneUnreachable:
                if attempt >= retries:
                    raise
            await asyncio.sleep(delay)
        raise ControlPlaneUnreachable(self.role, self.base_url)

    async def start(self) -> ControlResponse:
        return await self.request("POST", "/start")

    async def restart(self, upcoming_path: Path | str | None = None) -> ControlResponse:
        body = {"upcomingPath": str(upcoming_path) if upcoming_path else None}
        bound = self.config.stop_stage_wait * 5 + self.config.start_grace + 30
        return await self.request("POST", "/restart", json=body, timeout=bound)

    async def stop(self) -> ControlResponse:
        return await self.request("POST", "/stop", timeout=self.config.stop_stage_wait * 5 + 10)

    async def shutdown(self) -> ControlResponse:
        return await self.request("POST", "/shutdown", timeout=self.config.stop_stage_wait * 5 + 10)

    async def terminate(self) -> ControlResponse:
        return await self.request("POST", "/terminate")

    async def deploy(
        self,
        run_id: str | None = None,
        ref: str | None = None,
        repository_path: Path | str | None = None,
    ) -> ControlResponse:
        body = {
            "id": run_id,
            "ref": ref,
            "repositoryPath": str(repository_path) if repository_path else None,
        }
        return await self.request("POST", "/deploy", json=body)


async def bind_control_socket(
    host: str,
    port: int,
    client: ControlClient | None = None,
    attempts: int = BIND_ATTEMPTS,
    delay: float = BIND_DELAY,
) -> socket.socket:
    """Bind and listen on the control port, replacing a predecessor if needed.

    Raises PortUnavailable when the port is still taken after every attempt.
    """
    for attempt in range(1, attempts + 1):
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
            sock.listen(128)
        except OSError as e:
            sock.close()
            if e.errno != errno.EADDRINUSE:
                raise
            logger.warning(
                f"Port {port} is in use (attempt {attempt}/{attempts}), "
                f"asking the process listening on it to terminate"
            )
            if client is not None:
                try:
                    await client.terminate()
                except (DeploydError, httpx.HTTPError) as err:
                    logger.info(f"Terminate request to port {port} failed: {err}")
            await asyncio.sleep(delay)
            continue
        logger.info(f"Control plane bound to {host}:{port}")
        return sock
    raise PortUnavailable(port, attempts)


async def serve(app: FastAPI, ctx: DaemonContext):
    """Bind the daemon's port and serve its control plane until asked to exit."""
    port = ctx.config.port_for(ctx.role)
    client = ControlClient(ctx.role, ctx.config)
    sock = await bind_control_socket(ctx.config.host, port, client)

    server = uvicorn.Server(
        uvicorn.Config(app, log_config=None, access_log=False, lifespan="on")
    )
    ctx.server = server
    try:
        await server.serve(sockets=[sock])
    finally:
        sock.close()
        ctx.release_lease()
