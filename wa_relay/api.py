"""
FastAPI application factory and HTTP schemas for the relay.

The module exposes :func:`create_app`, which builds the small local HTTP
surface: ``POST /send-message`` to push a message through the connector,
``GET /status`` for liveness, ``POST /commands/run-now`` to trigger a tick and
``GET /metrics`` for Prometheus. When an API token is configured the mutating
routes and metrics require it in the ``x-auth`` header.
"""

from typing import Any, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel

from .errors import ConnectorUnavailable
from .logger import get_logger
from .models import LoopState, SendMessagePayload

API_TOKEN_HEADER_NAME = "x-auth"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
logger = get_logger("WaRelay.api")


class SendMessageResponse(BaseModel):
    """Result of ``POST /send-message``."""
    status: bool
    target: Optional[str] = None
    message: Optional[str] = None


class StatusResponse(BaseModel):
    """Snapshot served by ``GET /status``; field names follow the legacy payload."""
    status: LoopState
    clientReady: bool
    pendingIds: int
    timestamp: str
    sekolah: List[str]


class CommandStatus(BaseModel):
    ok: bool


def create_app(svc: Any, api_token: str | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        The :class:`wa_relay.core.RelayCore` serving the requests.
    api_token:
        Optional secret expected in the ``x-auth`` header.
    """
    api = FastAPI(title="WA Relay")
    api.state.service = svc
    api.state.api_token = api_token

    async def require_token(request: Request, token: str | None = Depends(api_key_scheme)) -> None:
        expected = getattr(request.app.state, "api_token", None)
        if expected is None:
            return
        if not token or token != expected:
            raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")

    auth_dependency = Depends(require_token)
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    @api.middleware("http")
    async def reject_while_shutting_down(request: Request, call_next):
        if svc.shutting_down:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": False, "message": "Server shutting down"},
            )
        return await call_next(request)

    @api.post("/send-message", response_model=SendMessageResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def send_message(payload: SendMessagePayload):
        """Send ``message`` to ``phone`` through the connector."""
        if svc.shutting_down:
            return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"status": False})
        try:
            target = await svc.send_message(payload.phone, payload.message)
        except ConnectorUnavailable as exc:
            return JSONResponse(status_code=500, content={"status": False, "message": str(exc)})
        except Exception as exc:
            logger.error("Error sending message to %s: %s", payload.phone, exc)
            return JSONResponse(status_code=500, content={"status": False, "message": str(exc) or type(exc).__name__})
        return SendMessageResponse(status=True, target=target)

    @api.get("/status", response_model=StatusResponse)
    async def relay_status():
        """Return the loop state, connector readiness and dedup store size."""
        return StatusResponse.model_validate(svc.status_snapshot())

    @router.post("/run-now", response_model=CommandStatus)
    async def run_now():
        """Wake the reconciliation loop immediately."""
        svc.run_now()
        return CommandStatus(ok=True)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the relay."""
        return Response(content=svc.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api
