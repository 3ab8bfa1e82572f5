"""FastAPI application - REST API for the expert connect queue.

Caller identity comes from the ``X-Actor-Id`` / ``X-Actor-Role`` headers,
which the upstream auth gateway sets after authenticating the user.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from expert_connect.core.errors import (
    AccessDenied,
    Conflict,
    ExpertConnectError,
    InvalidInput,
    NotFound,
    StoreError,
)
from expert_connect.core.models import ActorRole
from expert_connect.lifecycle import parse_role
from expert_connect.service import ExpertConnectService

logger = logging.getLogger(__name__)

ERROR_STATUS: list[tuple[type[ExpertConnectError], int]] = [
    (InvalidInput, 400),
    (AccessDenied, 403),
    (NotFound, 404),
    (Conflict, 409),
    (StoreError, 503),
]


class AvailabilityUpdate(BaseModel):
    is_online: bool
    max_concurrent_clients: int | None = Field(default=None)


class RejectBody(BaseModel):
    reason: str | None = None


def create_app(service: ExpertConnectService | None = None, manage_lifecycle: bool = True) -> FastAPI:
    """Build the API around a service.

    With ``manage_lifecycle`` the app connects the service on startup and
    closes it on shutdown; tests pass an already-connected service instead.
    """
    svc = service or ExpertConnectService.from_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await svc.connect()
        yield
        if manage_lifecycle:
            await svc.close()

    app = FastAPI(title="Expert Connect", version="0.1.0", lifespan=lifespan)
    app.state.service = svc

    @app.exception_handler(ExpertConnectError)
    async def handle_domain_error(request: Request, exc: ExpertConnectError):
        status = 500
        for error_type, code in ERROR_STATUS:
            if isinstance(exc, error_type):
                status = code
                break
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status, content={"detail": str(exc)})

    # =====================================================================
    # Clients
    # =====================================================================

    @app.post("/api/requests")
    async def api_request_connection(x_actor_id: int = Header(...)):
        result = await svc.request_connection(x_actor_id)
        return result.model_dump(mode="json")

    @app.get("/api/requests/active")
    async def api_my_active_request(x_actor_id: int = Header(...), x_actor_role: str = Header(...)):
        result = await svc.my_active_request(x_actor_id, x_actor_role)
        return result.model_dump(mode="json")

    @app.get("/api/requests/{request_id}")
    async def api_get_status(request_id: int, x_actor_id: int = Header(...), x_actor_role: str = Header(...)):
        view = await svc.get_status(request_id, x_actor_id, x_actor_role)
        return view.model_dump(mode="json")

    @app.post("/api/requests/{request_id}/cancel")
    async def api_cancel(request_id: int, x_actor_id: int = Header(...), x_actor_role: str = Header(...)):
        view = await svc.cancel(request_id, x_actor_id, x_actor_role)
        return view.model_dump(mode="json")

    @app.post("/api/requests/{request_id}/connected")
    async def api_mark_connected(request_id: int, x_actor_id: int = Header(...), x_actor_role: str = Header(...)):
        view = await svc.mark_connected(request_id, x_actor_id, x_actor_role)
        return view.model_dump(mode="json")

    @app.post("/api/requests/{request_id}/complete")
    async def api_complete(request_id: int, x_actor_id: int = Header(...), x_actor_role: str = Header(...)):
        view = await svc.complete(request_id, x_actor_id, x_actor_role)
        return view.model_dump(mode="json")

    # =====================================================================
    # Experts
    # =====================================================================

    @app.put("/api/experts/me/availability")
    async def api_set_availability(body: AvailabilityUpdate, x_actor_id: int = Header(...)):
        availability = await svc.set_expert_online_status(
            x_actor_id, body.is_online, body.max_concurrent_clients
        )
        return availability.model_dump(mode="json")

    @app.get("/api/offers")
    async def api_list_offers(x_actor_id: int = Header(...)):
        offers = await svc.list_my_offers(x_actor_id)
        return [o.model_dump(mode="json") for o in offers]

    @app.post("/api/offers/{request_id}/accept")
    async def api_accept(request_id: int, x_actor_id: int = Header(...)):
        result = await svc.accept(request_id, x_actor_id)
        return result.model_dump(mode="json")

    @app.post("/api/offers/{request_id}/reject")
    async def api_reject(request_id: int, body: RejectBody | None = None, x_actor_id: int = Header(...)):
        view = await svc.reject(request_id, x_actor_id, body.reason if body else None)
        return view.model_dump(mode="json")

    # =====================================================================
    # Operators
    # =====================================================================

    @app.get("/api/admin/overview")
    async def api_queue_overview(x_actor_role: str = Header(...)):
        if parse_role(x_actor_role) != ActorRole.ADMIN:
            raise AccessDenied("Admin role required")
        overview = await svc.queue_overview()
        return overview.model_dump(mode="json")

    @app.get("/api/health")
    async def api_health():
        return {"status": "ok", "backend": svc.db.dialect}

    return app


app = create_app()
