"""
Mission Kernel API — FastAPI endpoints.

Exposes the engine via REST and a realtime websocket:
- Tracker webhook and tagged lifecycle events
- Entity transitions (reassign, complete, delete/destroy, edits, seen)
- Point ledger (direct award, corrections, balance, audit)
- Zone table and authoritative snapshot
- Realtime delta feed
"""

import asyncio
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, Header, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from mission_kernel import config
from mission_kernel.coordinator.ownership import OwnershipCoordinator
from mission_kernel.errors import (
    ConflictError,
    KernelError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from mission_kernel.logging_utils import create_error_response, get_logger, setup_logging
from mission_kernel.models.engine import EngineConfig
from mission_kernel.models.events import parse_event, parse_inbound
from mission_kernel.models.transition import TransitionResult
from mission_kernel.realtime.broadcaster import DeltaBroadcaster
from mission_kernel.storage.store import KernelStore
from mission_kernel.tracker.notifier import TrackerNotifier, build_notifier
from mission_kernel.zones.directory import ZoneDirectory, normalize_owner

logger = get_logger("mission_kernel.api")

_STATUS_CODES = {
    ValidationError: 400,
    NotFoundError: 404,
    ConflictError: 409,
    StorageError: 503,
}


# --- Request/Response Models ---

class ReassignRequest(BaseModel):
    new_owner: str


class SeenRequest(BaseModel):
    viewer: str


class AwardRequest(BaseModel):
    payee_id: Optional[str] = None
    source_id: str
    label: str
    points: int
    team_id: Optional[str] = None


class AdjustRequest(BaseModel):
    label: str
    points: int
    payee_id: Optional[str] = None
    team_id: Optional[str] = None


def _result_body(result: TransitionResult) -> dict:
    body = result.model_dump(mode="json")
    body["ok"] = True
    return body


# --- Application Factory ---

def create_app(
    store: Optional[KernelStore] = None,
    directory: Optional[ZoneDirectory] = None,
    engine_config: Optional[EngineConfig] = None,
    notifier: Optional[TrackerNotifier] = None,
    broadcaster: Optional[DeltaBroadcaster] = None,
    webhook_secret: Optional[str] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title=config.APP_TITLE,
        description=config.APP_DESCRIPTION,
        version=config.APP_VERSION,
    )

    ks = store or KernelStore(config.DATABASE_PATH)
    bc = broadcaster or DeltaBroadcaster()
    coordinator = OwnershipCoordinator(
        store=ks,
        directory=directory or ZoneDirectory(),
        config=engine_config or EngineConfig(team_id=config.DEFAULT_TEAM_ID),
        notifier=notifier or build_notifier(),
        broadcaster=bc,
    )
    ledger = coordinator.ledger
    secret = config.WEBHOOK_SECRET if webhook_secret is None else webhook_secret

    app.state.store = ks
    app.state.broadcaster = bc
    app.state.coordinator = coordinator

    @app.exception_handler(KernelError)
    async def kernel_error_handler(request, exc: KernelError):
        status_code = next(
            (code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)), 500
        )
        context = dict(exc.context)
        if exc.retryable:
            context["retryable"] = True
        return JSONResponse(
            content=create_error_response(exc.error_code, exc.message, context),
            status_code=status_code,
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request, exc: RequestValidationError):
        return JSONResponse(
            content=create_error_response(
                "validation_error", "Invalid request body", {"errors": len(exc.errors())}
            ),
            status_code=400,
        )

    @app.get("/health")
    def health():
        return {"status": "ok", "subscribers": bc.subscriber_count}

    # === EVENTS ===

    @app.post("/events/tracker")
    def tracker_webhook(
        payload: Any = Body(default=None),
        x_tracker_secret: Optional[str] = Header(default=None),
    ):
        """Inbound create/update from the tracker."""
        if secret and x_tracker_secret != secret:
            return JSONResponse(
                content=create_error_response("unauthorized", "Invalid webhook secret"),
                status_code=401,
            )
        event = parse_inbound(payload)
        return _result_body(coordinator.ingest(event))

    @app.post("/events")
    def submit_event(payload: Any = Body(default=None)):
        """Tagged lifecycle event: create | reassign | complete | delete."""
        return _result_body(coordinator.handle(parse_event(payload)))

    # === ENTITIES ===

    @app.get("/entities")
    def list_entities(owner: Optional[str] = None):
        entities = coordinator.snapshot()
        if owner is not None:
            wanted = normalize_owner(owner)
            entities = [e for e in entities if e.owner_id == wanted]
        return [e.model_dump(mode="json") for e in entities]

    @app.get("/entities/{entity_id}")
    def get_entity(entity_id: str):
        return coordinator.get(entity_id).model_dump(mode="json")

    @app.patch("/entities/{entity_id}")
    def update_entity(entity_id: str, changes: Dict[str, Any]):
        return _result_body(coordinator.update_fields(entity_id, changes))

    @app.post("/entities/{entity_id}/reassign")
    def reassign_entity(entity_id: str, req: ReassignRequest):
        return _result_body(coordinator.reassign(entity_id, req.new_owner))

    @app.post("/entities/{entity_id}/complete")
    def complete_entity(entity_id: str):
        return _result_body(coordinator.complete(entity_id))

    @app.post("/entities/{entity_id}/seen")
    def mark_seen(entity_id: str, req: SeenRequest):
        return _result_body(coordinator.mark_seen(entity_id, req.viewer))

    @app.delete("/entities/{entity_id}")
    def delete_entity(entity_id: str, privileged: bool = False):
        return _result_body(coordinator.delete(entity_id, privileged=privileged))

    # === LEDGER ===

    @app.post("/points/award")
    def award_points(req: AwardRequest):
        """Direct award; shares the (source_id, payee_id) domain with completions."""
        result = ledger.credit(
            team_id=req.team_id or coordinator.team_id,
            payee_id=normalize_owner(req.payee_id),
            source_id=req.source_id,
            label=req.label,
            points=req.points,
        )
        return {"ok": True, **result.model_dump(mode="json")}

    @app.post("/points/adjust")
    def adjust_points(req: AdjustRequest):
        """Human correction; the only way a balance goes down."""
        result = ledger.adjust(
            team_id=req.team_id or coordinator.team_id,
            label=req.label,
            points=req.points,
            payee_id=normalize_owner(req.payee_id),
        )
        return {"ok": True, **result.model_dump(mode="json")}

    @app.get("/teams/{team_id}/balance")
    def get_balance(team_id: str):
        return ledger.balance(team_id).model_dump(mode="json")

    @app.get("/teams/{team_id}/transactions")
    def get_transactions(team_id: str):
        return [t.model_dump(mode="json") for t in ledger.transactions(team_id)]

    @app.get("/teams/{team_id}/audit")
    def audit_ledger(team_id: str):
        return ledger.audit(team_id).model_dump(mode="json")

    # === ZONES & REALTIME ===

    @app.get("/zones")
    def get_zones():
        return coordinator.directory.to_dict()

    @app.get("/snapshot")
    def get_snapshot():
        return [e.model_dump(mode="json") for e in coordinator.snapshot()]

    @app.websocket("/realtime")
    async def realtime_feed(websocket: WebSocket):
        """Snapshot first, then every committed delta in publish order."""
        await websocket.accept()
        # Subscribe before reading the snapshot; stale deltas are dropped by revision.
        subscription = bc.subscribe()

        async def forward_deltas():
            while True:
                delta = await subscription.get()
                await websocket.send_json({"type": "delta", **delta.model_dump(mode="json")})

        forwarder = None
        try:
            entities = await asyncio.to_thread(coordinator.snapshot)
            await websocket.send_json({
                "type": "snapshot",
                "entities": [e.model_dump(mode="json") for e in entities],
            })
            forwarder = asyncio.create_task(forward_deltas())
            while True:
                # Keep alive; client messages are ignored
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.debug(f"Realtime subscriber {subscription.id} disconnected")
        finally:
            if forwarder is not None:
                forwarder.cancel()
            bc.unsubscribe(subscription)

    return app


setup_logging()

# Default application instance
app = create_app()
