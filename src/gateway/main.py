import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi import Request as FastAPIRequest
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as ModelValidationError

from gateway.broadcast import WebSocketBroadcaster
from gateway.schemas import (
    CredentialCheck,
    CredentialTestRequest,
    PricingUpdate,
    RetryRequest,
    SafetyFilterCreate,
    SafetyFilterUpdate,
    SessionCreate,
    SessionCreated,
    SummaryRow,
    TrackRequest,
    TrackResult,
)
from policy import PolicyEngine
from state.filters import SafetyFilterStore, load_filter_seed
from state.models import new_id, utcnow
from state.mongo import close_mongo, get_db, init_mongo
from state.pricing import PricingStore, load_pricing_seed
from state.usage import UsageQuery, UsageStore
from tracker import (
    PolicyDenial,
    ProviderRegistry,
    RecordNotFound,
    StorageError,
    UsageTracker,
    ValidationError,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Usage Meter Gateway", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event() -> None:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())

    # Initialize Mongo and indexes
    await init_mongo()
    db = get_db()

    usage = UsageStore(db=db)
    pricing = PricingStore(db=db)
    filters = SafetyFilterStore(db=db)
    await pricing.seed(load_pricing_seed())
    await filters.seed(load_filter_seed())

    registry = ProviderRegistry()
    broadcaster = WebSocketBroadcaster()
    tracker = UsageTracker(
        registry,
        usage,
        pricing,
        PolicyEngine(filters, usage, pricing),
        notifier=broadcaster,
    )

    app.state.registry = registry
    app.state.usage = usage
    app.state.pricing = pricing
    app.state.filters = filters
    app.state.broadcaster = broadcaster
    app.state.tracker = tracker

    logger.info("Gateway initialized with %d providers", len(registry.get_providers()))


@app.on_event("shutdown")
async def shutdown_event() -> None:
    tracker: Optional[UsageTracker] = getattr(app.state, "tracker", None)
    if tracker is not None:
        await tracker.publisher.drain()
    registry: Optional[ProviderRegistry] = getattr(app.state, "registry", None)
    if registry is not None:
        await registry.aclose()
    try:
        await close_mongo()
    except Exception as e:  # pragma: no cover
        logger.warning("Error closing MongoDB client: %s", e)


@app.get("/health", tags=["health"])
async def health():
    return {"status": "ok", "timestamp": utcnow().isoformat()}


@app.post("/api/usage/session")
async def create_session(req: SessionCreate):
    session_id = new_id()
    logger.info("Created session %s for user=%s team=%s", session_id, req.user_id, req.team_id)
    return SessionCreated(session_id=session_id, created_at=utcnow())


@app.post("/api/usage/track", response_model=TrackResult)
async def track_usage(req: TrackRequest, request: FastAPIRequest):
    tracker: UsageTracker = app.state.tracker
    try:
        return await tracker.track(req, _request_context(request))
    except Exception as e:
        return _tracking_error(e)


@app.post("/api/usage/retry/{record_id}", response_model=TrackResult)
async def retry_usage(record_id: str, req: RetryRequest, request: FastAPIRequest):
    tracker: UsageTracker = app.state.tracker
    try:
        return await tracker.retry(record_id, req.credential, _request_context(request))
    except Exception as e:
        return _tracking_error(e)


@app.get("/api/usage/logs")
async def usage_logs(
    user_id: Optional[str] = None,
    team_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    model_provider: Optional[str] = None,
    model_name: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    usage: UsageStore = app.state.usage
    query = UsageQuery(
        user_id=user_id,
        team_id=team_id,
        start=_as_utc(start_date),
        end=_as_utc(end_date),
        model_provider=model_provider,
        model_name=model_name,
        status=status,
    )
    records = await usage.list(query, limit=limit, offset=offset)
    return JSONResponse([r.model_dump(mode="json") for r in records])


@app.get("/api/usage/summary", response_model=List[SummaryRow])
async def usage_summary(
    user_id: Optional[str] = None,
    team_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    group_by: str = "day",
):
    usage: UsageStore = app.state.usage
    query = UsageQuery(user_id=user_id, team_id=team_id, start=_as_utc(start_date), end=_as_utc(end_date))
    try:
        rows = await usage.summary(query, group_by=group_by)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return [SummaryRow(**row) for row in rows]


@app.get("/api/usage/metrics/realtime")
async def realtime_metrics():
    usage: UsageStore = app.state.usage
    return JSONResponse(await usage.realtime_metrics())


@app.get("/api/stats")
async def usage_stats():
    usage: UsageStore = app.state.usage
    return JSONResponse(await usage.stats())


@app.post("/api/test-api-key", response_model=CredentialCheck)
async def test_api_key(req: CredentialTestRequest):
    tracker: UsageTracker = app.state.tracker
    return await tracker.test_credential(req.provider, req.credential, req.model)


@app.get("/api/models/{provider}")
async def provider_models(provider: str):
    registry: ProviderRegistry = app.state.registry
    adapter = registry.get_provider(provider)
    if adapter is None:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")
    return await adapter.models()


@app.get("/api/pricing")
async def list_pricing():
    pricing: PricingStore = app.state.pricing
    return JSONResponse([p.model_dump(mode="json") for p in await pricing.list_active()])


@app.post("/api/pricing")
async def update_pricing(req: PricingUpdate):
    pricing: PricingStore = app.state.pricing
    entry = await pricing.update(req.provider, req.model_name, req.input_cost, req.output_cost, req.currency)
    return JSONResponse(
        {"id": entry.id, "message": "Pricing updated successfully", "pricing": entry.model_dump(mode="json")}
    )


@app.get("/api/pricing/{provider}/{model_name}/history")
async def pricing_history(provider: str, model_name: str):
    pricing: PricingStore = app.state.pricing
    return JSONResponse([p.model_dump(mode="json") for p in await pricing.history(provider, model_name)])


@app.get("/api/safety-filters")
async def list_safety_filters(include_inactive: bool = False):
    filters: SafetyFilterStore = app.state.filters
    return JSONResponse([f.model_dump(mode="json") for f in await filters.list(include_inactive=include_inactive)])


@app.post("/api/safety-filters")
async def create_safety_filter(req: SafetyFilterCreate):
    filters: SafetyFilterStore = app.state.filters
    try:
        sf = await filters.create(req.model_dump(mode="json"))
    except ModelValidationError as e:
        return JSONResponse(status_code=400, content={"error": "Invalid safety filter rules", "details": str(e)})
    return JSONResponse(
        {"id": sf.id, "message": "Safety filter created successfully", "filter": sf.model_dump(mode="json")}
    )


@app.put("/api/safety-filters/{filter_id}")
async def update_safety_filter(filter_id: str, req: SafetyFilterUpdate):
    filters: SafetyFilterStore = app.state.filters
    try:
        sf = await filters.update(filter_id, req.model_dump(mode="json", exclude_none=True))
    except ModelValidationError as e:
        return JSONResponse(status_code=400, content={"error": "Invalid safety filter rules", "details": str(e)})
    if sf is None:
        raise HTTPException(status_code=404, detail="Safety filter not found")
    return JSONResponse({"message": "Safety filter updated successfully", "filter": sf.model_dump(mode="json")})


@app.websocket("/ws")
async def usage_events(ws: WebSocket):
    broadcaster: WebSocketBroadcaster = app.state.broadcaster
    await broadcaster.connect(ws)
    try:
        while True:
            message = await ws.receive_text()
            logger.debug("Ignoring WebSocket client message: %s", message)
    except WebSocketDisconnect:
        pass
    finally:
        await broadcaster.disconnect(ws)


def _request_context(request: FastAPIRequest) -> Dict[str, Any]:
    return {
        "user_agent": request.headers.get("user-agent"),
        "ip_address": request.client.host if request.client else None,
        "timestamp": utcnow().isoformat(),
    }


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # naive query dates are taken as UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _tracking_error(e: Exception) -> JSONResponse:
    if isinstance(e, ValidationError):
        return JSONResponse(status_code=400, content={"error": e.message, "fields": e.fields})
    if isinstance(e, PolicyDenial):
        return JSONResponse(
            status_code=403,
            content={"error": "Request blocked by safety filters", "reasons": e.reasons, "flags": e.flags},
        )
    if isinstance(e, RecordNotFound):
        return JSONResponse(status_code=404, content={"error": "Usage log not found", "id": e.record_id})
    if isinstance(e, StorageError):
        return JSONResponse(status_code=500, content={"error": "Failed to record usage"})
    logger.exception("Tracking failed: %s", e)
    return JSONResponse(status_code=500, content={"error": "Failed to track usage"})
