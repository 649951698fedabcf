"""
Placement Kernel API — FastAPI endpoints.

Exposes the engine to hosts that cannot embed it directly:
- Snapshot inspection (whole state, one surface)
- Candidate supply
- Refresh triggers
- Run status and recent failures
- History recording and queries
"""

from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from placement_kernel.eligibility.resolver import EligibilityResolver
from placement_kernel.engine.engine import Engine
from placement_kernel.errors import GuardFailure
from placement_kernel.guards.impressions import ImpressionPolicyGuard
from placement_kernel.guards.removal import RemoveIneligibleGuard
from placement_kernel.guards.scheduling import SchedulingGuard
from placement_kernel.guards.sync import SyncStateGuard
from placement_kernel.history.log import HistoryLog
from placement_kernel.logs import configure_logging
from placement_kernel.models.content import Payload, materialize
from placement_kernel.models.engine import EngineConfig
from placement_kernel.models.history import HistoryEntry, HistoryEvent
from placement_kernel.storage.base import ItemStorage
from placement_kernel.storage.memory import InMemoryItemStorage


# --- Request/Response Models ---

class HistoryRecordRequest(BaseModel):
    payload_id: str
    surface: str
    variant: str
    event: HistoryEvent
    timestamp: Optional[datetime] = None


# --- Wiring ---

def build_engine(
    storage: Optional[ItemStorage] = None,
    history: Optional[HistoryLog] = None,
    resolver: Optional[EligibilityResolver] = None,
    config: Optional[EngineConfig] = None,
) -> Engine:
    """
    The standard pipeline: sync with candidates, schedule, apply impression
    policy, then evict anything ineligible.
    """
    resolver = resolver or EligibilityResolver()
    guards = [
        SyncStateGuard(),
        SchedulingGuard(),
        ImpressionPolicyGuard(),
        RemoveIneligibleGuard(resolver),
    ]
    return Engine(
        guards=guards,
        storage=storage or InMemoryItemStorage(),
        history=history or HistoryLog(),
        config=config,
    )


def _failure_detail(failure: GuardFailure) -> dict:
    return {
        "guard": failure.guard_name,
        "error": type(failure.cause).__name__,
        "message": str(failure.cause),
    }


# --- Application Factory ---

def create_app(
    engine: Optional[Engine] = None,
    storage: Optional[ItemStorage] = None,
    history: Optional[HistoryLog] = None,
    config: Optional[EngineConfig] = None,
    log_level: Optional[str] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    if log_level is not None:
        configure_logging(log_level)

    app = FastAPI(
        title="Placement Kernel API",
        description="Per-surface content placement with eligibility guards",
        version="0.1.0",
    )

    eng = engine or build_engine(storage=storage, history=history, config=config)

    # Store components on app state for access in endpoints
    app.state.engine = eng
    app.state.storage = eng.storage
    app.state.history = eng.history

    # === STATE ===

    @app.get("/state")
    def get_state():
        """Current published snapshot."""
        return eng.state.to_dict()

    @app.get("/surfaces/{surface}")
    def get_surface(surface: str):
        """One surface's active item and queue."""
        if surface not in eng.state.surfaces:
            raise HTTPException(404, "Surface not found")
        return eng.state.slot(surface).to_dict()

    # === CANDIDATES & RUNS ===

    @app.put("/candidates")
    async def put_candidates(payloads: List[Payload]):
        """Replace the candidate list and run the pipeline."""
        items = materialize(payloads)
        try:
            state = await eng.set_candidates(lambda previous, current: items)
        except GuardFailure as failure:
            raise HTTPException(409, _failure_detail(failure))
        return {"candidates": len(items), "state": state.to_dict()}

    @app.post("/refresh")
    async def refresh():
        """Re-run the pipeline over the current candidates."""
        try:
            state = await eng.refresh()
        except GuardFailure as failure:
            raise HTTPException(409, _failure_detail(failure))
        return state.to_dict()

    @app.get("/status")
    def status():
        """Engine status and counters."""
        return {
            "status": eng.status.value,
            "run_count": eng.run_count,
            "candidates": len(eng.candidates),
            "surfaces": eng.state.surfaces,
            "recent_errors": len(eng.recent_errors),
            "config": eng.config.model_dump(),
        }

    @app.get("/errors")
    def recent_errors():
        """Recent run failures, oldest first."""
        return [_failure_detail(f) for f in eng.recent_errors]

    # === HISTORY ===

    @app.get("/history")
    def get_history(
        limit: Optional[int] = None,
        item_id: Optional[str] = None,
        surface: Optional[str] = None,
        event: Optional[HistoryEvent] = None,
    ):
        """History entries, oldest first."""
        if item_id or surface or event:
            entries = eng.history.query(item_id=item_id, surface=surface, event=event)
            if limit is not None:
                entries = entries[-limit:] if limit else []
        else:
            entries = eng.history.entries(limit=limit)
        return [e.model_dump(mode="json") for e in entries]

    @app.post("/history")
    async def record_history(req: HistoryRecordRequest):
        """
        Record that the host showed or dismissed an item, update its
        counters, and refresh the placement.
        """
        timestamp = req.timestamp or datetime.now(timezone.utc)
        entry = HistoryEntry(
            item_id=f"{req.payload_id}::{req.variant}::{req.surface}",
            payload_id=req.payload_id,
            surface=req.surface,
            variant=req.variant,
            event=req.event,
            timestamp=timestamp,
        )
        eng.history.append(entry)

        key = (req.payload_id, req.surface, req.variant)
        if req.event == HistoryEvent.SHOWN:
            await eng.storage.record_shown(*key, at=entry.timestamp)
        elif req.event == HistoryEvent.DISMISSED:
            await eng.storage.record_dismissed(*key, at=entry.timestamp)

        try:
            state = await eng.refresh()
        except GuardFailure as failure:
            raise HTTPException(409, _failure_detail(failure))
        return {"entry": entry.model_dump(mode="json"), "state": state.to_dict()}

    return app


# Default application instance
app = create_app()
