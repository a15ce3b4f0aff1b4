"""
FastAPI server: health, live recent transfers, transfer lookup, cursor status.

The lifespan builds the ingestion engine from settings and, when ingestion is
enabled, runs the scheduler as a background task on the server's event loop.
Reads go to the database first; the live endpoints call the engine directly.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field

from ledger_watchdog import __version__
from ledger_watchdog.config import Settings, get_settings
from ledger_watchdog.database.models import TransferRecord
from ledger_watchdog.ingestion.engine import IngestionEngine, build_engine
from ledger_watchdog.ingestion.models import TransferEvent
from ledger_watchdog.logging import get_logger
from ledger_watchdog.scheduler import IngestionScheduler

logger = get_logger(__name__)

SHUTDOWN_TIMEOUT_SEC = 15.0
MAX_LIVE_LIMIT = 100
MAX_LIVE_LOOKBACK_SEC = 7 * 86_400


# -----------------------------------------------------------------------------
# Response models
# -----------------------------------------------------------------------------


class TransferResponse(BaseModel):
    """One tracked-mint transfer, stored or fetched live."""

    signature: str = Field(..., description="Transaction signature (record key)")
    slot: int = Field(..., description="Slot containing the transaction")
    timestamp: int | None = Field(None, description="Unix block time")
    source: str | None = Field(None, description="Source token account")
    destination: str | None = Field(None, description="Destination token account")
    amount: str = Field(..., description="Amount in token units (decimal string)")
    raw_amount: str = Field("", description="Amount in base units (integer string)")
    type: str | None = Field(None, description="transfer or transferChecked; null for stored records")
    stored: bool = Field(..., description="True if served from the database")
    risk_score: float = Field(0.0, description="Risk score (stored records only)")
    labels: list[str] = Field(default_factory=list)
    hints: list[str] = Field(default_factory=list)

    @classmethod
    def from_event(cls, event: TransferEvent) -> "TransferResponse":
        return cls(
            signature=event.record_key,
            slot=event.slot,
            timestamp=event.block_time,
            source=event.source,
            destination=event.destination,
            amount=str(event.decimal_amount),
            raw_amount=event.raw_amount,
            type=event.instruction_kind,
            stored=False,
        )

    @classmethod
    def from_record(cls, record: TransferRecord) -> "TransferResponse":
        return cls(
            signature=record.signature,
            slot=record.slot,
            timestamp=record.timestamp,
            source=record.source,
            destination=record.destination,
            amount=str(record.amount),
            raw_amount=record.raw_amount,
            stored=True,
            risk_score=record.risk_score,
            labels=record.labels,
            hints=record.hints,
        )


class CursorResponse(BaseModel):
    source: str = Field(..., description="Ingestion source name")
    last_slot: int = Field(..., description="Last fully scanned slot")
    last_signature: str | None = Field(None, description="Last signature written by the cursor's cycle")
    last_run_at: int | None = Field(None, description="Unix time of the last cycle")
    active: bool = Field(..., description="False when ingestion is paused for this source")


class HealthResponse(BaseModel):
    status: str = Field(..., description="ok while the API is up")
    version: str
    ingestion_enabled: bool
    scheduler: dict[str, Any] | None = Field(None, description="Scheduler state and last cycle")


# -----------------------------------------------------------------------------
# Lifespan: build engine, start scheduler task (never blocks API)
# -----------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings or get_settings()
    app.state.settings = settings
    owns_engine = app.state.engine is None
    engine: IngestionEngine = app.state.engine or build_engine(settings)
    app.state.engine = engine
    app.state.scheduler = None
    task: asyncio.Task | None = None

    if settings.ingestion_enabled:
        scheduler = IngestionScheduler(
            engine,
            interval_sec=settings.interval_sec,
            cycle_timeout_sec=settings.cycle_timeout_sec,
        )
        app.state.scheduler = scheduler
        task = asyncio.create_task(scheduler.run())
        logger.info("api_scheduler_started", interval_sec=settings.interval_sec, source=settings.source)
    else:
        logger.info("api_ingestion_disabled")

    yield

    if task is not None:
        app.state.scheduler.stop()
        try:
            await asyncio.wait_for(task, timeout=SHUTDOWN_TIMEOUT_SEC)
            logger.info("api_scheduler_stopped")
        except asyncio.TimeoutError:
            logger.warning("api_scheduler_shutdown_timeout", timeout_sec=SHUTDOWN_TIMEOUT_SEC)
    if owns_engine:
        await engine.aclose()


# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------


def get_engine(request: Request) -> IngestionEngine:
    return request.app.state.engine


def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings


# -----------------------------------------------------------------------------
# App and routes
# -----------------------------------------------------------------------------


def create_app(settings: Settings | None = None, engine: IngestionEngine | None = None) -> FastAPI:
    """Build the app; settings/engine default to env-built instances at startup."""
    app = FastAPI(
        title="Ledger Watchdog API",
        description="Tracked-mint transfer ingestion: live queries and stored transfers.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.scheduler = None

    @app.get("/health", response_model=HealthResponse)
    def health(request: Request, settings: Settings = Depends(get_settings_dep)) -> HealthResponse:
        """Liveness probe plus scheduler status."""
        scheduler: IngestionScheduler | None = request.app.state.scheduler
        return HealthResponse(
            status="ok",
            version=__version__,
            ingestion_enabled=settings.ingestion_enabled,
            scheduler=scheduler.status() if scheduler else None,
        )

    @app.get("/transfers/live", response_model=list[TransferResponse])
    async def live_transfers(
        limit: int = Query(50, ge=1, le=MAX_LIVE_LIMIT),
        lookback_sec: int = Query(86_400, ge=1, le=MAX_LIVE_LOOKBACK_SEC),
        engine: IngestionEngine = Depends(get_engine),
    ) -> list[TransferResponse]:
        """Recent transfers near the chain head, newest first; empty on upstream failure."""
        events = await engine.fetch_recent(limit=limit, lookback_sec=lookback_sec)
        return [TransferResponse.from_event(e) for e in events]

    @app.get("/transfers/{signature}", response_model=TransferResponse)
    async def get_transfer(signature: str, engine: IngestionEngine = Depends(get_engine)) -> TransferResponse:
        """Stored record (per-instruction records match the bare signature), else live lookup."""
        signature = signature.strip()
        if not signature:
            raise HTTPException(status_code=400, detail="signature must be non-empty")
        record = await engine.get_stored_transfer(signature)
        if record is not None:
            return TransferResponse.from_record(record)
        event = await engine.fetch_transfer(signature)
        if event is None:
            raise HTTPException(status_code=404, detail="No tracked-mint transfer for this signature")
        return TransferResponse.from_event(event)

    @app.get("/ingestion/cursor", response_model=CursorResponse)
    def get_cursor(engine: IngestionEngine = Depends(get_engine)) -> CursorResponse:
        cursor = engine.db.get_cursor(engine.source)
        if cursor is None:
            raise HTTPException(status_code=404, detail=f"No cursor for source {engine.source}")
        return CursorResponse(**cursor.to_dict())

    return app
