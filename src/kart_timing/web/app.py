"""FastAPI Web application: ingestion endpoint plus read endpoints."""

from __future__ import annotations

import logging
import threading
from datetime import date
from typing import Any

from dotenv import load_dotenv
from fastapi import Body, Depends, FastAPI, HTTPException

from kart_timing.config import PipelineConfig
from kart_timing.exceptions import (
    AccountNotFoundError,
    ConcurrencyConflictError,
    InvalidPayloadError,
    StorageError,
)
from kart_timing.records.leaderboard import BestRecord, BoardKind, Period, format_lap_time
from kart_timing.timing.models import SessionType
from kart_timing.web.schemas import (
    HealthResponse,
    IngestResponse,
    ManualBindRequest,
    RecordOut,
    RecordsResponse,
    RejectedOut,
    ResolutionOut,
    SessionsResponse,
)
from kart_timing.web.service import IngestionService

load_dotenv()  # loads .env from project root; must run before env vars are consumed

_logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

VERSION = "0.1.0"

app = FastAPI(title="Kart Timing", version=VERSION)

_service: IngestionService | None = None
_service_lock = threading.Lock()


def get_service() -> IngestionService:
    """Process-wide service; the differencer state must outlive a request."""
    global _service
    with _service_lock:
        if _service is None:
            _service = IngestionService.from_config(PipelineConfig.from_env())
        return _service


def _resolution_out(resolution) -> ResolutionOut:
    return ResolutionOut(
        display_name=resolution.display_name,
        tier=resolution.tier.value,
        method=resolution.method.value,
        identity_id=resolution.identity_id,
        account_id=resolution.account_id,
        person_id=resolution.person_id,
    )


def _record_out(record: BestRecord) -> RecordOut:
    return RecordOut(
        position=record.position,
        key=record.key,
        best_time=record.best_time,
        formatted_time=format_lap_time(record.best_time),
        driver_name=record.driver_name,
        kart_number=record.kart_number,
        session_id=record.session_id,
        session_name=record.session_name,
        session_date=record.session_date.isoformat(),
        session_time=record.session_time,
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(status="ok", version=VERSION)


@app.post("/api/snapshots", response_model=IngestResponse)
def ingest(
    payload: Any = Body(...),
    svc: IngestionService = Depends(get_service),
) -> IngestResponse:
    """Ingest one timing payload (long or short keys)."""
    try:
        result = svc.process_batch(payload)
    except InvalidPayloadError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except ConcurrencyConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except StorageError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except Exception as exc:
        _logger.exception("Unexpected ingestion failure")
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    return IngestResponse(
        session_id=result.session_id,
        session_name=result.session_name,
        session_type=result.session_type.value,
        recorded=result.recorded,
        duplicates=result.duplicates,
        updated=result.updated,
        unchanged=result.unchanged,
        rejected=[RejectedOut(index=r.index, reason=r.reason) for r in result.rejected],
        failed=result.failed,
        resolutions=[_resolution_out(r) for r in result.resolutions.values()],
    )


@app.get("/api/sessions", response_model=SessionsResponse)
def list_sessions(
    date: str = "",
    type: str = "",
    limit: int = 50,
    svc: IngestionService = Depends(get_service),
) -> SessionsResponse:
    """Session documents, newest first, filtered by ISO day and/or type."""
    try:
        day = _parse_day(date) if date else None
        session_type = SessionType(type) if type else None
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    try:
        sessions = svc.list_sessions(day, session_type, limit)
    except StorageError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return SessionsResponse(count=len(sessions), sessions=sessions)


@app.get("/api/sessions/{session_id}")
def get_session(session_id: str, svc: IngestionService = Depends(get_service)) -> dict:
    try:
        session = svc.get_session(session_id)
    except StorageError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session.to_dict()


@app.get("/api/identities/stats/{account_id}")
def driver_stats(account_id: str, svc: IngestionService = Depends(get_service)) -> dict:
    try:
        return svc.driver_stats(account_id)
    except StorageError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@app.get("/api/identities/{identity_id}")
def get_identity(identity_id: int, svc: IngestionService = Depends(get_service)) -> dict:
    try:
        identity = svc.get_identity(identity_id)
    except StorageError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if identity is None:
        raise HTTPException(status_code=404, detail="Identity not found")
    return identity.to_dict()


@app.post("/api/identities/manual-bind", response_model=ResolutionOut)
def manual_bind(
    req: ManualBindRequest, svc: IngestionService = Depends(get_service)
) -> ResolutionOut:
    """Privileged: bind a display name to a registered account."""
    try:
        resolution = svc.manual_bind(req.display_name, req.account_id, req.person_id, req.verified_by)
    except AccountNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except StorageError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return _resolution_out(resolution)


@app.get("/api/records/drivers", response_model=RecordsResponse)
def driver_records(
    filter: str = "week", svc: IngestionService = Depends(get_service)
) -> RecordsResponse:
    return _records(svc, BoardKind.DRIVER, filter)


@app.get("/api/records/karts", response_model=RecordsResponse)
def kart_records(
    filter: str = "week", svc: IngestionService = Depends(get_service)
) -> RecordsResponse:
    return _records(svc, BoardKind.KART, filter)


def _records(svc: IngestionService, kind: BoardKind, filter_name: str) -> RecordsResponse:
    try:
        period = Period(filter_name)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=f"unknown filter {filter_name!r}") from exc
    try:
        records = svc.records(kind, period)
    except StorageError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return RecordsResponse(
        board=kind.value,
        filter=period.value,
        records=[_record_out(r) for r in records],
    )


def _parse_day(value: str) -> date:
    return date.fromisoformat(value)
