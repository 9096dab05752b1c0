"""Pydantic request/response schemas for the Web API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str
    version: str


class RejectedOut(BaseModel):
    index: int
    reason: str


class ResolutionOut(BaseModel):
    display_name: str
    tier: str
    method: str
    identity_id: int | None = None
    account_id: str | None = None
    person_id: str | None = None


class IngestResponse(BaseModel):
    session_id: str
    session_name: str
    session_type: str
    recorded: list[str]
    duplicates: list[str]
    updated: list[str]
    unchanged: list[str]
    rejected: list[RejectedOut]
    failed: list[str]
    resolutions: list[ResolutionOut] = []


class SessionsResponse(BaseModel):
    count: int
    sessions: list[dict[str, Any]]


class ManualBindRequest(BaseModel):
    display_name: str = Field(min_length=1)
    account_id: str = Field(min_length=1)
    person_id: str | None = None
    verified_by: str | None = None


class RecordOut(BaseModel):
    position: int
    key: str
    best_time: int
    formatted_time: str
    driver_name: str
    kart_number: int
    session_id: str
    session_name: str
    session_date: str
    session_time: str


class RecordsResponse(BaseModel):
    board: str
    filter: str
    records: list[RecordOut]
