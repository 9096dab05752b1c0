"""Shared fixtures for web tests."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from fastapi.testclient import TestClient

from kart_timing.config import PipelineConfig
from kart_timing.identity.models import Account
from kart_timing.identity.registry import InMemoryDriverRegistry
from kart_timing.timing.storage import TimingStorage
from kart_timing.web.app import app, get_service
from kart_timing.web.service import IngestionService

# 15:00 at the venue (UTC-3 in March).
NOW = datetime(2025, 3, 8, 18, 0, tzinfo=UTC)

ACCOUNTS = [
    Account(account_id="acc_diego", first_name="Diego", last_name="Soto"),
    Account(account_id="acc_juan", first_name="Juan", last_name="Perez"),
]


@pytest.fixture
def service(tmp_path):
    svc = IngestionService(
        TimingStorage(str(tmp_path / "web.db")),
        PipelineConfig(db_path=str(tmp_path / "web.db")),
        registry=InMemoryDriverRegistry(ACCOUNTS),
        clock=lambda: NOW,
        sleep=lambda s: None,
    )
    yield svc
    svc.close()


@pytest.fixture
def client(service):
    """FastAPI test client bound to a temporary database."""
    app.dependency_overrides[get_service] = lambda: service
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
