from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from storefront import audit, events
from storefront.core.config import get_settings
from storefront.core.database import Base, get_db
from storefront.main import app


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_product(client: TestClient) -> str:
    response = client.post(
        "/catalog/products",
        json={"seller_id": "seller-1", "name": "Corr Widget", "has_tiered_pricing": True},
    )
    assert response.status_code == 201
    return response.json()["id"]


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/catalog/products/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/catalog/products/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_audit_and_event_use_request_correlation_id(client: TestClient) -> None:
    product_id = _create_product(client)
    response = client.put(
        f"/catalog/products/{product_id}/price-tiers",
        json={"tiers": [{"min_quantity": 1, "max_quantity": None, "unit_price": "10"}]},
        headers={"X-Correlation-Id": "corr-tiers-1"},
    )
    assert response.status_code == 200

    tier_audits = [entry for entry in audit.audit_entries if entry.get("entity_type") == "catalog.price_tiers"]
    assert tier_audits
    assert tier_audits[-1]["correlation_id"] == "corr-tiers-1"

    replaced = [item for item in events.published_events if item.get("event_type") == "catalog.price_tiers.replaced"]
    assert replaced
    assert replaced[-1].get("correlation_id") == "corr-tiers-1"


def test_malformed_correlation_id_is_replaced(client: TestClient) -> None:
    response = client.get(f"/catalog/products/{uuid.uuid4()}", headers={"X-Correlation-Id": "bad id with spaces"})
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value and header_value != "bad id with spaces"
    assert response.json()["correlation_id"] == header_value
