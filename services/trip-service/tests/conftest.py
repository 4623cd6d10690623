import sys
from datetime import datetime, timezone
from pathlib import Path

import jwt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

# Ensure `services/trip-service` is on sys.path so `import app` works when
# running tests from the monorepo root.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app import events  # noqa: E402
from app.main import app  # noqa: E402
from app.models import Agent, Base, Cabin, Ship, ShipCapacity  # noqa: E402
from app.tenancy import get_engine  # noqa: E402

COMPANY_ID = "company-1"
OTHER_COMPANY_ID = "company-2"


def auth_headers(role: str = "staff", company_id: str | None = COMPANY_ID) -> dict[str, str]:
    token = jwt.encode({"role": role, "sub": "user-1", "name": "Dispatcher"}, "dev-secret-change-me", algorithm="HS256")
    headers = {"Authorization": f"Bearer {token}"}
    if company_id:
        headers["X-Company-Id"] = company_id
    return headers


@pytest.fixture
def engine():
    # One shared connection so every session sees the same in-memory database.
    eng = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def fleet(engine):
    """
    Seed one ship with two passenger decks, a cargo hold and a vehicle ramp.

    Deck-A 100, Deck-B 50, Hold-1 20, Ramp-1 10. A second company owns its own
    ship so tenancy can be checked.
    """
    ts = datetime(2026, 1, 1, tzinfo=timezone.utc)
    with Session(engine) as s, s.begin():
        s.add_all(
            [
                Cabin(id="deck-a", company_id=COMPANY_ID, name="Deck-A", type="passenger"),
                Cabin(id="deck-b", company_id=COMPANY_ID, name="Deck-B", type="passenger"),
                Cabin(id="hold-1", company_id=COMPANY_ID, name="Hold-1", type="cargo"),
                Cabin(id="ramp-1", company_id=COMPANY_ID, name="Ramp-1", type="vehicle"),
                Cabin(id="other-deck", company_id=OTHER_COMPANY_ID, name="Other-Deck", type="passenger"),
                Ship(id="ship-1", company_id=COMPANY_ID, name="MV Aurora", created_at=ts),
                Ship(id="ship-2", company_id=OTHER_COMPANY_ID, name="MV Borealis", created_at=ts),
                Agent(id="agent-x", company_id=COMPANY_ID, name="Agent X", code="AX"),
                Agent(id="agent-y", company_id=COMPANY_ID, name="Agent Y", code="AY"),
                Agent(id="agent-z", company_id=COMPANY_ID, name="Agent Z", code="AZ", status="Inactive"),
            ]
        )
        s.flush()
        s.add_all(
            [
                ShipCapacity(id="cap-p1", ship_id="ship-1", capacity_type="passenger", cabin_id="deck-a", cabin_name="Deck-A", seats=100),
                ShipCapacity(id="cap-p2", ship_id="ship-1", capacity_type="passenger", cabin_id="deck-b", cabin_name="Deck-B", seats=50),
                ShipCapacity(id="cap-c1", ship_id="ship-1", capacity_type="cargo", cabin_id="hold-1", cabin_name="Hold-1", seats=20),
                ShipCapacity(id="cap-v1", ship_id="ship-1", capacity_type="vehicle", cabin_id="ramp-1", cabin_name="Ramp-1", seats=10),
                ShipCapacity(id="cap-o1", ship_id="ship-2", capacity_type="passenger", cabin_id="other-deck", cabin_name="Other-Deck", seats=30),
            ]
        )
    return engine


@pytest.fixture
def published(monkeypatch):
    sent: list[tuple[str, dict]] = []

    async def _publish(routing_key, payload):
        sent.append((routing_key, payload))

    async def _publish_many(batch):
        sent.extend(batch)

    monkeypatch.setattr(events, "publish", _publish)
    monkeypatch.setattr(events, "publish_many", _publish_many)
    return sent


@pytest.fixture
def client(engine, fleet, published):
    app.dependency_overrides[get_engine] = lambda: engine
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def trip(client):
    r = client.post(
        "/trips",
        json={
            "ship_id": "ship-1",
            "trip_name": "Morning Crossing",
            "trip_code": "mc-001",
            "departure_port": "Piraeus",
            "arrival_port": "Heraklion",
            "departure_at": "2026-11-01T08:00:00Z",
            "arrival_at": "2026-11-01T16:00:00Z",
        },
        headers=auth_headers(),
    )
    assert r.status_code == 201, r.text
    return r.json()["data"]


@pytest.fixture
def availability(client, trip):
    """A 60-seat passenger block on Deck-A."""
    r = client.post(
        f"/trips/{trip['id']}/availabilities",
        json={"availabilities": [{"type": "passenger", "cabins": [{"cabin": "deck-a", "seats": 60}]}]},
        headers=auth_headers(),
    )
    assert r.status_code == 201, r.text
    return r.json()["data"][0]
