from sqlalchemy import update
from sqlalchemy.orm import Session

from app.models import Trip
from conftest import auth_headers


def _mirror(trip: dict, capacity_type: str, cabin_id: str) -> int:
    return next(d["remaining_seat"] for d in trip["trip_capacity_details"][capacity_type] if d["cabin_id"] == cabin_id)


def _get_trip(client, trip_id: str) -> dict:
    r = client.get(f"/trips/{trip_id}", headers=auth_headers())
    assert r.status_code == 200, r.text
    return r.json()["data"]


def _create(client, trip_id: str, blocks: list[dict]):
    return client.post(f"/trips/{trip_id}/availabilities", json={"availabilities": blocks}, headers=auth_headers())


def test_availability_draws_seats_from_trip_mirror(client, trip, availability, published):
    assert availability["type"] == "passenger"
    assert availability["cabins"] == [
        {"cabin": "deck-a", "cabin_name": "Deck-A", "seats": 60, "allocated_seats": 0, "remaining_seats": 60}
    ]
    assert availability["total_seats"] == 60

    after = _get_trip(client, trip["id"])
    assert _mirror(after, "passenger", "deck-a") == 40
    assert _mirror(after, "passenger", "deck-b") == 50
    assert after["remaining_passenger_seats"] == 90

    assert published[-1][0] == "availability.created"
    assert published[-1][1]["availability_id"] == availability["id"]


def test_availability_cannot_exceed_ship_ceiling_or_cabin_pool(client, trip, availability):
    r = _create(client, trip["id"], [{"type": "passenger", "cabins": [{"cabin": "deck-a", "seats": 101}]}])
    assert r.status_code == 400, r.text
    assert r.json()["message"] == "Cannot allocate 101 seats to cabin Deck-A. Ship capacity for this cabin is 100 seats."

    r = _create(client, trip["id"], [{"type": "passenger", "cabins": [{"cabin": "deck-a", "seats": 41}]}])
    assert r.status_code == 400, r.text
    assert r.json()["message"] == "Cannot allocate 41 seats to cabin Deck-A. Only 40 remaining seats available in this cabin."

    after = _get_trip(client, trip["id"])
    assert _mirror(after, "passenger", "deck-a") == 40


def test_batch_is_all_or_nothing(client, trip):
    r = _create(
        client,
        trip["id"],
        [
            {"type": "cargo", "cabins": [{"cabin": "hold-1", "seats": 5}]},
            {"type": "passenger", "cabins": [{"cabin": "deck-a", "seats": 70}]},
            {"type": "passenger", "cabins": [{"cabin": "deck-a", "seats": 40}]},
        ],
    )
    assert r.status_code == 400, r.text
    assert r.json()["message"] == "Cannot allocate 40 seats to cabin Deck-A. Only 30 remaining seats available in this cabin."

    after = _get_trip(client, trip["id"])
    assert _mirror(after, "passenger", "deck-a") == 100
    assert _mirror(after, "cargo", "hold-1") == 20
    assert after["remaining_cargo_seats"] == 20

    r = client.get(f"/trips/{trip['id']}/availabilities", headers=auth_headers())
    assert r.json()["pagination"]["total"] == 0


def test_availability_input_validation(client, trip):
    cases = [
        ([{"type": "boat", "cabins": [{"cabin": "deck-a", "seats": 1}]}], 400, "Invalid type. Must be one of: passenger, cargo, vehicle"),
        ([{"type": "passenger", "cabins": []}], 400, "cabins must be a non-empty array"),
        ([{"type": "passenger", "cabins": [{"cabin": "deck-a", "seats": 0}]}], 400, "seats must be a positive number for cabin Deck-A"),
        (
            [{"type": "passenger", "cabins": [{"cabin": "deck-a", "seats": 1}, {"cabin": "deck-a", "seats": 2}]}],
            400,
            "Cabin Deck-A is listed more than once",
        ),
        (
            [{"type": "passenger", "cabins": [{"cabin": "hold-1", "seats": 1}]}],
            404,
            "Cabin not found or type mismatch for type passenger: hold-1",
        ),
        (
            [{"type": "passenger", "cabins": [{"cabin": "other-deck", "seats": 1}]}],
            404,
            "Cabin not found or type mismatch for type passenger: other-deck",
        ),
    ]
    for blocks, status, message in cases:
        r = _create(client, trip["id"], blocks)
        assert r.status_code == status, r.text
        assert r.json()["message"] == message

    r = _create(client, trip["id"], [{"type": "passenger", "cabins": [{"cabin": "deck-a", "seats": "many"}]}])
    assert r.status_code == 400, r.text
    assert r.json()["message"].startswith("Invalid field availabilities.0.cabins.0.seats")

    r = client.post(f"/trips/{trip['id']}/availabilities", json={"availabilities": []}, headers=auth_headers())
    assert r.status_code == 400, r.text
    assert r.json()["message"] == "availabilities must be a non-empty array"


def test_resize_moves_only_the_delta(client, trip, availability):
    url = f"/trips/{trip['id']}/availabilities/{availability['id']}"

    r = client.put(url, json={"cabins": [{"cabin": "deck-a", "seats": 80}]}, headers=auth_headers())
    assert r.status_code == 200, r.text
    assert r.json()["data"]["total_seats"] == 80
    assert _mirror(_get_trip(client, trip["id"]), "passenger", "deck-a") == 20

    r = client.put(
        url,
        json={"cabins": [{"cabin": "deck-a", "seats": 30}, {"cabin": "deck-b", "seats": 10}], "remarks": "split"},
        headers=auth_headers(),
    )
    assert r.status_code == 200, r.text
    data = r.json()["data"]
    assert [(c["cabin"], c["seats"]) for c in data["cabins"]] == [("deck-a", 30), ("deck-b", 10)]
    assert data["remarks"] == "split"

    after = _get_trip(client, trip["id"])
    assert _mirror(after, "passenger", "deck-a") == 70
    assert _mirror(after, "passenger", "deck-b") == 40
    assert after["remaining_passenger_seats"] == 110

    r = client.put(url, json={"cabins": [{"cabin": "deck-b", "seats": 10}]}, headers=auth_headers())
    assert r.status_code == 200, r.text
    after = _get_trip(client, trip["id"])
    assert _mirror(after, "passenger", "deck-a") == 100
    assert after["remaining_passenger_seats"] == 140


def test_resize_cannot_overdraw_pool(client, trip, availability):
    url = f"/trips/{trip['id']}/availabilities/{availability['id']}"
    r = client.put(url, json={"cabins": [{"cabin": "deck-a", "seats": 101}]}, headers=auth_headers())
    assert r.status_code == 400, r.text

    # A second block takes the rest of Deck-A; growing the first one must then fail.
    r = _create(client, trip["id"], [{"type": "passenger", "cabins": [{"cabin": "deck-a", "seats": 40}]}])
    assert r.status_code == 201, r.text

    r = client.put(url, json={"cabins": [{"cabin": "deck-a", "seats": 61}]}, headers=auth_headers())
    assert r.status_code == 400, r.text
    assert r.json()["message"] == "Cannot increase cabin Deck-A by 1 seats. Only 0 remaining seats available in this cabin."

    r = client.get(url, headers=auth_headers())
    assert r.json()["data"]["total_seats"] == 60


def test_resize_cannot_drop_below_allocated(client, trip, availability):
    url = f"/trips/{trip['id']}/availabilities/{availability['id']}"
    r = client.post(
        f"{url}/agent-allocations",
        json={"agent": "agent-x", "allocations": [{"type": "passenger", "cabins": [{"cabin": "deck-a", "allocated_seats": 25}]}]},
        headers=auth_headers(),
    )
    assert r.status_code == 201, r.text

    r = client.put(url, json={"cabins": [{"cabin": "deck-a", "seats": 20}]}, headers=auth_headers())
    assert r.status_code == 400, r.text
    assert r.json()["message"] == "Cannot reduce cabin Deck-A to 20 seats. 25 seats are already allocated to agents."

    r = client.put(url, json={"cabins": [{"cabin": "deck-b", "seats": 5}]}, headers=auth_headers())
    assert r.status_code == 400, r.text
    assert r.json()["message"] == "Cannot remove cabin Deck-A. 25 seats are already allocated to agents."

    r = client.put(url, json={"cabins": [{"cabin": "deck-a", "seats": 60, "allocated_seats": 0}]}, headers=auth_headers())
    assert r.status_code == 400, r.text

    r = client.put(url, json={"cabins": [{"cabin": "deck-a", "seats": 25}]}, headers=auth_headers())
    assert r.status_code == 200, r.text
    assert r.json()["data"]["cabins"][0]["allocated_seats"] == 25
    assert _mirror(_get_trip(client, trip["id"]), "passenger", "deck-a") == 75


def test_legacy_allocated_seats_override_without_ledger(client, trip, availability):
    url = f"/trips/{trip['id']}/availabilities/{availability['id']}"
    r = client.put(
        url,
        json={"cabins": [{"cabin": "deck-a", "seats": 60, "allocated_seats": 10}], "allocated_agent": "agent-x"},
        headers=auth_headers(),
    )
    assert r.status_code == 200, r.text
    data = r.json()["data"]
    assert data["cabins"][0]["allocated_seats"] == 10
    assert data["allocated_agent_id"] == "agent-x"

    r = client.put(url, json={"cabins": [{"cabin": "deck-a", "seats": 60, "allocated_seats": 61}]}, headers=auth_headers())
    assert r.status_code == 400, r.text
    assert r.json()["message"] == "Allocated seats (61) cannot exceed total seats (60) for cabin Deck-A"


def test_delete_restores_trip_pool(client, trip, availability, published):
    url = f"/trips/{trip['id']}/availabilities/{availability['id']}"
    r = client.delete(url, headers=auth_headers())
    assert r.status_code == 200, r.text
    data = r.json()["data"]
    assert _mirror(data, "passenger", "deck-a") == 100
    assert data["remaining_passenger_seats"] == 150
    assert published[-1][0] == "availability.deleted"

    r = client.get(url, headers=auth_headers())
    assert r.status_code == 404, r.text
    assert r.json()["message"] == "Availability not found"

    r = client.delete(url, headers=auth_headers())
    assert r.status_code == 404, r.text


def test_delete_is_guarded_by_outstanding_allocations(client, trip, availability):
    url = f"/trips/{trip['id']}/availabilities/{availability['id']}"
    r = client.post(
        f"{url}/agent-allocations",
        json={"agent": "agent-x", "allocations": [{"type": "passenger", "cabins": [{"cabin": "deck-a", "allocated_seats": 5}]}]},
        headers=auth_headers(),
    )
    assert r.status_code == 201, r.text
    allocation_id = r.json()["data"]["allocation"]["id"]

    r = client.delete(url, headers=auth_headers())
    assert r.status_code == 400, r.text
    assert r.json()["message"] == (
        "Cannot delete availability while 5 seats are allocated to agents. Remove the agent allocations first."
    )
    assert _mirror(_get_trip(client, trip["id"]), "passenger", "deck-a") == 40

    r = client.delete(f"{url}/agent-allocations/{allocation_id}", headers=auth_headers())
    assert r.status_code == 200, r.text
    r = client.delete(url, headers=auth_headers())
    assert r.status_code == 200, r.text
    assert _mirror(r.json()["data"], "passenger", "deck-a") == 100


def test_trip_summary_reports_totals_and_consistency(client, engine, trip, availability):
    base = f"/trips/{trip['id']}/availabilities"
    r = client.post(
        f"{base}/{availability['id']}/agent-allocations",
        json={"agent": "agent-x", "allocations": [{"type": "passenger", "cabins": [{"cabin": "deck-a", "allocated_seats": 25}]}]},
        headers=auth_headers(),
    )
    assert r.status_code == 201, r.text

    r = client.get(f"{base}/summary", headers=auth_headers(role="agent"))
    assert r.status_code == 200, r.text
    data = r.json()["data"]
    assert data["summary"]["passenger"] == {"total": 60, "allocated": 25, "remaining": 90}
    assert data["summary"]["cargo"] == {"total": 0, "allocated": 0, "remaining": 20}
    assert data["consistency"]["consistent"] is True
    assert len(data["availabilities"]) == 1

    # Knock the aggregate out of step with the per-cabin mirror.
    with Session(engine) as s, s.begin():
        s.execute(update(Trip).where(Trip.id == trip["id"]).values(remaining_passenger_seats=85))

    r = client.get(f"{base}/summary", headers=auth_headers())
    data = r.json()["data"]
    assert data["consistency"]["consistent"] is False
    assert data["consistency"]["mirror"]["passenger"] == {"mirror_remaining": 90, "drift": 5}


def test_availability_summary_for_allocation(client, trip, availability):
    r = client.get(f"/trips/{trip['id']}/availabilities/{availability['id']}/summary", headers=auth_headers())
    assert r.status_code == 200, r.text
    data = r.json()["data"]
    assert data["availability_type"] == "passenger"
    assert data["total_summary"]["passenger"] == [
        {"cabin": "deck-a", "cabin_name": "Deck-A", "total_seats": 60, "allocated_seats": 0, "available_seats": 60}
    ]
    assert data["total_summary"]["cargo"] == []
    assert data["remaining_passenger_seats"] == 90


def test_list_is_paginated_and_filterable(client, trip):
    r = _create(
        client,
        trip["id"],
        [
            {"type": "passenger", "cabins": [{"cabin": "deck-a", "seats": 10}]},
            {"type": "passenger", "cabins": [{"cabin": "deck-a", "seats": 10}]},
            {"type": "cargo", "cabins": [{"cabin": "hold-1", "seats": 5}]},
        ],
    )
    assert r.status_code == 201, r.text
    assert len(r.json()["data"]) == 3

    url = f"/trips/{trip['id']}/availabilities"
    r = client.get(url, params={"limit": 2}, headers=auth_headers())
    body = r.json()
    assert body["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}
    assert len(body["data"]) == 2

    r = client.get(url, params={"limit": 2, "page": 2}, headers=auth_headers())
    assert len(r.json()["data"]) == 1

    r = client.get(url, params={"limit": 500, "page": 0}, headers=auth_headers())
    assert r.json()["pagination"] == {"page": 1, "limit": 100, "total": 3, "pages": 1}

    r = client.get(url, params={"type": "cargo"}, headers=auth_headers())
    body = r.json()
    assert body["pagination"]["total"] == 1
    assert body["data"][0]["cabins"][0]["cabin"] == "hold-1"


def test_zero_seat_allocation_still_blocks_delete(client, trip, availability):
    url = f"/trips/{trip['id']}/availabilities/{availability['id']}"
    r = client.post(
        f"{url}/agent-allocations",
        json={"agent": "agent-x", "allocations": [{"type": "passenger", "cabins": [{"cabin": "deck-a", "allocated_seats": 0}]}]},
        headers=auth_headers(),
    )
    assert r.status_code == 201, r.text
    allocation_id = r.json()["data"]["allocation"]["id"]

    r = client.delete(url, headers=auth_headers())
    assert r.status_code == 400, r.text
    assert r.json()["message"] == (
        "Cannot delete availability while agent allocations exist. Remove the agent allocations first."
    )

    r = client.delete(f"{url}/agent-allocations/{allocation_id}", headers=auth_headers())
    assert r.status_code == 200, r.text
    r = client.delete(url, headers=auth_headers())
    assert r.status_code == 200, r.text
