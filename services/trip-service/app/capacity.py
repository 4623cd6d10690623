from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy.orm import Session

from .errors import BusinessRuleError, CapacityExceeded, NotFoundError, ValidationFailed
from .models import (
    Agent,
    AvailabilityAgentAllocation,
    Cabin,
    Ship,
    ShipCapacity,
    Trip,
    TripAvailability,
    TripCapacityDetail,
)
from .security import RequestContext

logger = logging.getLogger(__name__)

CAPACITY_TYPES = ("passenger", "cargo", "vehicle")
TRIP_STATUSES = ("SCHEDULED", "OPEN", "CLOSED", "COMPLETED", "CANCELLED")

_REMAINING_ATTR = {
    "passenger": "remaining_passenger_seats",
    "cargo": "remaining_cargo_seats",
    "vehicle": "remaining_vehicle_seats",
}


def now() -> datetime:
    return datetime.now(tz=timezone.utc)


def as_utc(value: datetime) -> datetime:
    # Naive timestamps are taken as UTC.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def check_type(capacity_type: str | None) -> str:
    t = (capacity_type or "").strip().lower()
    if t not in CAPACITY_TYPES:
        raise ValidationFailed(f"Invalid type. Must be one of: {', '.join(CAPACITY_TYPES)}")
    return t


def check_seat_count(value, *, field: str, cabin_name: str, allow_zero: bool) -> int:
    # bool is an int subclass; reject it explicitly.
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationFailed(f"{field} must be an integer for cabin {cabin_name}")
    if allow_zero and value < 0:
        raise ValidationFailed(f"{field} must be a non-negative number for cabin {cabin_name}")
    if not allow_zero and value < 1:
        raise ValidationFailed(f"{field} must be a positive number for cabin {cabin_name}")
    return value


#
# Trip aggregate counters + per-cabin mirror
# ------------------------------------------
#


def remaining(trip: Trip, capacity_type: str) -> int:
    return int(getattr(trip, _REMAINING_ATTR[capacity_type]) or 0)


def mirror_entry(trip: Trip, capacity_type: str, cabin_id: str) -> TripCapacityDetail | None:
    for d in trip.capacity_details:
        if d.capacity_type == capacity_type and d.cabin_id == cabin_id:
            return d
    return None


def mirror_remaining(trip: Trip, capacity_type: str, cabin_id: str) -> int:
    d = mirror_entry(trip, capacity_type, cabin_id)
    return d.remaining_seat if d is not None else 0


def mirror_totals(trip: Trip) -> dict[str, int]:
    totals = {t: 0 for t in CAPACITY_TYPES}
    for d in trip.capacity_details:
        totals[d.capacity_type] = totals.get(d.capacity_type, 0) + d.remaining_seat
    return totals


def adjust_mirror(trip: Trip, capacity_type: str, cabin_id: str, delta: int) -> None:
    """
    Move `delta` seats into (positive) or out of (negative) the trip pool for one cabin.

    The per-cabin entry and the aggregate counter always move together, so the
    mirror sum and the aggregate cannot drift apart through this function.
    """
    if delta == 0:
        return
    entry = mirror_entry(trip, capacity_type, cabin_id)
    if entry is None:
        raise ValidationFailed(f"Cabin {cabin_id} is not part of this trip's {capacity_type} capacity")

    attr = _REMAINING_ATTR[capacity_type]
    new_entry = entry.remaining_seat + delta
    new_total = remaining(trip, capacity_type) + delta
    if new_entry < 0 or new_total < 0:
        raise CapacityExceeded(
            f"Cannot take {-delta} {capacity_type} seats from cabin {cabin_id}. "
            f"Only {min(entry.remaining_seat, remaining(trip, capacity_type))} remaining seats available."
        )
    entry.remaining_seat = new_entry
    setattr(trip, attr, new_total)


def capacity_snapshot(trip: Trip) -> dict:
    details: dict[str, list[dict]] = {t: [] for t in CAPACITY_TYPES}
    for d in trip.capacity_details:
        details.setdefault(d.capacity_type, []).append({"cabin_id": d.cabin_id, "remaining_seat": d.remaining_seat})
    return {
        "trip_capacity_details": details,
        "remaining_passenger_seats": trip.remaining_passenger_seats,
        "remaining_cargo_seats": trip.remaining_cargo_seats,
        "remaining_vehicle_seats": trip.remaining_vehicle_seats,
    }


def touch(record, ctx: RequestContext) -> None:
    record.updated_by = ctx.actor.as_dict()
    record.updated_at = now()


#
# Lookups (always company-scoped; soft-deleted rows are invisible)
# ----------------------------------------------------------------
#


def load_trip(s: Session, ctx: RequestContext, trip_id: str, *, for_update: bool = False) -> Trip:
    q = (
        s.query(Trip)
        .filter(Trip.id == trip_id)
        .filter(Trip.company_id == ctx.company_id)
        .filter(Trip.is_deleted.is_(False))
    )
    if for_update:
        q = q.with_for_update()
    trip = q.first()
    if trip is None:
        raise NotFoundError("Trip not found")
    return trip


def load_availability(
    s: Session,
    ctx: RequestContext,
    trip_id: str,
    availability_id: str,
    *,
    for_update: bool = False,
) -> TripAvailability:
    q = (
        s.query(TripAvailability)
        .filter(TripAvailability.id == availability_id)
        .filter(TripAvailability.company_id == ctx.company_id)
        .filter(TripAvailability.trip_id == trip_id)
        .filter(TripAvailability.is_deleted.is_(False))
    )
    if for_update:
        q = q.with_for_update()
    availability = q.first()
    if availability is None:
        raise NotFoundError("Availability not found")
    return availability


def load_cabin(s: Session, ctx: RequestContext, cabin_id: str, capacity_type: str) -> Cabin:
    cabin = (
        s.query(Cabin)
        .filter(Cabin.id == cabin_id)
        .filter(Cabin.company_id == ctx.company_id)
        .filter(Cabin.type == capacity_type)
        .filter(Cabin.is_deleted.is_(False))
        .first()
    )
    if cabin is None:
        raise NotFoundError(f"Cabin not found or type mismatch for type {capacity_type}: {cabin_id}")
    return cabin


def load_active_agent(s: Session, ctx: RequestContext, agent_id: str) -> Agent:
    agent = (
        s.query(Agent)
        .filter(Agent.id == agent_id)
        .filter(Agent.company_id == ctx.company_id)
        .filter(Agent.status == "Active")
        .filter(Agent.is_deleted.is_(False))
        .first()
    )
    if agent is None:
        raise NotFoundError("Agent not found or inactive")
    return agent


def ship_capacity_map(s: Session, ship_id: str, capacity_type: str) -> dict[str, int]:
    rows = (
        s.query(ShipCapacity)
        .filter(ShipCapacity.ship_id == ship_id)
        .filter(ShipCapacity.capacity_type == capacity_type)
        .all()
    )
    return {r.cabin_id: int(r.seats or 0) for r in rows}


def ledger_totals(s: Session, availability_ids: list[str]) -> dict[tuple[str, str], int]:
    """Sum of active agent grants per (availability_id, cabin_id)."""
    totals: dict[tuple[str, str], int] = defaultdict(int)
    if not availability_ids:
        return totals
    rows = (
        s.query(AvailabilityAgentAllocation)
        .filter(AvailabilityAgentAllocation.availability_id.in_(availability_ids))
        .filter(AvailabilityAgentAllocation.is_deleted.is_(False))
        .all()
    )
    for r in rows:
        for entry in r.allocations or []:
            for c in entry.get("cabins") or []:
                totals[(r.availability_id, c["cabin"])] += int(c.get("allocated_seats") or 0)
    return totals


#
# Trip lifecycle: the mirror is populated from the ship's declared capacity
# --------------------------------------------------------------------------
#


def _required_text(value, field: str, *, creating: bool) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationFailed(f"Missing required field: {field}" if creating else f"{field} cannot be empty")
    return text


def check_status(status: str | None) -> str:
    s = (status or "").strip().upper()
    if s not in TRIP_STATUSES:
        raise ValidationFailed(f"Invalid status. Must be one of: {', '.join(TRIP_STATUSES)}")
    return s


def _load_ship(s: Session, ctx: RequestContext, ship_id: str) -> Ship:
    ship = (
        s.query(Ship)
        .filter(Ship.id == ship_id)
        .filter(Ship.company_id == ctx.company_id)
        .filter(Ship.is_deleted.is_(False))
        .first()
    )
    if ship is None:
        raise NotFoundError("Ship not found")
    return ship


def _check_trip_code_free(s: Session, ctx: RequestContext, code: str, *, exclude_id: str | None = None) -> None:
    q = s.query(Trip.id).filter(Trip.company_id == ctx.company_id).filter(Trip.trip_code == code)
    if exclude_id is not None:
        q = q.filter(Trip.id != exclude_id)
    if q.first() is not None:
        raise ValidationFailed("Trip code already exists for this company")


def _populate_mirror(s: Session, trip: Trip, ship: Ship) -> dict[str, int]:
    totals = {t: 0 for t in CAPACITY_TYPES}
    capacities = (
        s.query(ShipCapacity)
        .filter(ShipCapacity.ship_id == ship.id)
        .order_by(ShipCapacity.capacity_type.asc(), ShipCapacity.id.asc())
        .all()
    )
    for position, cap in enumerate(capacities):
        if cap.capacity_type not in totals:
            logger.warning("Ignoring ship capacity with unknown type (ship_id=%s, type=%s)", ship.id, cap.capacity_type)
            continue
        seats = max(0, int(cap.seats or 0))
        trip.capacity_details.append(
            TripCapacityDetail(
                id=str(uuid4()),
                capacity_type=cap.capacity_type,
                cabin_id=cap.cabin_id,
                remaining_seat=seats,
                position=position,
            )
        )
        totals[cap.capacity_type] += seats

    for t, total in totals.items():
        setattr(trip, _REMAINING_ATTR[t], total)
    return totals


def active_availability_count(s: Session, ctx: RequestContext, trip_id: str) -> int:
    return (
        s.query(TripAvailability)
        .filter(TripAvailability.company_id == ctx.company_id)
        .filter(TripAvailability.trip_id == trip_id)
        .filter(TripAvailability.is_deleted.is_(False))
        .count()
    )


def create_trip(
    s: Session,
    ctx: RequestContext,
    *,
    ship_id: str,
    trip_name: str,
    trip_code: str,
    departure_port: str,
    arrival_port: str,
    departure_at: datetime,
    arrival_at: datetime,
    status: str = "SCHEDULED",
    remarks: str | None = None,
) -> Trip:
    name = _required_text(trip_name, "trip_name", creating=True)
    code = _required_text(trip_code, "trip_code", creating=True).upper()
    departure_port = _required_text(departure_port, "departure_port", creating=True)
    arrival_port = _required_text(arrival_port, "arrival_port", creating=True)
    status = check_status(status or "SCHEDULED")
    departure_at = as_utc(departure_at)
    arrival_at = as_utc(arrival_at)
    if arrival_at <= departure_at:
        raise ValidationFailed("arrival_at must be after departure_at")

    ship = _load_ship(s, ctx, ship_id)
    _check_trip_code_free(s, ctx, code)

    ts = now()
    trip = Trip(
        id=str(uuid4()),
        company_id=ctx.company_id,
        ship_id=ship.id,
        trip_name=name,
        trip_code=code,
        departure_port=departure_port,
        arrival_port=arrival_port,
        departure_at=departure_at,
        arrival_at=arrival_at,
        status=status,
        remarks=(remarks or "").strip() or None,
        created_by=ctx.actor.as_dict(),
        updated_by=None,
        created_at=ts,
        updated_at=ts,
        is_deleted=False,
    )
    totals = _populate_mirror(s, trip, ship)

    s.add(trip)
    s.flush()
    logger.info(
        "Trip created (trip_id=%s, ship_id=%s, passenger=%s, cargo=%s, vehicle=%s)",
        trip.id,
        ship.id,
        totals["passenger"],
        totals["cargo"],
        totals["vehicle"],
    )
    return trip


def update_trip(s: Session, ctx: RequestContext, trip_id: str, changes: dict) -> Trip:
    """
    Apply a partial update. Only keys present in `changes` are touched.

    The remaining-seat counters are not writable here; they move only through
    availability changes. Moving a trip to another ship re-snapshots the
    mirror, so it is only allowed while no availability draws on it.
    """
    trip = load_trip(s, ctx, trip_id, for_update=True)

    if "trip_name" in changes:
        trip.trip_name = _required_text(changes["trip_name"], "trip_name", creating=False)
    if "trip_code" in changes:
        code = _required_text(changes["trip_code"], "trip_code", creating=False).upper()
        if code != trip.trip_code:
            _check_trip_code_free(s, ctx, code, exclude_id=trip.id)
        trip.trip_code = code
    if "departure_port" in changes:
        trip.departure_port = _required_text(changes["departure_port"], "departure_port", creating=False)
    if "arrival_port" in changes:
        trip.arrival_port = _required_text(changes["arrival_port"], "arrival_port", creating=False)
    if "status" in changes:
        trip.status = check_status(changes["status"])
    if "remarks" in changes:
        trip.remarks = (changes["remarks"] or "").strip() or None

    departure_at = as_utc(trip.departure_at)
    arrival_at = as_utc(trip.arrival_at)
    if "departure_at" in changes:
        if changes["departure_at"] is None:
            raise ValidationFailed("departure_at cannot be empty")
        departure_at = as_utc(changes["departure_at"])
    if "arrival_at" in changes:
        if changes["arrival_at"] is None:
            raise ValidationFailed("arrival_at cannot be empty")
        arrival_at = as_utc(changes["arrival_at"])
    if arrival_at <= departure_at:
        raise ValidationFailed("arrival_at must be after departure_at")
    trip.departure_at = departure_at
    trip.arrival_at = arrival_at

    if "ship_id" in changes and changes["ship_id"] != trip.ship_id:
        ship = _load_ship(s, ctx, changes["ship_id"] or "")
        active = active_availability_count(s, ctx, trip.id)
        if active:
            raise BusinessRuleError(
                f"Cannot change the ship while {active} availabilities draw on this trip. Delete the availabilities first."
            )
        trip.capacity_details.clear()
        # Old mirror rows must be gone before rows for shared cabins are inserted.
        s.flush()
        trip.ship_id = ship.id
        _populate_mirror(s, trip, ship)
        logger.info("Trip moved to another ship (trip_id=%s, ship_id=%s)", trip.id, ship.id)

    touch(trip, ctx)
    s.flush()
    logger.info("Trip updated (trip_id=%s, fields=%s)", trip.id, ",".join(sorted(changes)))
    return trip


def delete_trip(s: Session, ctx: RequestContext, trip_id: str) -> Trip:
    trip = load_trip(s, ctx, trip_id, for_update=True)

    active = active_availability_count(s, ctx, trip.id)
    if active:
        raise BusinessRuleError(
            f"Cannot delete trip while {active} availabilities are active. Delete the availabilities first."
        )

    trip.is_deleted = True
    touch(trip, ctx)
    s.flush()
    logger.info("Trip deleted (trip_id=%s)", trip.id)
    return trip
