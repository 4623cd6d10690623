"""
Availability ledger operations.

An availability is a sellable block of trip capacity for one type
(passenger, cargo or vehicle), listing the cabins it draws from. Creating or
growing a block draws seats out of the trip's capacity mirror; shrinking or
deleting it gives them back. Agent grants against a block are tracked in
`allocated_seats` and managed by `app.allocations`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from uuid import uuid4

from sqlalchemy.orm import Session

from . import capacity
from .errors import BusinessRuleError, CapacityExceeded, ValidationFailed
from .models import AvailabilityAgentAllocation, Cabin, TripAvailability, TripAvailabilityCabin
from .security import RequestContext

logger = logging.getLogger(__name__)

UNSET = object()


@dataclass(frozen=True)
class CabinSeats:
    cabin_id: str
    seats: int
    allocated_seats: int | None = None


@dataclass(frozen=True)
class AvailabilityDraft:
    type: str
    cabins: list[CabinSeats] = field(default_factory=list)
    remarks: str | None = None


def _resolve_block(
    s: Session,
    ctx: RequestContext,
    capacity_type: str,
    entries: list[CabinSeats],
    ceilings: dict[str, int],
) -> list[tuple[Cabin, CabinSeats]]:
    """Resolve cabins and check the shape and the ship's per-cabin ceiling."""
    if not entries:
        raise ValidationFailed("cabins must be a non-empty array")

    resolved: list[tuple[Cabin, CabinSeats]] = []
    seen: set[str] = set()
    for entry in entries:
        cabin = capacity.load_cabin(s, ctx, entry.cabin_id, capacity_type)
        capacity.check_seat_count(entry.seats, field="seats", cabin_name=cabin.name, allow_zero=False)
        if cabin.id in seen:
            raise ValidationFailed(f"Cabin {cabin.name} is listed more than once")
        seen.add(cabin.id)

        ceiling = ceilings.get(cabin.id)
        if ceiling is None:
            raise ValidationFailed(f"Cabin {cabin.name} has no {capacity_type} capacity on this trip's ship")
        if entry.seats > ceiling:
            raise CapacityExceeded(
                f"Cannot allocate {entry.seats} seats to cabin {cabin.name}. "
                f"Ship capacity for this cabin is {ceiling} seats."
            )
        resolved.append((cabin, entry))
    return resolved


def create_availabilities(
    s: Session,
    ctx: RequestContext,
    trip_id: str,
    drafts: list[AvailabilityDraft],
) -> list[TripAvailability]:
    if not drafts:
        raise ValidationFailed("availabilities must be a non-empty array")

    trip = capacity.load_trip(s, ctx, trip_id, for_update=True)

    # Validate every block against a running copy of the pool before writing.
    pool_total = {t: capacity.remaining(trip, t) for t in capacity.CAPACITY_TYPES}
    pool_cabin = {(d.capacity_type, d.cabin_id): d.remaining_seat for d in trip.capacity_details}

    planned: list[tuple[str, AvailabilityDraft, list[tuple[Cabin, CabinSeats]]]] = []
    for draft in drafts:
        t = capacity.check_type(draft.type)
        ceilings = capacity.ship_capacity_map(s, trip.ship_id, t)
        block = _resolve_block(s, ctx, t, draft.cabins, ceilings)

        total_seats = 0
        for cabin, entry in block:
            left = pool_cabin.get((t, cabin.id), 0)
            if entry.seats > left:
                raise CapacityExceeded(
                    f"Cannot allocate {entry.seats} seats to cabin {cabin.name}. "
                    f"Only {left} remaining seats available in this cabin."
                )
            pool_cabin[(t, cabin.id)] = left - entry.seats
            total_seats += entry.seats

        if total_seats > pool_total[t]:
            raise CapacityExceeded(
                f"Cannot allocate {total_seats} {t} seats. Only {pool_total[t]} remaining seats available for {t}."
            )
        pool_total[t] -= total_seats
        planned.append((t, draft, block))

    ts = capacity.now()
    created: list[TripAvailability] = []
    for t, draft, block in planned:
        availability = TripAvailability(
            id=str(uuid4()),
            company_id=ctx.company_id,
            trip_id=trip.id,
            type=t,
            allocated_agent_id=None,
            remarks=(draft.remarks or "").strip() or None,
            created_by=ctx.actor.as_dict(),
            updated_by=None,
            created_at=ts,
            updated_at=ts,
            is_deleted=False,
        )
        for position, (cabin, entry) in enumerate(block):
            availability.cabins.append(
                TripAvailabilityCabin(
                    id=str(uuid4()),
                    cabin_id=cabin.id,
                    cabin=cabin,
                    seats=entry.seats,
                    allocated_seats=0,
                    position=position,
                )
            )
            capacity.adjust_mirror(trip, t, cabin.id, -entry.seats)
        s.add(availability)
        created.append(availability)

    capacity.touch(trip, ctx)
    s.flush()

    for a in created:
        logger.info(
            "Availability created (trip_id=%s, availability_id=%s, type=%s, seats=%s)",
            trip.id,
            a.id,
            a.type,
            sum(c.seats for c in a.cabins),
        )
    return created


def has_active_allocations(s: Session, availability_id: str) -> bool:
    return (
        s.query(AvailabilityAgentAllocation.id)
        .filter(AvailabilityAgentAllocation.availability_id == availability_id)
        .filter(AvailabilityAgentAllocation.is_deleted.is_(False))
        .first()
        is not None
    )


def update_availability(
    s: Session,
    ctx: RequestContext,
    trip_id: str,
    availability_id: str,
    cabins: list[CabinSeats],
    *,
    allocated_agent=UNSET,
    remarks=UNSET,
) -> TripAvailability:
    """
    Resize an availability block.

    Each cabin moves by (new seats - old seats); positive deltas are drawn from
    the trip pool and must fit, negative deltas are returned to it. A cabin
    can never shrink below what is already granted to agents.
    """
    trip = capacity.load_trip(s, ctx, trip_id, for_update=True)
    availability = capacity.load_availability(s, ctx, trip_id, availability_id, for_update=True)
    t = availability.type

    ceilings = capacity.ship_capacity_map(s, trip.ship_id, t)
    block = _resolve_block(s, ctx, t, cabins, ceilings)
    existing = {c.cabin_id: c for c in availability.cabins}
    ledger_backed = has_active_allocations(s, availability.id)

    planned: list[tuple[Cabin, int, int]] = []  # (cabin, seats, allocated_seats)
    for cabin, entry in block:
        current = existing.get(cabin.id)
        allocated = current.allocated_seats if current is not None else 0
        if entry.allocated_seats is not None:
            if ledger_backed:
                raise BusinessRuleError(
                    "allocated_seats cannot be set directly while agent allocations exist for this availability"
                )
            allocated = capacity.check_seat_count(
                entry.allocated_seats, field="allocated_seats", cabin_name=cabin.name, allow_zero=True
            )
            if allocated > entry.seats:
                raise ValidationFailed(
                    f"Allocated seats ({allocated}) cannot exceed total seats ({entry.seats}) for cabin {cabin.name}"
                )
        if entry.seats < allocated:
            raise CapacityExceeded(
                f"Cannot reduce cabin {cabin.name} to {entry.seats} seats. "
                f"{allocated} seats are already allocated to agents."
            )
        planned.append((cabin, entry.seats, allocated))

    requested_ids = {cabin.id for cabin, _, _ in planned}
    dropped = [c for c in availability.cabins if c.cabin_id not in requested_ids]
    for c in dropped:
        if c.allocated_seats > 0:
            raise CapacityExceeded(
                f"Cannot remove cabin {c.cabin.name}. {c.allocated_seats} seats are already allocated to agents."
            )

    deltas: dict[str, int] = {}
    for cabin, seats, _ in planned:
        current = existing.get(cabin.id)
        deltas[cabin.id] = seats - (current.seats if current is not None else 0)
    for c in dropped:
        deltas[c.cabin_id] = -c.seats

    names = {cabin.id: cabin.name for cabin, _, _ in planned}
    for cabin_id, delta in deltas.items():
        if delta <= 0:
            continue
        left = capacity.mirror_remaining(trip, t, cabin_id)
        if delta > left:
            raise CapacityExceeded(
                f"Cannot increase cabin {names.get(cabin_id, cabin_id)} by {delta} seats. "
                f"Only {left} remaining seats available in this cabin."
            )

    old_total = sum(c.seats for c in availability.cabins)
    new_total = sum(seats for _, seats, _ in planned)
    if new_total > old_total:
        difference = new_total - old_total
        available = capacity.remaining(trip, t)
        if difference > available:
            raise CapacityExceeded(
                f"Cannot increase seats by {difference}. Only {available} remaining seats available."
            )

    agent_id = availability.allocated_agent_id
    if allocated_agent is not UNSET:
        agent_id = capacity.load_active_agent(s, ctx, allocated_agent).id if allocated_agent else None

    # Validation done; apply. Returns first so no intermediate step overdraws.
    for cabin_id, delta in sorted(deltas.items(), key=lambda kv: kv[1]):
        capacity.adjust_mirror(trip, t, cabin_id, -delta)

    for c in dropped:
        availability.cabins.remove(c)
    for position, (cabin, seats, allocated) in enumerate(planned):
        current = existing.get(cabin.id)
        if current is None:
            current = TripAvailabilityCabin(id=str(uuid4()), cabin_id=cabin.id, cabin=cabin)
            availability.cabins.append(current)
        current.seats = seats
        current.allocated_seats = allocated
        current.position = position

    availability.allocated_agent_id = agent_id
    if remarks is not UNSET:
        availability.remarks = (remarks or "").strip() or None
    capacity.touch(availability, ctx)
    capacity.touch(trip, ctx)
    s.flush()

    logger.info(
        "Availability resized (trip_id=%s, availability_id=%s, type=%s, seats=%s->%s)",
        trip.id,
        availability.id,
        t,
        old_total,
        new_total,
    )
    return availability


def delete_availability(s: Session, ctx: RequestContext, trip_id: str, availability_id: str) -> TripAvailability:
    trip = capacity.load_trip(s, ctx, trip_id, for_update=True)
    availability = capacity.load_availability(s, ctx, trip_id, availability_id, for_update=True)

    outstanding = sum(c.allocated_seats for c in availability.cabins)
    if outstanding > 0:
        raise BusinessRuleError(
            f"Cannot delete availability while {outstanding} seats are allocated to agents. "
            "Remove the agent allocations first."
        )
    # Zero-seat grants hold no seats but would still point at the deleted block.
    if has_active_allocations(s, availability.id):
        raise BusinessRuleError("Cannot delete availability while agent allocations exist. Remove the agent allocations first.")

    for c in availability.cabins:
        capacity.adjust_mirror(trip, availability.type, c.cabin_id, c.seats)

    availability.is_deleted = True
    capacity.touch(availability, ctx)
    capacity.touch(trip, ctx)
    s.flush()

    logger.info(
        "Availability deleted (trip_id=%s, availability_id=%s, type=%s, restored=%s)",
        trip.id,
        availability.id,
        availability.type,
        sum(c.seats for c in availability.cabins),
    )
    return availability


#
# Read models
# -----------
#


def cabin_summary(availability: TripAvailability) -> dict:
    return {
        "type": availability.type,
        "cabins": [
            {
                "cabin": c.cabin_id,
                "cabin_name": c.cabin.name if c.cabin is not None else None,
                "cabin_type": c.cabin.type if c.cabin is not None else None,
                "total_seats": c.seats,
                "allocated_seats": c.allocated_seats,
                "remaining_seats": c.seats - c.allocated_seats,
            }
            for c in availability.cabins
        ],
    }


def active_availabilities(s: Session, ctx: RequestContext, trip_id: str) -> list[TripAvailability]:
    return (
        s.query(TripAvailability)
        .filter(TripAvailability.company_id == ctx.company_id)
        .filter(TripAvailability.trip_id == trip_id)
        .filter(TripAvailability.is_deleted.is_(False))
        .order_by(TripAvailability.created_at.desc(), TripAvailability.id.asc())
        .all()
    )


def trip_summary(s: Session, ctx: RequestContext, trip_id: str) -> dict:
    """
    Per-type totals over active availabilities.

    `remaining` is read straight from the trip's aggregate counter rather than
    recomputed, so the `consistency` block can report drift between the
    representations.
    """
    trip = capacity.load_trip(s, ctx, trip_id)
    rows = active_availabilities(s, ctx, trip_id)

    summary = {t: {"total": 0, "allocated": 0, "remaining": capacity.remaining(trip, t)} for t in capacity.CAPACITY_TYPES}
    for a in rows:
        for c in a.cabins:
            summary[a.type]["total"] += c.seats
            summary[a.type]["allocated"] += c.allocated_seats

    mirror = capacity.mirror_totals(trip)
    ledger = capacity.ledger_totals(s, [a.id for a in rows])
    ledger_drift = [
        {
            "availability_id": a.id,
            "cabin": c.cabin_id,
            "allocated_seats": c.allocated_seats,
            "ledger_seats": ledger.get((a.id, c.cabin_id), 0),
        }
        for a in rows
        for c in a.cabins
        if c.allocated_seats != ledger.get((a.id, c.cabin_id), 0)
    ]
    consistency = {
        "mirror": {
            t: {"mirror_remaining": mirror[t], "drift": mirror[t] - summary[t]["remaining"]} for t in capacity.CAPACITY_TYPES
        },
        "ledger_drift": ledger_drift,
        "consistent": not ledger_drift and all(mirror[t] == summary[t]["remaining"] for t in capacity.CAPACITY_TYPES),
    }
    if not consistency["consistent"]:
        logger.warning("Capacity drift detected (trip_id=%s): %s", trip.id, consistency)

    return {"trip_id": trip.id, "summary": summary, "consistency": consistency, "availabilities": rows}


def availability_summary(s: Session, ctx: RequestContext, trip_id: str, availability_id: str) -> dict:
    trip = capacity.load_trip(s, ctx, trip_id)
    availability = capacity.load_availability(s, ctx, trip_id, availability_id)

    totals: dict[str, list[dict]] = {t: [] for t in capacity.CAPACITY_TYPES}
    for c in availability.cabins:
        totals[availability.type].append(
            {
                "cabin": c.cabin_id,
                "cabin_name": c.cabin.name if c.cabin is not None else None,
                "total_seats": c.seats,
                "allocated_seats": c.allocated_seats,
                "available_seats": c.seats - c.allocated_seats,
            }
        )

    return {
        "availability_id": availability.id,
        "availability_type": availability.type,
        "total_summary": totals,
        **capacity.capacity_snapshot(trip),
    }
