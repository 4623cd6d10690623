"""
Agent allocation ledger.

An agent allocation grants part of an availability block to a sales agent,
per cabin. The availability's `allocated_seats` counters move in lock-step
with the sum of active grants; the trip's capacity mirror is not touched here
because those seats already left the trip pool when the block was created.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from uuid import uuid4

from sqlalchemy.orm import Session

from . import capacity
from .errors import BusinessRuleError, CapacityExceeded, NotFoundError, ValidationFailed
from .models import AvailabilityAgentAllocation, Trip, TripAvailability
from .security import RequestContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CabinGrant:
    cabin_id: str
    allocated_seats: int


@dataclass(frozen=True)
class AllocationDraft:
    type: str
    cabins: list[CabinGrant] = field(default_factory=list)


def _prepare(
    s: Session,
    ctx: RequestContext,
    availability: TripAvailability,
    drafts: list[AllocationDraft],
) -> list[dict]:
    """Validate requested grants against the availability's current counters."""
    if not drafts:
        raise ValidationFailed("allocations must be a non-empty array")

    by_cabin = {c.cabin_id: c for c in availability.cabins}
    seen: set[str] = set()
    processed: list[dict] = []
    for draft in drafts:
        t = capacity.check_type(draft.type)
        if t != availability.type:
            raise ValidationFailed(f"Allocation type {t} does not match availability type {availability.type}")
        if not draft.cabins:
            raise ValidationFailed("Invalid allocation format. Each must have type and cabins array")

        cabins: list[dict] = []
        total = 0
        for grant in draft.cabins:
            cabin = capacity.load_cabin(s, ctx, grant.cabin_id, t)
            seats = capacity.check_seat_count(
                grant.allocated_seats, field="allocated_seats", cabin_name=cabin.name, allow_zero=True
            )
            if cabin.id in seen:
                raise ValidationFailed(f"Cabin {cabin.name} is listed more than once")
            seen.add(cabin.id)

            block = by_cabin.get(cabin.id)
            if block is None:
                raise ValidationFailed(f"Cabin {cabin.name} is not available in this availability for allocation")

            available = block.seats - block.allocated_seats
            if seats > available:
                logger.info(
                    "Allocation rejected (availability_id=%s, cabin_id=%s, requested=%s, available=%s)",
                    availability.id,
                    cabin.id,
                    seats,
                    available,
                )
                raise CapacityExceeded(
                    f"Cannot allocate {seats} seats to cabin {cabin.name}. Only {available} seats available."
                )
            total += seats
            cabins.append({"cabin": cabin.id, "allocated_seats": seats})

        processed.append({"type": t, "cabins": cabins, "total_allocated_seats": total})
    return processed


def _check_ledger_backed(s: Session, availability: TripAvailability) -> None:
    """Grants stack on `allocated_seats`; refuse while a direct override is in effect."""
    totals = capacity.ledger_totals(s, [availability.id])
    for c in availability.cabins:
        ledger = totals.get((availability.id, c.cabin_id), 0)
        if c.allocated_seats != ledger:
            raise BusinessRuleError(
                f"Cabin {c.cabin.name if c.cabin is not None else c.cabin_id} has {c.allocated_seats - ledger} seats "
                "allocated outside agent allocations. Clear the direct allocated_seats override first."
            )


def _apply(availability: TripAvailability, allocations: list[dict], sign: int) -> None:
    by_cabin = {c.cabin_id: c for c in availability.cabins}
    for entry in allocations:
        for c in entry.get("cabins") or []:
            block = by_cabin.get(c["cabin"])
            if block is None:
                # Cabin was removed from the block; only possible for zero-seat grants.
                continue
            new_value = block.allocated_seats + sign * int(c["allocated_seats"])
            if new_value < 0 or new_value > block.seats:
                raise CapacityExceeded(
                    f"Allocated seats for cabin {block.cabin_id} would become {new_value} (block size {block.seats})."
                )
            block.allocated_seats = new_value


def _load(
    s: Session,
    ctx: RequestContext,
    trip_id: str,
    availability_id: str,
    allocation_id: str,
) -> tuple[Trip, TripAvailability, AvailabilityAgentAllocation]:
    trip = capacity.load_trip(s, ctx, trip_id, for_update=True)
    availability = capacity.load_availability(s, ctx, trip_id, availability_id, for_update=True)
    allocation = (
        s.query(AvailabilityAgentAllocation)
        .filter(AvailabilityAgentAllocation.id == allocation_id)
        .filter(AvailabilityAgentAllocation.company_id == ctx.company_id)
        .filter(AvailabilityAgentAllocation.trip_id == trip_id)
        .filter(AvailabilityAgentAllocation.availability_id == availability_id)
        .filter(AvailabilityAgentAllocation.is_deleted.is_(False))
        .with_for_update()
        .first()
    )
    if allocation is None:
        raise NotFoundError("Agent allocation not found")
    return trip, availability, allocation


def _seat_total(allocations: list[dict]) -> int:
    return sum(int(e.get("total_allocated_seats") or 0) for e in allocations)


def create_allocation(
    s: Session,
    ctx: RequestContext,
    trip_id: str,
    availability_id: str,
    agent_id: str,
    drafts: list[AllocationDraft],
) -> tuple[AvailabilityAgentAllocation, TripAvailability, Trip]:
    if not agent_id:
        raise ValidationFailed("Agent ID and allocations array are required")

    trip = capacity.load_trip(s, ctx, trip_id, for_update=True)
    availability = capacity.load_availability(s, ctx, trip_id, availability_id, for_update=True)
    agent = capacity.load_active_agent(s, ctx, agent_id)
    _check_ledger_backed(s, availability)

    processed = _prepare(s, ctx, availability, drafts)

    ts = capacity.now()
    allocation = AvailabilityAgentAllocation(
        id=str(uuid4()),
        company_id=ctx.company_id,
        trip_id=trip.id,
        availability_id=availability.id,
        agent_id=agent.id,
        agent=agent,
        allocations=processed,
        created_by=ctx.actor.as_dict(),
        updated_by=None,
        created_at=ts,
        updated_at=ts,
        is_deleted=False,
    )
    s.add(allocation)
    _apply(availability, processed, +1)
    capacity.touch(availability, ctx)
    s.flush()

    logger.info(
        "Agent allocation created (trip_id=%s, availability_id=%s, agent_id=%s, seats=%s)",
        trip.id,
        availability.id,
        agent.id,
        _seat_total(processed),
    )
    return allocation, availability, trip


def update_allocation(
    s: Session,
    ctx: RequestContext,
    trip_id: str,
    availability_id: str,
    allocation_id: str,
    drafts: list[AllocationDraft],
) -> tuple[AvailabilityAgentAllocation, TripAvailability, Trip]:
    """
    Reverse the current grant, then validate and apply the new one.

    Both phases run inside the caller's transaction; a validation failure in
    the second phase rolls the reversal back with it.
    """
    trip, availability, allocation = _load(s, ctx, trip_id, availability_id, allocation_id)

    previous = list(allocation.allocations or [])
    _apply(availability, previous, -1)
    processed = _prepare(s, ctx, availability, drafts)
    _apply(availability, processed, +1)

    # Reassign so the JSON column is flagged dirty.
    allocation.allocations = processed
    capacity.touch(allocation, ctx)
    capacity.touch(availability, ctx)
    s.flush()

    logger.info(
        "Agent allocation updated (trip_id=%s, availability_id=%s, allocation_id=%s, seats=%s->%s)",
        trip.id,
        availability.id,
        allocation.id,
        _seat_total(previous),
        _seat_total(processed),
    )
    return allocation, availability, trip


def delete_allocation(
    s: Session,
    ctx: RequestContext,
    trip_id: str,
    availability_id: str,
    allocation_id: str,
) -> tuple[AvailabilityAgentAllocation, TripAvailability, Trip]:
    trip, availability, allocation = _load(s, ctx, trip_id, availability_id, allocation_id)

    _apply(availability, list(allocation.allocations or []), -1)
    allocation.is_deleted = True
    capacity.touch(allocation, ctx)
    capacity.touch(availability, ctx)
    s.flush()

    logger.info(
        "Agent allocation deleted (trip_id=%s, availability_id=%s, allocation_id=%s, restored=%s)",
        trip.id,
        availability.id,
        allocation.id,
        _seat_total(allocation.allocations or []),
    )
    return allocation, availability, trip


def agent_quantities(s: Session, ctx: RequestContext, trip_id: str) -> list[dict]:
    """
    Coarse per-agent view: seats granted per (agent, availability).

    Derived from the cabin-level ledger on read; nothing is stored at this grain.
    """
    capacity.load_trip(s, ctx, trip_id)
    rows = (
        s.query(AvailabilityAgentAllocation)
        .join(TripAvailability, TripAvailability.id == AvailabilityAgentAllocation.availability_id)
        .filter(AvailabilityAgentAllocation.company_id == ctx.company_id)
        .filter(AvailabilityAgentAllocation.trip_id == trip_id)
        .filter(AvailabilityAgentAllocation.is_deleted.is_(False))
        .filter(TripAvailability.is_deleted.is_(False))
        .order_by(AvailabilityAgentAllocation.created_at.asc())
        .all()
    )

    agents: dict[str, dict] = {}
    quantities: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
    types: dict[str, str] = {}
    for r in rows:
        agents.setdefault(r.agent_id, {"agent_id": r.agent_id, "agent_name": r.agent.name if r.agent else None})
        for entry in r.allocations or []:
            types[r.availability_id] = entry.get("type")
            quantities[r.agent_id][r.availability_id] += int(entry.get("total_allocated_seats") or 0)

    out: list[dict] = []
    for agent_id, info in agents.items():
        per_availability = [
            {"availability_id": av_id, "type": types.get(av_id), "quantity": qty}
            for av_id, qty in quantities[agent_id].items()
        ]
        out.append({**info, "allocations": per_availability, "total_quantity": sum(p["quantity"] for p in per_availability)})
    return out
