from __future__ import annotations

import logging
import math
import os
import traceback
from datetime import datetime
from typing import Generic, TypeVar

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import or_

from . import allocations, availability, capacity, events
from .allocations import AllocationDraft, CabinGrant
from .availability import AvailabilityDraft, CabinSeats
from .db import session, unit_of_work
from .errors import AllocationError
from .models import AvailabilityAgentAllocation, Trip, TripAvailability
from .security import READ_ROLES, WRITE_ROLES, RequestContext, require_context
from .tenancy import get_tenant_engine

APP_ENV = os.getenv("APP_ENV", "development").strip().lower()
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
DEFAULT_PAGE_LIMIT = int(os.getenv("DEFAULT_PAGE_LIMIT", "10"))
MAX_PAGE_LIMIT = int(os.getenv("MAX_PAGE_LIMIT", "100"))

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Trip Capacity & Allocation Service",
    version="0.1.0",
    description="Trip capacity mirror, availability blocks and per-cabin agent allocations with conserved seat counters.",
)

T = TypeVar("T")


#
# Error envelopes
# ---------------
#


def _error_response(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message, **extra})


@app.exception_handler(AllocationError)
async def _allocation_error(_request: Request, exc: AllocationError):
    return _error_response(exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
async def _http_error(_request: Request, exc: StarletteHTTPException):
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return _error_response(exc.status_code, message)


@app.exception_handler(RequestValidationError)
async def _request_validation_error(_request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body") or "body"
    return _error_response(400, f"Invalid field {field}: {first.get('msg', 'invalid value')}")


@app.exception_handler(Exception)
async def _unexpected_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    extra = {} if APP_ENV == "production" else {"stack": "".join(traceback.format_exception(exc))}
    return _error_response(500, "Server error", **extra)


#
# Schemas
# -------
#


class Envelope(BaseModel, Generic[T]):
    success: bool = True
    message: str
    data: T


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class Page(BaseModel, Generic[T]):
    success: bool = True
    data: list[T]
    pagination: Pagination


class TripCreate(BaseModel):
    ship_id: str
    trip_name: str
    trip_code: str
    departure_port: str
    arrival_port: str
    departure_at: datetime
    arrival_at: datetime
    status: str = "SCHEDULED"
    remarks: str | None = None


class TripUpdate(BaseModel):
    # Remaining-seat counters are not writable; they only move with availabilities.
    model_config = ConfigDict(extra="forbid")

    ship_id: str | None = None
    trip_name: str | None = None
    trip_code: str | None = None
    departure_port: str | None = None
    arrival_port: str | None = None
    departure_at: datetime | None = None
    arrival_at: datetime | None = None
    status: str | None = None
    remarks: str | None = None


class TripDeletedOut(BaseModel):
    id: str
    deleted_at: datetime



class CapacityDetailOut(BaseModel):
    cabin_id: str
    remaining_seat: int


class TripCapacityOut(BaseModel):
    trip_capacity_details: dict[str, list[CapacityDetailOut]]
    remaining_passenger_seats: int
    remaining_cargo_seats: int
    remaining_vehicle_seats: int


class TripOut(TripCapacityOut):
    id: str
    ship_id: str
    trip_name: str
    trip_code: str
    departure_port: str
    arrival_port: str
    departure_at: datetime
    arrival_at: datetime
    status: str
    remarks: str | None = None
    version: int
    created_by: dict
    updated_by: dict | None = None
    created_at: datetime
    updated_at: datetime


class CabinSeatsIn(BaseModel):
    cabin: str = Field(min_length=1)
    seats: int
    allocated_seats: int | None = Field(
        default=None,
        description="Legacy direct override; only accepted while no agent allocations exist for the availability.",
    )


class AvailabilityBlockIn(BaseModel):
    type: str
    cabins: list[CabinSeatsIn]
    remarks: str | None = None


class AvailabilityCreate(BaseModel):
    availabilities: list[AvailabilityBlockIn]


class AvailabilityUpdate(BaseModel):
    cabins: list[CabinSeatsIn]
    allocated_agent: str | None = None
    remarks: str | None = None


class AvailabilityCabinOut(BaseModel):
    cabin: str
    cabin_name: str | None = None
    seats: int
    allocated_seats: int
    remaining_seats: int


class AvailabilityOut(BaseModel):
    id: str
    trip_id: str
    type: str
    cabins: list[AvailabilityCabinOut]
    total_seats: int
    allocated_seats: int
    allocated_agent_id: str | None = None
    remarks: str | None = None
    version: int
    created_by: dict
    updated_by: dict | None = None
    created_at: datetime
    updated_at: datetime


class TypeTotalsOut(BaseModel):
    total: int
    allocated: int
    remaining: int


class TripSummaryOut(BaseModel):
    trip_id: str
    summary: dict[str, TypeTotalsOut]
    consistency: dict
    availabilities: list[AvailabilityOut]


class AllocationCabinSummaryOut(BaseModel):
    cabin: str
    cabin_name: str | None = None
    total_seats: int
    allocated_seats: int
    available_seats: int


class AvailabilityForAllocationOut(TripCapacityOut):
    availability_id: str
    availability_type: str
    total_summary: dict[str, list[AllocationCabinSummaryOut]]


class CabinGrantIn(BaseModel):
    cabin: str = Field(min_length=1)
    allocated_seats: int


class AllocationEntryIn(BaseModel):
    type: str
    cabins: list[CabinGrantIn]


class AgentAllocationCreate(BaseModel):
    agent: str
    allocations: list[AllocationEntryIn]


class AgentAllocationUpdate(BaseModel):
    allocations: list[AllocationEntryIn]


class CabinGrantOut(BaseModel):
    cabin: str
    allocated_seats: int


class AllocationEntryOut(BaseModel):
    type: str
    cabins: list[CabinGrantOut]
    total_allocated_seats: int


class AgentAllocationOut(BaseModel):
    id: str
    trip_id: str
    availability_id: str
    agent_id: str
    agent_name: str | None = None
    allocations: list[AllocationEntryOut]
    total_allocated_seats: int
    version: int
    created_by: dict
    updated_by: dict | None = None
    created_at: datetime
    updated_at: datetime


class CabinSummaryOut(BaseModel):
    cabin: str
    cabin_name: str | None = None
    cabin_type: str | None = None
    total_seats: int
    allocated_seats: int
    remaining_seats: int


class AvailabilitySummaryOut(BaseModel):
    type: str
    cabins: list[CabinSummaryOut]


class AllocationResultOut(BaseModel):
    allocation: AgentAllocationOut | None = None
    availability_summary: AvailabilitySummaryOut
    updated_trip: TripCapacityOut


class AgentQuantityLineOut(BaseModel):
    availability_id: str
    type: str | None = None
    quantity: int


class AgentQuantityOut(BaseModel):
    agent_id: str
    agent_name: str | None = None
    allocations: list[AgentQuantityLineOut]
    total_quantity: int


#
# Mapping
# -------
#


def _page_window(page: int, limit: int) -> tuple[int, int]:
    page = max(1, int(page))
    limit = min(MAX_PAGE_LIMIT, max(1, int(limit)))
    return page, limit


def _pagination(page: int, limit: int, total: int) -> Pagination:
    return Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit) if total else 0)


def _trip_capacity_out(trip: Trip) -> TripCapacityOut:
    return TripCapacityOut(**capacity.capacity_snapshot(trip))


def _trip_out(trip: Trip) -> TripOut:
    return TripOut(
        **capacity.capacity_snapshot(trip),
        id=trip.id,
        ship_id=trip.ship_id,
        trip_name=trip.trip_name,
        trip_code=trip.trip_code,
        departure_port=trip.departure_port,
        arrival_port=trip.arrival_port,
        departure_at=trip.departure_at,
        arrival_at=trip.arrival_at,
        status=trip.status,
        remarks=trip.remarks,
        version=trip.version,
        created_by=trip.created_by or {},
        updated_by=trip.updated_by,
        created_at=trip.created_at,
        updated_at=trip.updated_at,
    )


def _availability_out(a: TripAvailability) -> AvailabilityOut:
    return AvailabilityOut(
        id=a.id,
        trip_id=a.trip_id,
        type=a.type,
        cabins=[
            AvailabilityCabinOut(
                cabin=c.cabin_id,
                cabin_name=c.cabin.name if c.cabin is not None else None,
                seats=c.seats,
                allocated_seats=c.allocated_seats,
                remaining_seats=c.seats - c.allocated_seats,
            )
            for c in a.cabins
        ],
        total_seats=sum(c.seats for c in a.cabins),
        allocated_seats=sum(c.allocated_seats for c in a.cabins),
        allocated_agent_id=a.allocated_agent_id,
        remarks=a.remarks,
        version=a.version,
        created_by=a.created_by or {},
        updated_by=a.updated_by,
        created_at=a.created_at,
        updated_at=a.updated_at,
    )


def _allocation_out(r: AvailabilityAgentAllocation) -> AgentAllocationOut:
    entries = [AllocationEntryOut(**e) for e in (r.allocations or [])]
    return AgentAllocationOut(
        id=r.id,
        trip_id=r.trip_id,
        availability_id=r.availability_id,
        agent_id=r.agent_id,
        agent_name=r.agent.name if r.agent is not None else None,
        allocations=entries,
        total_allocated_seats=sum(e.total_allocated_seats for e in entries),
        version=r.version,
        created_by=r.created_by or {},
        updated_by=r.updated_by,
        created_at=r.created_at,
        updated_at=r.updated_at,
    )


def _allocation_result(
    allocation: AvailabilityAgentAllocation | None,
    avail: TripAvailability,
    trip: Trip,
) -> AllocationResultOut:
    return AllocationResultOut(
        allocation=_allocation_out(allocation) if allocation is not None else None,
        availability_summary=AvailabilitySummaryOut(**availability.cabin_summary(avail)),
        updated_trip=_trip_capacity_out(trip),
    )


def _availability_drafts(blocks: list[AvailabilityBlockIn]) -> list[AvailabilityDraft]:
    return [
        AvailabilityDraft(
            type=b.type,
            cabins=[CabinSeats(cabin_id=c.cabin, seats=c.seats, allocated_seats=c.allocated_seats) for c in b.cabins],
            remarks=b.remarks,
        )
        for b in blocks
    ]


def _allocation_drafts(entries: list[AllocationEntryIn]) -> list[AllocationDraft]:
    return [
        AllocationDraft(
            type=e.type,
            cabins=[CabinGrant(cabin_id=c.cabin, allocated_seats=c.allocated_seats) for c in e.cabins],
        )
        for e in entries
    ]


#
# Routes
# ------
#


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/trips", status_code=201, response_model=Envelope[TripOut])
async def create_trip(
    payload: TripCreate,
    ctx: RequestContext = Depends(require_context(*WRITE_ROLES)),
    tenant_engine=Depends(get_tenant_engine),
):
    with unit_of_work(tenant_engine) as s:
        trip = capacity.create_trip(
            s,
            ctx,
            ship_id=payload.ship_id,
            trip_name=payload.trip_name,
            trip_code=payload.trip_code,
            departure_port=payload.departure_port,
            arrival_port=payload.arrival_port,
            departure_at=payload.departure_at,
            arrival_at=payload.arrival_at,
            status=payload.status,
            remarks=payload.remarks,
        )

    await events.publish(
        "trip.created",
        {"company_id": ctx.company_id, "trip_id": trip.id, **capacity.capacity_snapshot(trip)},
    )
    return Envelope(message="Trip created successfully", data=_trip_out(trip))


@app.get("/trips", response_model=Page[TripOut])
def list_trips(
    page: int = 1,
    limit: int = DEFAULT_PAGE_LIMIT,
    search: str | None = None,
    status: str | None = None,
    ship: str | None = None,
    departure_port: str | None = None,
    arrival_port: str | None = None,
    ctx: RequestContext = Depends(require_context(*READ_ROLES)),
    tenant_engine=Depends(get_tenant_engine),
):
    page, limit = _page_window(page, limit)
    with session(tenant_engine) as s:
        q = s.query(Trip).filter(Trip.company_id == ctx.company_id).filter(Trip.is_deleted.is_(False))
        if search and search.strip():
            term = search.strip()
            q = q.filter(
                or_(
                    Trip.trip_name.icontains(term, autoescape=True),
                    Trip.trip_code.icontains(term, autoescape=True),
                    Trip.remarks.icontains(term, autoescape=True),
                )
            )
        if status and status.strip():
            q = q.filter(Trip.status == capacity.check_status(status))
        if ship and ship.strip():
            q = q.filter(Trip.ship_id == ship.strip())
        if departure_port and departure_port.strip():
            q = q.filter(Trip.departure_port == departure_port.strip())
        if arrival_port and arrival_port.strip():
            q = q.filter(Trip.arrival_port == arrival_port.strip())
        total = q.count()
        rows = q.order_by(Trip.departure_at.desc(), Trip.id.asc()).offset((page - 1) * limit).limit(limit).all()
    return Page(data=[_trip_out(r) for r in rows], pagination=_pagination(page, limit, total))


@app.get("/trips/{trip_id}", response_model=Envelope[TripOut])
def get_trip(
    trip_id: str,
    ctx: RequestContext = Depends(require_context(*READ_ROLES)),
    tenant_engine=Depends(get_tenant_engine),
):
    with session(tenant_engine) as s:
        trip = capacity.load_trip(s, ctx, trip_id)
    return Envelope(message="Trip fetched successfully", data=_trip_out(trip))


@app.put("/trips/{trip_id}", response_model=Envelope[TripOut])
async def update_trip(
    trip_id: str,
    payload: TripUpdate,
    ctx: RequestContext = Depends(require_context(*WRITE_ROLES)),
    tenant_engine=Depends(get_tenant_engine),
):
    changes = payload.model_dump(exclude_unset=True)
    with unit_of_work(tenant_engine) as s:
        trip = capacity.update_trip(s, ctx, trip_id, changes)

    await events.publish(
        "trip.updated",
        {"company_id": ctx.company_id, "trip_id": trip.id, "fields": sorted(changes), **capacity.capacity_snapshot(trip)},
    )
    return Envelope(message="Trip updated successfully", data=_trip_out(trip))


@app.delete("/trips/{trip_id}", response_model=Envelope[TripDeletedOut])
async def delete_trip(
    trip_id: str,
    ctx: RequestContext = Depends(require_context(*WRITE_ROLES)),
    tenant_engine=Depends(get_tenant_engine),
):
    with unit_of_work(tenant_engine) as s:
        trip = capacity.delete_trip(s, ctx, trip_id)

    await events.publish("trip.deleted", {"company_id": ctx.company_id, "trip_id": trip.id})
    return Envelope(message="Trip deleted successfully", data=TripDeletedOut(id=trip.id, deleted_at=trip.updated_at))


@app.get("/trips/{trip_id}/availabilities", response_model=Page[AvailabilityOut])
def list_availabilities(
    trip_id: str,
    type: str | None = None,
    page: int = 1,
    limit: int = DEFAULT_PAGE_LIMIT,
    ctx: RequestContext = Depends(require_context(*READ_ROLES)),
    tenant_engine=Depends(get_tenant_engine),
):
    page, limit = _page_window(page, limit)
    with session(tenant_engine) as s:
        capacity.load_trip(s, ctx, trip_id)
        q = (
            s.query(TripAvailability)
            .filter(TripAvailability.company_id == ctx.company_id)
            .filter(TripAvailability.trip_id == trip_id)
            .filter(TripAvailability.is_deleted.is_(False))
        )
        if type:
            q = q.filter(TripAvailability.type == capacity.check_type(type))
        total = q.count()
        rows = (
            q.order_by(TripAvailability.created_at.desc(), TripAvailability.id.asc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
    return Page(data=[_availability_out(r) for r in rows], pagination=_pagination(page, limit, total))


@app.post("/trips/{trip_id}/availabilities", status_code=201, response_model=Envelope[list[AvailabilityOut]])
async def create_availabilities(
    trip_id: str,
    payload: AvailabilityCreate,
    ctx: RequestContext = Depends(require_context(*WRITE_ROLES)),
    tenant_engine=Depends(get_tenant_engine),
):
    with unit_of_work(tenant_engine) as s:
        rows = availability.create_availabilities(s, ctx, trip_id, _availability_drafts(payload.availabilities))

    data = [_availability_out(r) for r in rows]
    await events.publish_many(
        (
            "availability.created",
            {"company_id": ctx.company_id, "trip_id": trip_id, "availability_id": a.id, "type": a.type, "seats": a.total_seats},
        )
        for a in data
    )
    return Envelope(message="Availability created successfully", data=data)


# Declared before /{availability_id} so "summary" is not captured as an id.
@app.get("/trips/{trip_id}/availabilities/summary", response_model=Envelope[TripSummaryOut])
def get_trip_availability_summary(
    trip_id: str,
    ctx: RequestContext = Depends(require_context(*READ_ROLES)),
    tenant_engine=Depends(get_tenant_engine),
):
    with session(tenant_engine) as s:
        out = availability.trip_summary(s, ctx, trip_id)
    return Envelope(
        message="Availability summary fetched successfully",
        data=TripSummaryOut(
            trip_id=out["trip_id"],
            summary={t: TypeTotalsOut(**v) for t, v in out["summary"].items()},
            consistency=out["consistency"],
            availabilities=[_availability_out(a) for a in out["availabilities"]],
        ),
    )


@app.get("/trips/{trip_id}/availabilities/{availability_id}", response_model=Envelope[AvailabilityOut])
def get_availability(
    trip_id: str,
    availability_id: str,
    ctx: RequestContext = Depends(require_context(*READ_ROLES)),
    tenant_engine=Depends(get_tenant_engine),
):
    with session(tenant_engine) as s:
        capacity.load_trip(s, ctx, trip_id)
        row = capacity.load_availability(s, ctx, trip_id, availability_id)
    return Envelope(message="Availability fetched successfully", data=_availability_out(row))


@app.put("/trips/{trip_id}/availabilities/{availability_id}", response_model=Envelope[AvailabilityOut])
async def update_availability(
    trip_id: str,
    availability_id: str,
    payload: AvailabilityUpdate,
    ctx: RequestContext = Depends(require_context(*WRITE_ROLES)),
    tenant_engine=Depends(get_tenant_engine),
):
    options = {}
    if "allocated_agent" in payload.model_fields_set:
        options["allocated_agent"] = payload.allocated_agent
    if "remarks" in payload.model_fields_set:
        options["remarks"] = payload.remarks

    cabins = [CabinSeats(cabin_id=c.cabin, seats=c.seats, allocated_seats=c.allocated_seats) for c in payload.cabins]
    with unit_of_work(tenant_engine) as s:
        row = availability.update_availability(s, ctx, trip_id, availability_id, cabins, **options)

    data = _availability_out(row)
    await events.publish(
        "availability.updated",
        {"company_id": ctx.company_id, "trip_id": trip_id, "availability_id": data.id, "type": data.type, "seats": data.total_seats},
    )
    return Envelope(message="Availability updated successfully", data=data)


@app.delete("/trips/{trip_id}/availabilities/{availability_id}", response_model=Envelope[TripCapacityOut])
async def delete_availability(
    trip_id: str,
    availability_id: str,
    ctx: RequestContext = Depends(require_context(*WRITE_ROLES)),
    tenant_engine=Depends(get_tenant_engine),
):
    with unit_of_work(tenant_engine) as s:
        row = availability.delete_availability(s, ctx, trip_id, availability_id)
        trip = capacity.load_trip(s, ctx, trip_id)

    await events.publish(
        "availability.deleted",
        {"company_id": ctx.company_id, "trip_id": trip_id, "availability_id": row.id, "type": row.type},
    )
    return Envelope(message="Availability deleted successfully", data=_trip_capacity_out(trip))


@app.get(
    "/trips/{trip_id}/availabilities/{availability_id}/summary",
    response_model=Envelope[AvailabilityForAllocationOut],
)
def get_availability_for_allocation(
    trip_id: str,
    availability_id: str,
    ctx: RequestContext = Depends(require_context(*READ_ROLES)),
    tenant_engine=Depends(get_tenant_engine),
):
    with session(tenant_engine) as s:
        out = availability.availability_summary(s, ctx, trip_id, availability_id)
    return Envelope(
        message="Availability summary for allocation fetched successfully",
        data=AvailabilityForAllocationOut(**out),
    )


@app.get(
    "/trips/{trip_id}/availabilities/{availability_id}/agent-allocations",
    response_model=Page[AgentAllocationOut],
)
def list_agent_allocations(
    trip_id: str,
    availability_id: str,
    page: int = 1,
    limit: int = DEFAULT_PAGE_LIMIT,
    ctx: RequestContext = Depends(require_context(*READ_ROLES)),
    tenant_engine=Depends(get_tenant_engine),
):
    page, limit = _page_window(page, limit)
    with session(tenant_engine) as s:
        capacity.load_trip(s, ctx, trip_id)
        capacity.load_availability(s, ctx, trip_id, availability_id)
        q = (
            s.query(AvailabilityAgentAllocation)
            .filter(AvailabilityAgentAllocation.company_id == ctx.company_id)
            .filter(AvailabilityAgentAllocation.trip_id == trip_id)
            .filter(AvailabilityAgentAllocation.availability_id == availability_id)
            .filter(AvailabilityAgentAllocation.is_deleted.is_(False))
        )
        total = q.count()
        rows = (
            q.order_by(AvailabilityAgentAllocation.created_at.desc(), AvailabilityAgentAllocation.id.asc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
    return Page(data=[_allocation_out(r) for r in rows], pagination=_pagination(page, limit, total))


@app.post(
    "/trips/{trip_id}/availabilities/{availability_id}/agent-allocations",
    status_code=201,
    response_model=Envelope[AllocationResultOut],
)
async def create_agent_allocation(
    trip_id: str,
    availability_id: str,
    payload: AgentAllocationCreate,
    ctx: RequestContext = Depends(require_context(*WRITE_ROLES)),
    tenant_engine=Depends(get_tenant_engine),
):
    with unit_of_work(tenant_engine) as s:
        row, avail, trip = allocations.create_allocation(
            s, ctx, trip_id, availability_id, payload.agent, _allocation_drafts(payload.allocations)
        )

    result = _allocation_result(row, avail, trip)
    await events.publish(
        "agent_allocation.created",
        {
            "company_id": ctx.company_id,
            "trip_id": trip_id,
            "availability_id": availability_id,
            "allocation_id": row.id,
            "agent_id": row.agent_id,
            "seats": result.allocation.total_allocated_seats,
        },
    )
    return Envelope(message="Agent allocation created successfully", data=result)


@app.get(
    "/trips/{trip_id}/availabilities/{availability_id}/agent-allocations/{allocation_id}",
    response_model=Envelope[AgentAllocationOut],
)
def get_agent_allocation(
    trip_id: str,
    availability_id: str,
    allocation_id: str,
    ctx: RequestContext = Depends(require_context(*READ_ROLES)),
    tenant_engine=Depends(get_tenant_engine),
):
    with session(tenant_engine) as s:
        row = (
            s.query(AvailabilityAgentAllocation)
            .filter(AvailabilityAgentAllocation.id == allocation_id)
            .filter(AvailabilityAgentAllocation.company_id == ctx.company_id)
            .filter(AvailabilityAgentAllocation.trip_id == trip_id)
            .filter(AvailabilityAgentAllocation.availability_id == availability_id)
            .filter(AvailabilityAgentAllocation.is_deleted.is_(False))
            .first()
        )
    if row is None:
        raise HTTPException(status_code=404, detail="Agent allocation not found")
    return Envelope(message="Agent allocation fetched successfully", data=_allocation_out(row))


@app.put(
    "/trips/{trip_id}/availabilities/{availability_id}/agent-allocations/{allocation_id}",
    response_model=Envelope[AllocationResultOut],
)
async def update_agent_allocation(
    trip_id: str,
    availability_id: str,
    allocation_id: str,
    payload: AgentAllocationUpdate,
    ctx: RequestContext = Depends(require_context(*WRITE_ROLES)),
    tenant_engine=Depends(get_tenant_engine),
):
    with unit_of_work(tenant_engine) as s:
        row, avail, trip = allocations.update_allocation(
            s, ctx, trip_id, availability_id, allocation_id, _allocation_drafts(payload.allocations)
        )

    result = _allocation_result(row, avail, trip)
    await events.publish(
        "agent_allocation.updated",
        {
            "company_id": ctx.company_id,
            "trip_id": trip_id,
            "availability_id": availability_id,
            "allocation_id": row.id,
            "agent_id": row.agent_id,
            "seats": result.allocation.total_allocated_seats,
        },
    )
    return Envelope(message="Agent allocation updated successfully", data=result)


@app.delete(
    "/trips/{trip_id}/availabilities/{availability_id}/agent-allocations/{allocation_id}",
    response_model=Envelope[AllocationResultOut],
)
async def delete_agent_allocation(
    trip_id: str,
    availability_id: str,
    allocation_id: str,
    ctx: RequestContext = Depends(require_context(*WRITE_ROLES)),
    tenant_engine=Depends(get_tenant_engine),
):
    with unit_of_work(tenant_engine) as s:
        row, avail, trip = allocations.delete_allocation(s, ctx, trip_id, availability_id, allocation_id)

    await events.publish(
        "agent_allocation.deleted",
        {
            "company_id": ctx.company_id,
            "trip_id": trip_id,
            "availability_id": availability_id,
            "allocation_id": row.id,
            "agent_id": row.agent_id,
        },
    )
    return Envelope(message="Agent allocation deleted successfully", data=_allocation_result(None, avail, trip))


@app.get("/trips/{trip_id}/agent-quantities", response_model=Envelope[list[AgentQuantityOut]])
def get_agent_quantities(
    trip_id: str,
    ctx: RequestContext = Depends(require_context(*READ_ROLES)),
    tenant_engine=Depends(get_tenant_engine),
):
    with session(tenant_engine) as s:
        rows = allocations.agent_quantities(s, ctx, trip_id)
    return Envelope(message="Agent quantities fetched successfully", data=[AgentQuantityOut(**r) for r in rows])
