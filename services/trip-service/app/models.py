from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


#
# Capacity catalog (read-only for this service; seeded by the fleet owner)
# ------------------------------------------------------------------------
#


class Ship(Base):
    __tablename__ = "ships"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    company_id: Mapped[str] = mapped_column(String, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)

    name: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="Active", index=True)  # Active|Inactive
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, index=True)

    capacities: Mapped[list[ShipCapacity]] = relationship(back_populates="ship")  # type: ignore[name-defined]


class ShipCapacity(Base):
    """
    Declared per-cabin capacity of a ship.

    For cargo and vehicle decks `seats` holds the number of spots.
    """

    __tablename__ = "ship_capacities"
    __table_args__ = (UniqueConstraint("ship_id", "capacity_type", "cabin_id", name="uq_ship_capacities_key"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    ship_id: Mapped[str] = mapped_column(String, ForeignKey("ships.id"), index=True)

    capacity_type: Mapped[str] = mapped_column(String, index=True)  # passenger|cargo|vehicle
    cabin_id: Mapped[str] = mapped_column(String, ForeignKey("cabins.id"), index=True)
    cabin_name: Mapped[str | None] = mapped_column(String)
    seats: Mapped[int] = mapped_column(Integer, default=0)

    ship: Mapped[Ship] = relationship(back_populates="capacities")


class Cabin(Base):
    __tablename__ = "cabins"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    company_id: Mapped[str] = mapped_column(String, index=True)

    name: Mapped[str] = mapped_column(String)
    type: Mapped[str] = mapped_column(String, index=True)  # passenger|cargo|vehicle
    status: Mapped[str] = mapped_column(String, default="Active", index=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, index=True)


class Agent(Base):
    __tablename__ = "agents"
    __table_args__ = (UniqueConstraint("company_id", "code", name="uq_agents_company_code"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    company_id: Mapped[str] = mapped_column(String, index=True)

    name: Mapped[str] = mapped_column(String)
    code: Mapped[str] = mapped_column(String, index=True)
    type: Mapped[str] = mapped_column(String, default="Selling")  # Company|Marine|Commercial|Selling
    status: Mapped[str] = mapped_column(String, default="Active", index=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, index=True)


#
# Trip capacity mirror
# --------------------
#


class Trip(Base):
    __tablename__ = "trips"
    __table_args__ = (UniqueConstraint("company_id", "trip_code", name="uq_trips_company_trip_code"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    company_id: Mapped[str] = mapped_column(String, index=True)
    ship_id: Mapped[str] = mapped_column(String, ForeignKey("ships.id"), index=True)

    trip_name: Mapped[str] = mapped_column(String)
    trip_code: Mapped[str] = mapped_column(String, index=True)
    departure_port: Mapped[str] = mapped_column(String)
    arrival_port: Mapped[str] = mapped_column(String)
    departure_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    arrival_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String, default="SCHEDULED", index=True)
    remarks: Mapped[str | None] = mapped_column(String)

    # Must always equal the per-type sum of capacity_details.remaining_seat.
    remaining_passenger_seats: Mapped[int] = mapped_column(Integer, default=0)
    remaining_cargo_seats: Mapped[int] = mapped_column(Integer, default=0)
    remaining_vehicle_seats: Mapped[int] = mapped_column(Integer, default=0)

    created_by: Mapped[dict] = mapped_column(JSON, default=dict)  # {id, name, type, layer}
    updated_by: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, index=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    capacity_details: Mapped[list[TripCapacityDetail]] = relationship(  # type: ignore[name-defined]
        back_populates="trip",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="TripCapacityDetail.position",
    )

    __mapper_args__ = {"version_id_col": version}


class TripCapacityDetail(Base):
    __tablename__ = "trip_capacity_details"
    __table_args__ = (UniqueConstraint("trip_id", "capacity_type", "cabin_id", name="uq_trip_capacity_details_key"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    trip_id: Mapped[str] = mapped_column(String, ForeignKey("trips.id"), index=True)

    capacity_type: Mapped[str] = mapped_column(String, index=True)
    cabin_id: Mapped[str] = mapped_column(String, ForeignKey("cabins.id"), index=True)
    remaining_seat: Mapped[int] = mapped_column(Integer, default=0)
    position: Mapped[int] = mapped_column(Integer, default=0)  # ship capacity order: type, then capacity id

    trip: Mapped[Trip] = relationship(back_populates="capacity_details")


#
# Availability ledger
# -------------------
#


class TripAvailability(Base):
    __tablename__ = "trip_availabilities"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    company_id: Mapped[str] = mapped_column(String, index=True)
    trip_id: Mapped[str] = mapped_column(String, ForeignKey("trips.id"), index=True)

    type: Mapped[str] = mapped_column(String, index=True)  # passenger|cargo|vehicle
    allocated_agent_id: Mapped[str | None] = mapped_column(String, ForeignKey("agents.id"), index=True)
    remarks: Mapped[str | None] = mapped_column(String)

    created_by: Mapped[dict] = mapped_column(JSON, default=dict)
    updated_by: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, index=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    cabins: Mapped[list[TripAvailabilityCabin]] = relationship(  # type: ignore[name-defined]
        back_populates="availability",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="TripAvailabilityCabin.position",
    )

    __mapper_args__ = {"version_id_col": version}


class TripAvailabilityCabin(Base):
    __tablename__ = "trip_availability_cabins"
    __table_args__ = (UniqueConstraint("availability_id", "cabin_id", name="uq_trip_availability_cabins_key"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    availability_id: Mapped[str] = mapped_column(String, ForeignKey("trip_availabilities.id"), index=True)
    cabin_id: Mapped[str] = mapped_column(String, ForeignKey("cabins.id"), index=True)

    seats: Mapped[int] = mapped_column(Integer, default=0)
    allocated_seats: Mapped[int] = mapped_column(Integer, default=0)  # 0 <= allocated_seats <= seats
    position: Mapped[int] = mapped_column(Integer, default=0)

    availability: Mapped[TripAvailability] = relationship(back_populates="cabins")
    cabin: Mapped[Cabin] = relationship(lazy="selectin")


#
# Agent allocation ledger
# -----------------------
#


class AvailabilityAgentAllocation(Base):
    __tablename__ = "availability_agent_allocations"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    company_id: Mapped[str] = mapped_column(String, index=True)
    trip_id: Mapped[str] = mapped_column(String, ForeignKey("trips.id"), index=True)
    availability_id: Mapped[str] = mapped_column(String, ForeignKey("trip_availabilities.id"), index=True)
    agent_id: Mapped[str] = mapped_column(String, ForeignKey("agents.id"), index=True)

    # [{"type": "passenger", "cabins": [{"cabin": "<id>", "allocated_seats": 5}], "total_allocated_seats": 5}]
    allocations: Mapped[list] = mapped_column(JSON, default=list)

    created_by: Mapped[dict] = mapped_column(JSON, default=dict)
    updated_by: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, index=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    agent: Mapped[Agent] = relationship(lazy="selectin")

    __mapper_args__ = {"version_id_col": version}
