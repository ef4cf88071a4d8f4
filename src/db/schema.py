"""SQLAlchemy ORM models for ride persistence."""

from datetime import datetime

from sqlalchemy import Boolean, Float, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from core.clock import utc_now


class Base(DeclarativeBase):
    pass


class RideRecord(Base):
    __tablename__ = "rides"

    ride_id: Mapped[str] = mapped_column(String, primary_key=True)
    customer_id: Mapped[str] = mapped_column(String, nullable=False)
    driver_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Set only while the ride is non-terminal; the unique constraints make
    # "has an active ride" an indexed lookup enforced by the database.
    active_customer_id: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    active_driver_id: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    status: Mapped[str] = mapped_column(String, nullable=False)
    vehicle_type: Mapped[str] = mapped_column(String, nullable=False)

    pickup_latitude: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_longitude: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_address: Mapped[str] = mapped_column(Text, nullable=False, default="")
    pickup_cell: Mapped[str] = mapped_column(String, nullable=False)
    destination_latitude: Mapped[float] = mapped_column(Float, nullable=False)
    destination_longitude: Mapped[float] = mapped_column(Float, nullable=False)
    destination_address: Mapped[str] = mapped_column(Text, nullable=False, default="")

    base_fare: Mapped[float] = mapped_column(Float, nullable=False)
    distance_fare: Mapped[float] = mapped_column(Float, nullable=False)
    time_fare: Mapped[float] = mapped_column(Float, nullable=False)
    surge_multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    subtotal: Mapped[float] = mapped_column(Float, nullable=False)
    minimum_fare: Mapped[float] = mapped_column(Float, nullable=False)
    total_fare: Mapped[float] = mapped_column(Float, nullable=False)
    estimated_fare: Mapped[float] = mapped_column(Float, nullable=False)
    distance_km: Mapped[float] = mapped_column(Float, nullable=False)
    estimated_duration_min: Mapped[int] = mapped_column(Integer, nullable=False)
    actual_duration_min: Mapped[int | None] = mapped_column(Integer, nullable=True)

    otp: Mapped[str] = mapped_column(String(4), nullable=False)
    otp_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payment_method: Mapped[str] = mapped_column(String, nullable=False, default="cash")
    payment_status: Mapped[str] = mapped_column(String, nullable=False, default="pending")

    driver_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    driver_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    driver_heading: Mapped[float | None] = mapped_column(Float, nullable=True)
    driver_speed: Mapped[float | None] = mapped_column(Float, nullable=True)
    driver_location_at: Mapped[datetime | None] = mapped_column(nullable=True)

    cancelled_by: Mapped[str | None] = mapped_column(String, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=lambda: utc_now())
    accepted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    picked_up_at: Mapped[datetime | None] = mapped_column(nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        default=lambda: utc_now(),
        onupdate=lambda: utc_now(),
    )

    __table_args__ = (
        Index("idx_ride_dispatch", "status", "vehicle_type", "pickup_cell"),
        Index("idx_ride_customer", "customer_id", "created_at"),
        Index("idx_ride_driver", "driver_id", "created_at"),
    )


class RideLocationRecord(Base):
    __tablename__ = "ride_locations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ride_id: Mapped[str] = mapped_column(String, nullable=False)
    driver_id: Mapped[str] = mapped_column(String, nullable=False)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    heading: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    speed: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    recorded_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (Index("idx_ride_location_ride", "ride_id", "recorded_at"),)


class RideHistoryRecord(Base):
    __tablename__ = "ride_history"

    ride_id: Mapped[str] = mapped_column(String, primary_key=True)
    driver_id: Mapped[str] = mapped_column(String, nullable=False)
    customer_id: Mapped[str] = mapped_column(String, nullable=False)
    vehicle_type: Mapped[str] = mapped_column(String, nullable=False)
    total_fare: Mapped[float] = mapped_column(Float, nullable=False)
    platform_commission: Mapped[float] = mapped_column(Float, nullable=False)
    driver_earnings: Mapped[float] = mapped_column(Float, nullable=False)
    distance_km: Mapped[float] = mapped_column(Float, nullable=False)
    duration_min: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_method: Mapped[str] = mapped_column(String, nullable=False)
    completed_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (Index("idx_ride_history_driver", "driver_id", "completed_at"),)


class EngineMetadata(Base):
    __tablename__ = "engine_metadata"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str] = mapped_column(String, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=lambda: utc_now(),
        onupdate=lambda: utc_now(),
    )
