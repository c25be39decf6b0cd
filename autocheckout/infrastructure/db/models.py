"""
SQLAlchemy ORM models for database tables.

Parkings, users and tickets belong to the wider parking system and are
mapped here only with the columns the engine reads or writes. All
timestamps are epoch milliseconds.
"""

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from autocheckout.domain.models import CheckoutStatus, ZoneMethod


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class ParkingDB(Base):
    __tablename__ = "parkings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lng: Mapped[float] = mapped_column(Float, nullable=False)
    total_spots: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    available_spots: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def __repr__(self) -> str:
        return f"<Parking(id={self.id}, available={self.available_spots}/{self.total_spots})>"


class UserDB(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    email: Mapped[str | None] = mapped_column(String(200), nullable=True)
    license_plate: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, plate={self.license_plate})>"


class TicketDB(Base):
    """
    Parking ticket.

    The engine only moves tickets from active to completed.
    """

    __tablename__ = "tickets"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    parking_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("parkings.id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id"), nullable=False, index=True
    )
    zone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    spot_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    start_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    end_time: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    used_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    actual_end_time: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    final_amount: Mapped[float | None] = mapped_column(Float, nullable=True)

    parking: Mapped["ParkingDB"] = relationship("ParkingDB")
    user: Mapped["UserDB"] = relationship("UserDB")

    __table_args__ = (
        Index("ix_tickets_parking_status_start", "parking_id", "status", "start_time"),
        Index("ix_tickets_user_status", "user_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Ticket(id={self.id}, status={self.status})>"


class AutoCheckoutConfigDB(Base):
    """Per-lot auto-checkout configuration."""

    __tablename__ = "auto_checkout_config"

    parking_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("parkings.id"), primary_key=True
    )
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    method: Mapped[str] = mapped_column(
        String(20), default=ZoneMethod.GEOLOCATION.value, nullable=False
    )
    exit_radius: Mapped[float] = mapped_column(Float, default=100.0, nullable=False)
    confirmation_delay: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    exit_zones: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    sensor_ids: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    grace_period: Mapped[int] = mapped_column(Integer, default=300, nullable=False)
    notifications_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    updated_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    parking: Mapped["ParkingDB"] = relationship("ParkingDB")

    def __repr__(self) -> str:
        return f"<AutoCheckoutConfig(parking={self.parking_id}, method={self.method})>"


class AutoCheckoutDB(Base):
    """One automatic or manual checkout attempt."""

    __tablename__ = "auto_checkouts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    ticket_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tickets.id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    parking_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("parkings.id"), nullable=False
    )
    method: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=CheckoutStatus.PENDING.value, nullable=False
    )
    initiated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    completed_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    cancelled_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    final_amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(String(100), nullable=True)

    ticket: Mapped["TicketDB"] = relationship("TicketDB")
    parking: Mapped["ParkingDB"] = relationship("ParkingDB")

    __table_args__ = (
        Index("ix_auto_checkouts_user_initiated", "user_id", "initiated_at"),
        Index("ix_auto_checkouts_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<AutoCheckout(id={self.id}, status={self.status})>"


class NotificationDB(Base):
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    related_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    def __repr__(self) -> str:
        return f"<Notification(user={self.user_id}, type={self.type})>"


class SensorEventDB(Base):
    """Raw IoT sensor events, kept for auditing."""

    __tablename__ = "sensor_events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    sensor_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(20), nullable=False)
    vehicle_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    confidence: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)

    def __repr__(self) -> str:
        return f"<SensorEvent(sensor={self.sensor_id}, type={self.event_type})>"
