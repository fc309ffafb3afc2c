from __future__ import annotations

from datetime import date, datetime, timezone
from sqlalchemy import String, Integer, Date, DateTime, Text, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base
from .utils import MAX_COMPLETION_TIME_LENGTH

# roles
RUNNER = "Runner"
MARSHAL = "Marshal"
ADMIN = "Admin"

# registration / verification statuses
PENDING = "Pending"
APPROVED = "Approved"
REJECTED = "Rejected"

# payment statuses
VERIFIED = "Verified"


def utcnow() -> datetime:
    # stored naive, always UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=RUNNER)  # Runner | Marshal | Admin
    # only meaningful for marshals
    verification_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    is_active: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    registrations: Mapped[list["Participant"]] = relationship(
        back_populates="user", foreign_keys="Participant.user_id"
    )

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN

    @property
    def is_marshal(self) -> bool:
        return self.role == MARSHAL

    @property
    def is_verified_marshal(self) -> bool:
        return self.role == MARSHAL and self.verification_status == APPROVED


class Event(Base):
    __tablename__ = "events"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_name: Mapped[str] = mapped_column(String(200), nullable=False)
    event_date: Mapped[date] = mapped_column(Date, nullable=False)
    location: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_by: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    creator: Mapped["User"] = relationship()
    categories: Mapped[list["Category"]] = relationship(
        back_populates="event", cascade="all, delete-orphan", order_by="Category.id"
    )
    staff: Mapped[list["EventStaff"]] = relationship(back_populates="event", cascade="all, delete-orphan")


class EventStaff(Base):
    __tablename__ = "event_staff"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role_position: Mapped[str] = mapped_column(String(100), nullable=False, default="")

    event: Mapped["Event"] = relationship(back_populates="staff")
    user: Mapped["User"] = relationship()

    __table_args__ = (UniqueConstraint("event_id", "user_id", name="uq_event_staff"),)


class Category(Base):
    __tablename__ = "categories"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    category_name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    target_audience: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    # wall-clock HH:MM, informational only
    gun_start_time: Mapped[str | None] = mapped_column(String(20), nullable=True)
    cut_off_time: Mapped[str | None] = mapped_column(String(20), nullable=True)

    event: Mapped["Event"] = relationship(back_populates="categories")
    # deleting a category removes its registrations and results
    participants: Mapped[list["Participant"]] = relationship(back_populates="category", cascade="save-update, merge, delete")
    results: Mapped[list["Result"]] = relationship(back_populates="category", cascade="save-update, merge, delete")

    __table_args__ = (
        UniqueConstraint("event_id", "category_name", name="uq_category_per_event"),
        Index("ix_categories_event", "event_id"),
    )


class Participant(Base):
    __tablename__ = "participants"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    category_id: Mapped[int] = mapped_column(ForeignKey("categories.id", ondelete="CASCADE"), nullable=False)

    registration_status: Mapped[str] = mapped_column(String(20), nullable=False, default=PENDING)
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default=PENDING)
    registered_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    verified_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    qr_code_data: Mapped[str | None] = mapped_column(String(100), nullable=True)

    user: Mapped["User"] = relationship(back_populates="registrations", foreign_keys=[user_id])
    event: Mapped["Event"] = relationship()
    category: Mapped["Category"] = relationship(back_populates="participants")
    results: Mapped[list["Result"]] = relationship(back_populates="participant", cascade="save-update, merge, delete")

    __table_args__ = (
        UniqueConstraint("user_id", "event_id", "category_id", name="uq_registration"),
        Index("ix_participants_event", "event_id"),
        Index("ix_participants_category", "category_id"),
    )


class Result(Base):
    __tablename__ = "results"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    participant_id: Mapped[int] = mapped_column(ForeignKey("participants.id", ondelete="CASCADE"), nullable=False)
    category_id: Mapped[int] = mapped_column(ForeignKey("categories.id", ondelete="CASCADE"), nullable=False)

    # as entered: HH:MM:SS[.fff] | MM:SS[.fff] | SS[.fff]
    completion_time: Mapped[str] = mapped_column(String(MAX_COMPLETION_TIME_LENGTH), nullable=False)
    ranking: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    recorded_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)

    participant: Mapped["Participant"] = relationship(back_populates="results")
    category: Mapped["Category"] = relationship(back_populates="results")

    __table_args__ = (
        UniqueConstraint("participant_id", "category_id", name="uq_result_participant_category"),
        Index("ix_results_category", "category_id"),
    )
