from __future__ import annotations

import logging
import re
from datetime import date
from typing import Optional

from sqlalchemy import select, and_, or_
from sqlalchemy.orm import Session, selectinload

from . import models
from .security import hash_password, verify_password
from .settings import settings
from .schemas import UserRegister, EventCreate, EventUpdate, CategoryCreate, CategoryUpdate

logger = logging.getLogger(__name__)


class ServiceError(ValueError):
    """Base for errors surfaced to API callers as ``{"error": message}``."""
    status_code = 400

class ValidationError(ServiceError):
    status_code = 400

class ConflictError(ServiceError):
    # duplicates are reported as 400, matching the rest of the API
    status_code = 400

class NotFoundError(ServiceError):
    status_code = 404

class PermissionDeniedError(ServiceError):
    status_code = 403


# ---------------------------
# Users / auth
# ---------------------------

def ensure_admin_user(session: Session) -> None:
    """Ensure the single admin account (from settings) exists in DB."""
    existing = session.execute(
        select(models.User).where(models.User.email == settings.RACE_ADMIN_EMAIL)
    ).scalar_one_or_none()

    if existing:
        if existing.role != models.ADMIN or not existing.is_active:
            existing.role = models.ADMIN
            existing.is_active = 1
            session.commit()
        return

    u = models.User(
        email=settings.RACE_ADMIN_EMAIL,
        name="Administrator",
        password_hash=hash_password(settings.RACE_ADMIN_PASSWORD),
        role=models.ADMIN,
        is_active=1,
    )
    session.add(u)
    session.commit()
    logger.info("Created admin account %s", settings.RACE_ADMIN_EMAIL)

def _normalize_email(email: str) -> str:
    return email.strip().lower()

def register_user(session: Session, payload: UserRegister) -> models.User:
    email = _normalize_email(payload.email)
    if session.execute(select(models.User).where(models.User.email == email)).scalar_one_or_none():
        raise ConflictError("Email already registered")
    u = models.User(
        email=email,
        name=payload.name.strip(),
        password_hash=hash_password(payload.password),
        role=payload.role,
        # marshals need an admin to verify them before they can act
        verification_status=models.PENDING if payload.role == models.MARSHAL else None,
        is_active=1,
    )
    session.add(u)
    session.commit()
    return u

def authenticate_user(session: Session, email: str, password: str) -> Optional[models.User]:
    u = session.execute(
        select(models.User).where(models.User.email == _normalize_email(email))
    ).scalar_one_or_none()
    if not u or not u.is_active:
        return None
    if verify_password(password, u.password_hash):
        return u
    return None

def list_pending_marshals(session: Session) -> list[models.User]:
    return session.execute(
        select(models.User)
        .where(and_(models.User.role == models.MARSHAL, models.User.verification_status == models.PENDING))
        .order_by(models.User.created_at.asc())
    ).scalars().all()

def verify_marshal(session: Session, user_id: int, action: str) -> models.User:
    u = session.get(models.User, user_id)
    if not u or u.role != models.MARSHAL:
        raise NotFoundError("Marshal not found")
    u.verification_status = models.APPROVED if action == "approve" else models.REJECTED
    session.commit()
    logger.info("Marshal %s verification set to %s", u.email, u.verification_status)
    return u

_PASSWORD_RULES = (
    (re.compile(r"[A-Z]"), "New password must contain at least one uppercase letter"),
    (re.compile(r"[a-z]"), "New password must contain at least one lowercase letter"),
    (re.compile(r"[0-9]"), "New password must contain at least one number"),
    (re.compile(r"[^A-Za-z0-9\s]"), "New password must contain at least one special character"),
)

def change_password(session: Session, user_id: int, current_password: str, new_password: str) -> None:
    u = session.get(models.User, user_id)
    if not u:
        raise NotFoundError("User not found")
    if not verify_password(current_password, u.password_hash):
        raise ValidationError("Current password is incorrect")
    if len(new_password) < 8:
        raise ValidationError("New password must be at least 8 characters long")
    for pattern, message in _PASSWORD_RULES:
        if not pattern.search(new_password):
            raise ValidationError(message)
    u.password_hash = hash_password(new_password)
    session.commit()
    logger.info("Password changed for user %s", u.id)


# ---------------------------
# Events / categories
# ---------------------------

def _add_category(session: Session, event: models.Event, payload: CategoryCreate) -> models.Category:
    name = payload.category_name.strip()
    if any(c.category_name == name for c in event.categories):
        raise ConflictError(f"Category '{name}' already exists for this event")
    category = models.Category(
        category_name=name,
        description=payload.description,
        target_audience=payload.target_audience,
        gun_start_time=payload.gun_start_time,
        cut_off_time=payload.cut_off_time,
    )
    event.categories.append(category)
    return category

def create_event(session: Session, payload: EventCreate, created_by: int) -> models.Event:
    staff_ids = [uid for uid in dict.fromkeys(payload.staff_user_ids) if uid != created_by]
    for uid in staff_ids:
        if not session.get(models.User, uid):
            raise NotFoundError(f"Staff user {uid} not found")
    event = models.Event(
        event_name=payload.event_name.strip(),
        event_date=payload.event_date,
        location=payload.location,
        description=payload.description,
        created_by=created_by,
    )
    session.add(event)
    for c in payload.categories:
        _add_category(session, event, c)
    for uid in staff_ids:
        event.staff.append(models.EventStaff(user_id=uid))
    session.commit()
    return event

def add_category(session: Session, event_id: int, payload: CategoryCreate) -> models.Category:
    event = get_event(session, event_id)
    if not event:
        raise NotFoundError("Event not found")
    category = _add_category(session, event, payload)
    session.commit()
    return category

def update_event(session: Session, event: models.Event, payload: EventUpdate) -> models.Event:
    changes = payload.model_dump(exclude_unset=True)
    if "event_name" in changes:
        if not (changes["event_name"] or "").strip():
            raise ValidationError("Event name is required")
        changes["event_name"] = changes["event_name"].strip()
    if "event_date" in changes and changes["event_date"] is None:
        raise ValidationError("Event date is required")
    for field, value in changes.items():
        setattr(event, field, value if value is not None else "")
    session.commit()
    return event

def delete_event(session: Session, event: models.Event) -> None:
    """Remove an event; categories, registrations and results go with it."""
    event_id = event.id
    try:
        session.delete(event)
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.info("Deleted event %s", event_id)

def get_event_category(session: Session, event: models.Event, category_id: int) -> models.Category:
    category = session.get(models.Category, category_id)
    if not category or category.event_id != event.id:
        raise NotFoundError("Category not found for this event")
    return category

def update_category(session: Session, category: models.Category, payload: CategoryUpdate) -> models.Category:
    changes = payload.model_dump(exclude_unset=True)
    if "category_name" in changes:
        name = (changes["category_name"] or "").strip()
        if not name:
            raise ValidationError("Category name is required")
        if any(c.id != category.id and c.category_name == name for c in category.event.categories):
            raise ConflictError(f"Category '{name}' already exists for this event")
        changes["category_name"] = name
    for field, value in changes.items():
        if value is None and field in ("description", "target_audience"):
            value = ""
        setattr(category, field, value)
    session.commit()
    return category

def delete_category(session: Session, category: models.Category) -> None:
    """Remove a category together with its registrations and results."""
    category_id = category.id
    event = category.event
    try:
        event.categories.remove(category)
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.info("Deleted category %s from event %s", category_id, event.id)

def get_event(session: Session, event_id: int) -> Optional[models.Event]:
    return session.get(models.Event, event_id)

def get_category(session: Session, category_id: int) -> Optional[models.Category]:
    return session.get(models.Category, category_id)

def list_events(session: Session) -> list[models.Event]:
    return session.execute(
        select(models.Event).options(selectinload(models.Event.categories)).order_by(models.Event.event_date.desc())
    ).scalars().all()

def can_manage_event(session: Session, user, event: models.Event) -> bool:
    """Admins manage everything; marshals the events they created or staff."""
    if user.is_admin:
        return True
    if event.created_by == user.id:
        return True
    return session.execute(
        select(models.EventStaff).where(
            and_(models.EventStaff.event_id == event.id, models.EventStaff.user_id == user.id)
        )
    ).scalar_one_or_none() is not None

def assert_can_manage_event(session: Session, user, event: models.Event) -> None:
    if not can_manage_event(session, user, event):
        raise PermissionDeniedError("Not allowed for this event")

def list_managed_events(session: Session, user) -> list[models.Event]:
    q = select(models.Event).options(
        selectinload(models.Event.categories)
        .selectinload(models.Category.participants)
        .selectinload(models.Participant.results),
        selectinload(models.Event.categories)
        .selectinload(models.Category.participants)
        .selectinload(models.Participant.user),
    ).order_by(models.Event.event_date.desc())
    if not user.is_admin:
        staffed = select(models.EventStaff.event_id).where(models.EventStaff.user_id == user.id)
        q = q.where(or_(models.Event.created_by == user.id, models.Event.id.in_(staffed)))
    return session.execute(q).scalars().all()


# ---------------------------
# Registration / payment verification
# ---------------------------

def register_for_event(
    session: Session, *, user_id: int, event_id: int, category_id: int, today: Optional[date] = None
) -> models.Participant:
    event = get_event(session, event_id)
    if not event:
        raise NotFoundError("Event not found")
    if event.event_date < (today or date.today()):
        raise ValidationError("Cannot register for past events")
    if not any(c.id == category_id for c in event.categories):
        raise ValidationError("Category not available for this event")

    existing = session.execute(
        select(models.Participant).where(
            and_(
                models.Participant.user_id == user_id,
                models.Participant.event_id == event_id,
                models.Participant.category_id == category_id,
            )
        )
    ).scalar_one_or_none()
    if existing:
        raise ConflictError("Already registered for this event category")

    p = models.Participant(
        user_id=user_id,
        event_id=event_id,
        category_id=category_id,
        registration_status=models.PENDING,
        payment_status=models.PENDING,
    )
    session.add(p)
    session.commit()
    return p

def list_user_registrations(session: Session, user_id: int, event_id: Optional[int] = None) -> list[models.Participant]:
    q = (
        select(models.Participant)
        .options(
            selectinload(models.Participant.category),
            selectinload(models.Participant.event),
            selectinload(models.Participant.results),
        )
        .where(models.Participant.user_id == user_id)
        .order_by(models.Participant.registered_at.desc())
    )
    if event_id is not None:
        q = q.where(models.Participant.event_id == event_id)
    return session.execute(q).scalars().all()

def list_event_participants(session: Session, event_id: int, status: Optional[str] = None) -> list[models.Participant]:
    q = (
        select(models.Participant)
        .options(selectinload(models.Participant.user), selectinload(models.Participant.category))
        .where(models.Participant.event_id == event_id)
        .order_by(models.Participant.registered_at.asc())
    )
    if status:
        q = q.where(models.Participant.registration_status == status)
    return session.execute(q).scalars().all()

def list_approved_participants(session: Session, category_id: int) -> list[models.Participant]:
    return session.execute(
        select(models.Participant)
        .options(selectinload(models.Participant.user))
        .where(
            and_(
                models.Participant.category_id == category_id,
                models.Participant.registration_status == models.APPROVED,
            )
        )
        .order_by(models.Participant.id.asc())
    ).scalars().all()

def qr_content_for(participant: models.Participant) -> str:
    # the QR encodes just the participant id, like a bib number
    return str(participant.id)

def verify_payment(
    session: Session, user, *, participant_id: int, action: str, rejection_reason: Optional[str] = None
) -> models.Participant:
    participant = session.get(models.Participant, participant_id)
    if not participant or not can_manage_event(session, user, participant.event):
        raise NotFoundError("Participant not found or you do not have permission to verify this payment")
    if participant.payment_status != models.PENDING:
        raise ValidationError("Payment has already been processed")

    participant.verified_at = models.utcnow()
    participant.verified_by = user.id
    if action == "approve":
        participant.payment_status = models.VERIFIED
        participant.registration_status = models.APPROVED
        participant.rejection_reason = None
        participant.qr_code_data = qr_content_for(participant)
    else:
        participant.payment_status = models.REJECTED
        participant.registration_status = models.REJECTED
        if rejection_reason:
            participant.rejection_reason = rejection_reason
    session.commit()
    logger.info(
        "Participant %s registration %s by user %s", participant.id, participant.registration_status, user.id
    )
    return participant
