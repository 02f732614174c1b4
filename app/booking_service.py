"""Booking lifecycle: creation, amendment, cancellation and admin status changes."""

from __future__ import annotations

import logging
import secrets
import string
from datetime import datetime
from typing import Optional

from sqlalchemy import func, or_, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import email_service
import models_sqlalchemy as models
import models_pydantic as schemas
from auth_service import is_admin
from errors import BusinessRuleViolation, NotFound, ValidationFailed

logger = logging.getLogger(__name__)

REFERENCE_ALPHABET = string.digits + string.ascii_uppercase
REFERENCE_ATTEMPTS = 3
MIN_CANCELLATION_HOURS = 24
FULL_REFUND_HOURS = 48

TRANSITIONS = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"cancelled", "completed"},
}


def generate_booking_reference(now: Optional[datetime] = None) -> str:
    """YYYYMMDD followed by four random base-36 characters."""
    now = now or models.utcnow()
    suffix = "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(4))
    return now.strftime("%Y%m%d") + suffix


def hours_until_departure(departure: datetime, now: Optional[datetime] = None) -> float:
    return (departure - (now or models.utcnow())).total_seconds() / 3600


def refund_percentage(hours: float) -> int:
    if hours >= FULL_REFUND_HOURS:
        return 100
    if hours >= MIN_CANCELLATION_HOURS:
        return 75
    return 0


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, set())


def find_active_route(db: Session, from_id: str, to_id: str) -> Optional[models.Route]:
    return db.query(models.Route).filter(
        models.Route.is_active.is_(True),
        or_(
            and_(models.Route.from_location_id == from_id, models.Route.to_location_id == to_id),
            and_(models.Route.from_location_id == to_id, models.Route.to_location_id == from_id),
        ),
    ).first()


def _get_owned(db: Session, booking_id: str, user: models.User) -> models.Booking:
    booking = db.query(models.Booking).filter(models.Booking.id == booking_id).first()
    # strangers get the same answer as for a missing id
    if not booking or (booking.user_id != user.id and not is_admin(user)):
        raise NotFound("Booking not found", error="BOOKING_NOT_FOUND")
    return booking


def create_booking(db: Session, user: models.User, payload: schemas.BookingCreate,
                   now: Optional[datetime] = None) -> models.Booking:
    now = now or models.utcnow()
    departure = models.as_utc_naive(payload.departure_date)
    return_date = models.as_utc_naive(payload.return_date)

    if departure < now:
        raise ValidationFailed("Departure date cannot be in the past")
    if return_date is not None and return_date <= departure:
        raise ValidationFailed("Return date must be after departure date")
    if payload.from_location_id == payload.to_location_id:
        raise ValidationFailed("Origin and destination must differ")

    active_endpoints = db.query(func.count(models.Location.id)).filter(
        models.Location.id.in_([payload.from_location_id, payload.to_location_id]),
        models.Location.is_active.is_(True),
    ).scalar()
    if active_endpoints < 2:
        raise BusinessRuleViolation("Location not found or not available", error="LOCATION_NOT_AVAILABLE")

    route = find_active_route(db, payload.from_location_id, payload.to_location_id)
    if route is None:
        raise BusinessRuleViolation("Route not found or not available", error="ROUTE_NOT_FOUND")

    transport = route.get_transport_mode(payload.transport_type, payload.operator_name)
    if transport is None:
        raise BusinessRuleViolation(
            f"No available {payload.transport_type} service on this route",
            error="TRANSPORT_NOT_AVAILABLE",
        )

    total_price = transport["price"] * payload.passengers

    for attempt in range(1, REFERENCE_ATTEMPTS + 1):
        booking = models.Booking(
            booking_reference=generate_booking_reference(now),
            user_id=user.id,
            route_id=route.id,
            from_location_id=payload.from_location_id,
            to_location_id=payload.to_location_id,
            departure_date=departure,
            return_date=return_date,
            passengers=payload.passengers,
            trip_type=payload.trip_type,
            selected_transport=dict(transport),
            total_price=total_price,
            status="pending",
            payment_status="pending",
            contact_info=payload.contact_info.model_dump(exclude_none=True),
            special_requests=payload.special_requests,
        )
        db.add(booking)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.warning("Booking reference collision on attempt %d", attempt)
            continue
        db.refresh(booking)
        logger.info("Created booking %s for user %s", booking.booking_reference, user.id)
        return booking

    raise BusinessRuleViolation("Failed to create booking", error="BOOKING_CREATE_ERROR", status_code=500)


def get_booking(db: Session, booking_id: str, user: models.User) -> models.Booking:
    return _get_owned(db, booking_id, user)


def _check_status_filter(status: Optional[str]) -> None:
    if status and status not in models.BOOKING_STATUSES:
        raise ValidationFailed(f"Unknown booking status: {status}")


def get_user_bookings(db: Session, user_id: str, status: Optional[str] = None):
    _check_status_filter(status)
    query = db.query(models.Booking).filter(models.Booking.user_id == user_id)
    if status:
        query = query.filter(models.Booking.status == status)
    return query.order_by(models.Booking.created_at.desc()).all()


def update_booking(db: Session, booking_id: str, user: models.User,
                   changes: schemas.BookingUpdate) -> models.Booking:
    booking = _get_owned(db, booking_id, user)
    if booking.status != "pending":
        raise BusinessRuleViolation("Only pending bookings can be updated", error="BOOKING_UPDATE_NOT_ALLOWED")

    data = changes.model_dump(exclude_unset=True)
    if "special_requests" in data:
        booking.special_requests = data["special_requests"]
    if data.get("contact_info"):
        merged = dict(booking.contact_info or {})
        merged.update({k: v for k, v in data["contact_info"].items() if v is not None})
        booking.contact_info = merged
    db.commit()
    db.refresh(booking)
    return booking


def cancel_booking(db: Session, booking_id: str, user: models.User,
                   now: Optional[datetime] = None) -> dict:
    booking = _get_owned(db, booking_id, user)
    if booking.status not in ("pending", "confirmed"):
        raise BusinessRuleViolation(
            f"A {booking.status} booking cannot be cancelled", error="BOOKING_NOT_CANCELLABLE"
        )

    hours = hours_until_departure(booking.departure_date, now)
    if hours < MIN_CANCELLATION_HOURS:
        raise BusinessRuleViolation(
            "Booking cannot be cancelled less than 24 hours before departure",
            error="CANCELLATION_NOT_ALLOWED",
        )

    percentage = refund_percentage(hours)
    refund_amount = booking.total_price * percentage / 100
    booking.status = "cancelled"
    booking.refund_amount = refund_amount
    booking.cancelled_at = now or models.utcnow()
    db.commit()
    db.refresh(booking)
    logger.info("Cancelled booking %s with %d%% refund", booking.booking_reference, percentage)

    email_service.try_send_email(
        booking.contact_info.get("email") or booking.user.email,
        "booking_cancellation",
        {"name": booking.user.name, "booking_reference": booking.booking_reference, "refund_amount": refund_amount},
    )
    return {"booking": booking, "refund_amount": refund_amount, "refund_percentage": percentage}


def update_booking_status(db: Session, booking_id: str, status: str) -> models.Booking:
    booking = db.query(models.Booking).filter(models.Booking.id == booking_id).first()
    if not booking:
        raise NotFound("Booking not found", error="BOOKING_NOT_FOUND")
    if booking.status == status:
        return booking
    if not can_transition(booking.status, status):
        raise BusinessRuleViolation(
            f"Cannot change booking status from {booking.status} to {status}",
            error="INVALID_STATUS_TRANSITION",
        )
    booking.status = status
    if status == "cancelled":
        booking.cancelled_at = models.utcnow()
    db.commit()
    db.refresh(booking)
    logger.info("Booking %s moved to %s by admin", booking.booking_reference, status)
    return booking


def get_all_bookings(db: Session, status: Optional[str] = None, from_date: Optional[datetime] = None,
                     to_date: Optional[datetime] = None, page: int = 1, limit: int = 20):
    _check_status_filter(status)
    query = db.query(models.Booking)
    if status:
        query = query.filter(models.Booking.status == status)
    if from_date:
        query = query.filter(models.Booking.created_at >= models.as_utc_naive(from_date))
    if to_date:
        query = query.filter(models.Booking.created_at <= models.as_utc_naive(to_date))
    total = query.count()
    bookings = (
        query.order_by(models.Booking.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return bookings, total


def get_booking_stats(db: Session) -> dict:
    by_status = dict(
        db.query(models.Booking.status, func.count(models.Booking.id)).group_by(models.Booking.status).all()
    )
    revenue = db.query(func.coalesce(func.sum(models.Booking.total_price), 0)).filter(
        models.Booking.payment_status == "paid"
    ).scalar()
    return {
        "total_bookings": sum(by_status.values()),
        "by_status": {status: by_status.get(status, 0) for status in models.BOOKING_STATUSES},
        "total_revenue": float(revenue or 0),
    }
