"""Paystack payments for bookings.

Payment and booking rows change together: every operation that touches both
stages its changes on the one session and commits once, so a failure leaves
neither half applied.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

import booking_service
import email_service
import models_sqlalchemy as models
from auth_service import is_admin
from config import get_settings
from errors import BusinessRuleViolation, GatewayError, NotFound, PermissionDenied, ValidationFailed
from paystack import PaystackClient, PaystackError

logger = logging.getLogger(__name__)


def generate_payment_reference() -> str:
    return f"STAYA_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def _merge_metadata(payment: models.Payment, **extra) -> None:
    # reassign so the JSON column is flagged dirty
    merged = dict(payment.payment_metadata or {})
    merged.update(extra)
    payment.payment_metadata = merged


def _get_by_reference(db: Session, reference: str) -> Optional[models.Payment]:
    return db.query(models.Payment).filter(models.Payment.payment_reference == reference).first()


def initialize_payment(db: Session, client: PaystackClient, user: models.User,
                       booking_id: str, metadata: Optional[dict] = None) -> dict:
    booking = db.query(models.Booking).filter(models.Booking.id == booking_id).first()
    if not booking or (booking.user_id != user.id and not is_admin(user)):
        raise NotFound("Booking not found", error="BOOKING_NOT_FOUND")
    if booking.payment_status == "paid":
        raise BusinessRuleViolation("Booking has already been paid for", error="BOOKING_ALREADY_PAID")
    if booking.status != "pending":
        raise BusinessRuleViolation(f"A {booking.status} booking cannot be paid for", error="BOOKING_NOT_PAYABLE")

    reference = generate_payment_reference()
    payment = models.Payment(
        booking_id=booking.id,
        user_id=booking.user_id,
        amount=booking.total_price,
        currency="NGN",
        payment_method="paystack",
        payment_reference=reference,
        status="pending",
        payment_metadata=dict(metadata or {}),
    )
    db.add(payment)
    db.commit()
    db.refresh(payment)

    gateway_metadata = {"booking_id": booking.id, "user_id": booking.user_id}
    gateway_metadata.update(metadata or {})
    try:
        data = client.initialize_transaction(
            email=booking.contact_info.get("email") or user.email,
            amount_kobo=int(round(booking.total_price * 100)),
            reference=reference,
            callback_url=f"{get_settings().frontend_url}/payment/callback",
            metadata=gateway_metadata,
        )
    except PaystackError as exc:
        payment.status = "failed"
        _merge_metadata(payment, gateway_error=str(exc))
        db.commit()
        logger.error("Paystack initialization failed for %s: %s", reference, exc)
        raise GatewayError(str(exc) or "Payment initialization failed")

    payment.external_reference = data.get("reference")
    _merge_metadata(payment, paystack_data=data)
    db.commit()
    db.refresh(payment)
    logger.info("Initialized payment %s for booking %s", reference, booking.booking_reference)
    return {
        "authorization_url": data.get("authorization_url"),
        "access_code": data.get("access_code"),
        "reference": reference,
        "payment": payment,
    }


def verify_payment(db: Session, client: PaystackClient, reference: str,
                   user: Optional[models.User] = None) -> models.Payment:
    """Confirm a payment against the gateway.

    Verifying a payment that already succeeded returns it unchanged without
    calling the gateway or re-sending confirmations, which keeps webhook
    retries and repeated polling safe.
    """
    payment = _get_by_reference(db, reference)
    if not payment or (user is not None and payment.user_id != user.id and not is_admin(user)):
        raise NotFound("Payment not found", error="PAYMENT_NOT_FOUND")
    if payment.status == "success":
        return payment
    if payment.status in ("refunded", "cancelled"):
        raise BusinessRuleViolation(
            f"A {payment.status} payment cannot be verified", error="PAYMENT_NOT_VERIFIABLE"
        )

    try:
        data = client.verify_transaction(reference)
    except PaystackError as exc:
        logger.error("Paystack verification failed for %s: %s", reference, exc)
        raise GatewayError(str(exc) or "Payment verification failed")

    if data.get("status") != "success":
        payment.status = "failed"
        _merge_metadata(payment, verification_data=data)
        db.commit()
        logger.info("Payment %s reported as %s", reference, data.get("status"))
        raise BusinessRuleViolation("Payment verification failed", error="PAYMENT_FAILED")

    booking = payment.booking
    payment.status = "success"
    payment.external_reference = data.get("reference") or payment.external_reference
    _merge_metadata(payment, verification_data=data)

    # Money arrived for a booking that can no longer take it: keep the
    # booking as it is and leave the charge for an admin refund.
    if booking.payment_status == "paid" or not booking_service.can_transition(booking.status, "confirmed"):
        reason = "duplicate_payment" if booking.payment_status == "paid" else f"booking_{booking.status}"
        _merge_metadata(payment, needs_refund=True, refund_reason=reason)
        db.commit()
        db.refresh(payment)
        logger.warning("Payment %s succeeded for booking %s (%s); flagged for refund",
                       reference, booking.booking_reference, reason)
        return payment

    booking.payment_status = "paid"
    booking.status = "confirmed"
    booking.payment_reference = reference
    db.commit()
    db.refresh(payment)
    logger.info("Payment %s verified; booking %s confirmed", reference, booking.booking_reference)

    recipient = booking.contact_info.get("email") or booking.user.email
    name = booking.user.name
    email_service.try_send_email(
        recipient, "payment_confirmation",
        {"name": name, "amount": payment.amount, "payment_reference": reference},
    )
    email_service.try_send_email(
        recipient, "booking_confirmation",
        {
            "name": name,
            "booking_reference": booking.booking_reference,
            "from": booking.from_location.full_name if booking.from_location else booking.from_location_id,
            "to": booking.to_location.full_name if booking.to_location else booking.to_location_id,
            "departure_date": booking.departure_date.strftime("%Y-%m-%d %H:%M"),
            "passengers": booking.passengers,
        },
    )
    return payment


def handle_webhook(db: Session, client: PaystackClient, event: dict) -> bool:
    """Process a Paystack event; failures are logged and reported as False."""
    try:
        if event.get("event") != "charge.success":
            return False
        reference = (event.get("data") or {}).get("reference")
        if not reference:
            return False
        verify_payment(db, client, reference)
        return True
    except Exception:
        db.rollback()
        logger.exception("Webhook handling error")
        return False


def get_payment_by_reference(db: Session, reference: str, user: models.User) -> models.Payment:
    payment = _get_by_reference(db, reference)
    if not payment:
        raise NotFound("Payment not found", error="PAYMENT_NOT_FOUND")
    if payment.user_id != user.id and not is_admin(user):
        raise PermissionDenied("Access denied")
    return payment


def get_user_payments(db: Session, user_id: str):
    return (
        db.query(models.Payment)
        .filter(models.Payment.user_id == user_id)
        .order_by(models.Payment.created_at.desc())
        .all()
    )


def get_all_payments(db: Session, status: Optional[str] = None, page: int = 1, limit: int = 20):
    if status and status not in models.PAYMENT_STATUSES:
        raise ValidationFailed(f"Unknown payment status: {status}")
    query = db.query(models.Payment)
    if status:
        query = query.filter(models.Payment.status == status)
    total = query.count()
    payments = query.order_by(models.Payment.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return payments, total


def process_refund(db: Session, payment_id: str, amount: Optional[float] = None) -> models.Payment:
    """Mark a successful payment refunded and cancel its booking.

    Payments flagged ``needs_refund`` never paid for their booking, so
    refunding one leaves the booking untouched.

    The gateway's refund API is not called; the refund must be settled with
    Paystack separately and the metadata records that it was not requested.
    """
    payment = db.query(models.Payment).filter(models.Payment.id == payment_id).first()
    if not payment:
        raise NotFound("Payment not found", error="PAYMENT_NOT_FOUND")
    if payment.status != "success":
        raise BusinessRuleViolation(
            f"A {payment.status} payment cannot be refunded", error="PAYMENT_NOT_REFUNDABLE"
        )
    refund_amount = amount if amount is not None else payment.amount
    if refund_amount > payment.amount:
        raise ValidationFailed("Refund amount cannot exceed the amount paid")

    now = models.utcnow()
    unattached = bool((payment.payment_metadata or {}).get("needs_refund"))
    payment.status = "refunded"
    _merge_metadata(
        payment,
        refund_amount=refund_amount,
        refund_date=now.isoformat(),
        gateway_refund="not_requested",
        needs_refund=False,
    )
    if not unattached:
        booking = payment.booking
        booking.payment_status = "refunded"
        booking.status = "cancelled"
        booking.refund_amount = refund_amount
        booking.cancelled_at = booking.cancelled_at or now
    db.commit()
    db.refresh(payment)
    logger.warning("Payment %s marked refunded without a gateway refund", payment.payment_reference)
    return payment


def get_payment_stats(db: Session) -> dict:
    rows = (
        db.query(models.Payment.status, func.count(models.Payment.id), func.coalesce(func.sum(models.Payment.amount), 0))
        .group_by(models.Payment.status)
        .all()
    )
    by_status = {status: {"count": count, "amount": float(total)} for status, count, total in rows}
    return {
        "total_payments": sum(s["count"] for s in by_status.values()),
        "total_amount": by_status.get("success", {}).get("amount", 0.0),
        "successful_payments": by_status.get("success", {}).get("count", 0),
        "failed_payments": by_status.get("failed", {}).get("count", 0),
        "pending_payments": by_status.get("pending", {}).get("count", 0),
        "refunded_payments": by_status.get("refunded", {}).get("count", 0),
    }
