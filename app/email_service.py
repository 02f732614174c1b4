"""Transactional email over SMTP."""

import logging
import smtplib
from email.message import EmailMessage

from config import get_settings

logger = logging.getLogger(__name__)

SIGNATURE = "\n\nBest regards,\nSTAYA Team"


def _html(title, paragraphs, link=None, link_label=None):
    body = "".join(f"<p>{p}</p>" for p in paragraphs)
    if link:
        body += f'<p><a href="{link}">{link_label or link}</a></p>'
    return f"<html><body><h2>{title}</h2>{body}<p>Best regards,<br>STAYA Team</p></body></html>"


def render_template(template, data):
    """Return (subject, text, html) for a named template."""
    name = data.get("name", "")
    if template == "verification":
        url = data["verification_url"]
        return (
            "Verify Your STAYA Account",
            f"Hello {name},\n\nPlease verify your email by clicking: {url}{SIGNATURE}",
            _html("Welcome to STAYA", [f"Hello {name},", "Please verify your email address."], url, "Verify email"),
        )
    if template == "password_reset":
        url = data["reset_url"]
        return (
            "Reset Your STAYA Password",
            f"Hello {name},\n\nReset your password by clicking: {url}\n\nThis link expires in 10 minutes.{SIGNATURE}",
            _html("Password reset", [f"Hello {name},", "This link expires in 10 minutes."], url, "Reset password"),
        )
    if template == "booking_confirmation":
        ref = data["booking_reference"]
        lines = [
            f"Your booking {ref} has been confirmed.",
            f"Trip: {data['from']} to {data['to']}",
            f"Date: {data['departure_date']}",
            f"Passengers: {data['passengers']}",
        ]
        return (
            f"Booking Confirmed - {ref}",
            f"Hello {name},\n\n" + "\n".join(lines) + SIGNATURE,
            _html("Booking confirmed", [f"Hello {name},"] + lines),
        )
    if template == "booking_cancellation":
        ref = data["booking_reference"]
        lines = [f"Your booking {ref} has been cancelled.", f"Refund amount: ₦{data['refund_amount']:,.2f}"]
        return (
            f"Booking Cancelled - {ref}",
            f"Hello {name},\n\n" + "\n".join(lines) + SIGNATURE,
            _html("Booking cancelled", [f"Hello {name},"] + lines),
        )
    if template == "payment_confirmation":
        ref = data["payment_reference"]
        lines = [f"Your payment of ₦{data['amount']:,.2f} has been confirmed.", f"Payment Reference: {ref}"]
        return (
            f"Payment Confirmed - {ref}",
            f"Hello {name},\n\n" + "\n".join(lines) + SIGNATURE,
            _html("Payment confirmed", [f"Hello {name},"] + lines),
        )
    raise ValueError(f"Unknown email template: {template}")


def send_email(to, template, data, subject=None):
    settings = get_settings()
    default_subject, text, html = render_template(template, data)

    message = EmailMessage()
    message["Subject"] = subject or default_subject
    message["From"] = settings.email_from
    message["To"] = to
    message.set_content(text)
    message.add_alternative(html, subtype="html")

    if settings.email_port == 465:
        server = smtplib.SMTP_SSL(settings.email_host, settings.email_port, timeout=30)
    else:
        server = smtplib.SMTP(settings.email_host, settings.email_port, timeout=30)
    with server:
        if settings.email_port != 465:
            server.starttls()
        if settings.email_user:
            server.login(settings.email_user, settings.email_pass)
        server.send_message(message)
    logger.info("Sent %s email to %s", template, to)


def try_send_email(to, template, data):
    """Send an email whose failure must not fail the calling operation."""
    try:
        send_email(to, template, data)
        return True
    except (OSError, smtplib.SMTPException) as exc:
        logger.error("Failed to send %s email to %s: %s", template, to, exc)
        return False
