"""
Email, SMS and in-app notifications.

Every send stores an in-app notification document first, then tries the
external channel. Storage and channel failures both surface as
``NotificationError``; callers decide whether that matters (it only does for
password reset issuance).
"""
import smtplib
from email.mime.text import MIMEText
from typing import Any, Callable, Dict, List, Optional

import httpx
from fastapi import Depends
from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import PyMongoError

from config import Settings, get_settings
from database import NOTIFICATIONS, get_db, to_object_id, utcnow
from logging_config import get_logger

logger = get_logger(__name__)

CATEGORIES = {
    "appointment-confirmation", "appointment-reminder", "appointment-cancellation",
    "appointment-rescheduled", "lab-results-ready", "prescription-ready",
    "payment-confirmation", "registration-welcome", "email-verification",
    "password-reset", "login-alert", "system-alert", "general",
}


class NotificationError(Exception):
    pass


class Notifier:
    def __init__(self, db: Database, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    # Channels
    def send_email(self, to: str, subject: str, body: str) -> None:
        s = self.settings
        if not s.smtp_host:
            raise NotificationError("Email transport not configured")
        msg = MIMEText(body, "plain")
        msg["From"] = s.email_from
        msg["To"] = to
        msg["Subject"] = subject
        try:
            with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=10) as server:
                server.starttls()
                if s.smtp_username:
                    server.login(s.smtp_username, s.smtp_password or "")
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationError(f"Email delivery failed: {exc}") from exc

    def send_sms(self, phone: str, message: str) -> None:
        s = self.settings
        if not s.sms_gateway_url:
            raise NotificationError("SMS gateway not configured")
        payload = {"to": phone, "from": s.sms_sender_id, "sms": message, "api_key": s.sms_api_key}
        try:
            response = httpx.post(s.sms_gateway_url, json=payload, timeout=10.0)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise NotificationError(f"SMS delivery failed: {exc}") from exc

    def _store(self, recipient: Dict[str, Any], category: str, subject: str, message: str, kind: str) -> Dict[str, Any]:
        doc = {
            "recipient_id": str(recipient["_id"]),
            "type": kind,
            "category": category if category in CATEGORIES else "general",
            "subject": subject,
            "message": message,
            "is_read": False,
            "read_at": None,
            "sent": False,
            "sent_at": None,
            "created_at": utcnow(),
        }
        doc["_id"] = self.db[NOTIFICATIONS].insert_one(doc).inserted_id
        return doc

    def notify(self, recipient: Dict[str, Any], category: str, subject: str, message: str,
               channels: tuple = ("email",), inbox_message: Optional[str] = None) -> Dict[str, Any]:
        """
        Store the in-app copy, then deliver on each channel.

        ``inbox_message`` replaces ``message`` in the stored copy; mail that
        carries a one-time link must pass one so the raw token is never persisted.
        """
        kind = "both" if {"email", "sms"} <= set(channels) else (channels[0] if channels else "in-app")
        try:
            doc = self._store(recipient, category, subject, inbox_message or message, kind)
        except PyMongoError as exc:
            raise NotificationError(f"Could not store notification: {exc}") from exc
        for channel in channels:
            if channel == "email":
                self.send_email(recipient["email"], subject, message)
            elif channel == "sms" and recipient.get("phone"):
                self.send_sms(recipient["phone"], message)
        try:
            self.db[NOTIFICATIONS].update_one({"_id": doc["_id"]}, {"$set": {"sent": True, "sent_at": utcnow()}})
        except PyMongoError as exc:
            logger.warning("notification_status_update_failed", category=category, error=str(exc))
        logger.info("notification_sent", category=category, recipient=doc["recipient_id"], channels=list(channels))
        return doc

    # Templates
    def _link(self, path: str, token: str) -> str:
        return f"{self.settings.frontend_url}/{path}?token={token}"

    def send_email_verification(self, user: Dict[str, Any], token: str) -> None:
        self.notify(user, "email-verification", "Verify your email address",
                    f"Hello {user['first_name']},\n\nConfirm your email within 24 hours:\n"
                    f"{self._link('verify-email', token)}\n",
                    inbox_message="We sent a verification link to your email address. It expires in 24 hours.")

    def send_welcome(self, user: Dict[str, Any]) -> None:
        self.notify(user, "registration-welcome", "Welcome to the hospital portal",
                    f"Hello {user['first_name']}, your {user['role']} account is ready.")

    def send_login_alert(self, user: Dict[str, Any], ip_address: Optional[str], user_agent: Optional[str]) -> None:
        self.notify(user, "login-alert", "New sign-in to your account",
                    f"A sign-in from {ip_address or 'an unknown address'} "
                    f"({user_agent or 'unknown device'}) was recorded at {utcnow():%Y-%m-%d %H:%M} UTC.")

    def send_password_reset(self, user: Dict[str, Any], token: str) -> None:
        self.notify(user, "password-reset", "Password reset request",
                    f"Hello {user['first_name']},\n\nReset your password within 10 minutes:\n"
                    f"{self._link('reset-password', token)}\n\nIgnore this email if you did not ask for it.",
                    inbox_message="A password reset link was sent to your email address. It expires in 10 minutes.")

    def send_appointment_confirmation(self, patient: Dict[str, Any], doctor: Dict[str, Any],
                                      appointment: Dict[str, Any]) -> None:
        self.notify(patient, "appointment-confirmation",
                    f"Appointment {appointment['appointment_number']} booked",
                    f"Your appointment with Dr. {doctor['last_name']} is on "
                    f"{appointment['appointment_date']} at {appointment['appointment_time']}.",
                    channels=("email", "sms"))

    def send_appointment_cancellation(self, patient: Dict[str, Any], appointment: Dict[str, Any]) -> None:
        self.notify(patient, "appointment-cancellation",
                    f"Appointment {appointment['appointment_number']} cancelled",
                    f"Your appointment on {appointment['appointment_date']} at "
                    f"{appointment['appointment_time']} has been cancelled.")

    def send_prescription_ready(self, patient: Dict[str, Any], prescription: Dict[str, Any]) -> None:
        self.notify(patient, "prescription-ready",
                    f"Prescription {prescription['prescription_number']}",
                    f"A new prescription with {len(prescription['medications'])} item(s) is available.")


def get_notifier(db: Database = Depends(get_db)) -> Notifier:
    return Notifier(db)


def dispatch_quietly(send: Callable[..., None], *args: Any, event: str) -> bool:
    """Run a notification send; log and swallow delivery failures."""
    try:
        send(*args)
        return True
    except NotificationError as exc:
        logger.warning("notification_failed", notification=event, error=str(exc))
        return False


# In-app inbox
def list_notifications(db: Database, user_id: str, skip: int, limit: int,
                       is_read: Optional[bool] = None) -> tuple:
    query: Dict[str, Any] = {"recipient_id": str(user_id)}
    if is_read is not None:
        query["is_read"] = is_read
    items: List[Dict[str, Any]] = list(
        db[NOTIFICATIONS].find(query).sort("created_at", DESCENDING).skip(skip).limit(limit)
    )
    return items, db[NOTIFICATIONS].count_documents(query)


def unread_count(db: Database, user_id: str) -> int:
    return db[NOTIFICATIONS].count_documents({"recipient_id": str(user_id), "is_read": False})


def mark_as_read(db: Database, notification_id: str, user_id: str) -> bool:
    oid = to_object_id(notification_id)
    if oid is None:
        return False
    result = db[NOTIFICATIONS].update_one(
        {"_id": oid, "recipient_id": str(user_id)},
        {"$set": {"is_read": True, "read_at": utcnow()}},
    )
    return result.matched_count == 1


def mark_all_as_read(db: Database, user_id: str) -> int:
    result = db[NOTIFICATIONS].update_many(
        {"recipient_id": str(user_id), "is_read": False},
        {"$set": {"is_read": True, "read_at": utcnow()}},
    )
    return result.modified_count
