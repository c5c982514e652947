"""
Registration, login and the email-verification / password-reset token
lifecycles.

Raw tokens are handed to the notifier and never stored; the user document
keeps only their SHA-256 and an expiry.
"""
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

from pydantic.alias_generators import to_camel
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import audit
from audit import ClientInfo
from database import USERS, duplicate_key_field, insert_numbered, next_sequence, to_object_id, utcnow
from errors import ConflictError, InternalError, NotFoundError, UnauthenticatedError, ValidationError
from logging_config import get_logger
from notifications import NotificationError, Notifier, dispatch_quietly
from schemas import RegisterRequest, UpdateProfileRequest
from security import (decode_refresh_token, generate_token, get_password_hash, hash_token, issue_session,
                      verify_password)

logger = get_logger(__name__)

EMAIL_VERIFICATION_TTL = timedelta(hours=24)
PASSWORD_RESET_TTL = timedelta(minutes=10)
MIN_PASSWORD_LENGTH = 8
INVALID_CREDENTIALS = "Invalid email or password. Please check your credentials."
RESET_REQUESTED = "If your email is registered, you will receive a password reset link"

ROLE_REQUIRED_FIELDS = {
    "patient": ("gender", "date_of_birth", "blood_group", "genotype", "emergency_contact"),
    "doctor": ("specialization", "license_number", "consultation_fee"),
    "admin": ("department",),
}
ROLE_FIELDS = {
    "patient": ("blood_group", "genotype", "emergency_contact", "height", "weight"),
    "doctor": ("specialization", "license_number", "department", "consultation_fee"),
    "admin": ("department",),
}
# role -> (field, prefix, sequence width)
ROLE_NUMBERS = {
    "patient": ("registration_number", "PT", 5),
    "doctor": ("employee_id", "DR", 4),
    "admin": ("employee_id", "ADM", 4),
}

Session = Dict[str, str]


def _as_stored(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump(exclude_none=True)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


def get_user(db: Database, user_id: str) -> Dict[str, Any]:
    oid = to_object_id(user_id)
    user = db[USERS].find_one({"_id": oid}) if oid else None
    if not user:
        raise NotFoundError("User not found")
    return user


def _check_role_fields(payload: RegisterRequest) -> None:
    missing = [f for f in ROLE_REQUIRED_FIELDS[payload.role] if getattr(payload, f) is None]
    if missing:
        errors = [
            {"field": to_camel(f), "message": f"{f.replace('_', ' ').capitalize()} is required for {payload.role}s"}
            for f in missing
        ]
        raise ValidationError("Validation error", errors=errors)


def _password_strength(password: Optional[str]) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")


def register(db: Database, notifier: Notifier, payload: RegisterRequest,
             client: ClientInfo = ClientInfo()) -> Tuple[Dict[str, Any], Session]:
    _check_role_fields(payload)
    email = payload.email.lower()
    if db[USERS].find_one({"email": email}, {"_id": 1}):
        raise ConflictError(
            f"This email ({email}) is already registered. Please use a different email or try logging in."
        )
    if payload.role == "doctor" and db[USERS].find_one({"license_number": payload.license_number}, {"_id": 1}):
        raise ConflictError(f"A user with license number '{payload.license_number}' already exists")

    raw_token, token_hash = generate_token()
    now = utcnow()
    doc: Dict[str, Any] = {
        "first_name": payload.first_name.strip(),
        "last_name": payload.last_name.strip(),
        "email": email,
        "phone": payload.phone,
        "password_hash": get_password_hash(payload.password),
        "role": payload.role,
        "gender": payload.gender,
        "date_of_birth": _as_stored(payload.date_of_birth),
        "address": payload.address,
        "is_active": True,
        "is_email_verified": False,
        "last_login": None,
        "email_verification_token": token_hash,
        "email_verification_expire": now + EMAIL_VERIFICATION_TTL,
    }
    for field in ROLE_FIELDS[payload.role]:
        value = getattr(payload, field)
        if value is not None:
            doc[field] = _as_stored(value)
    if payload.role == "patient":
        doc.update({"allergies": [], "assigned_doctor": None})
    elif payload.role == "doctor":
        doc.update({"availability": {}, "slot_duration": 30})

    field, prefix, width = ROLE_NUMBERS[payload.role]
    prefix = f"{prefix}{now.year}"
    try:
        insert_numbered(db, USERS, doc, field,
                        lambda attempt: next_sequence(db, USERS, field, prefix, width, offset=attempt))
    except DuplicateKeyError as exc:
        taken = duplicate_key_field(exc) or "these details"
        raise ConflictError(f"A user with {taken.replace('_', ' ')} already exists")

    user_id = str(doc["_id"])
    logger.info("user_registered", user_id=user_id, role=payload.role)
    dispatch_quietly(notifier.send_email_verification, doc, raw_token, event="email-verification")
    dispatch_quietly(notifier.send_welcome, doc, event="registration-welcome")
    audit.log_activity(db, user=user_id, action="register", resource_type="User", resource_id=user_id,
                       description=f"User registered successfully as {payload.role}",
                       ip_address=client.ip_address, user_agent=client.user_agent)
    return doc, issue_session(user_id)


def login(db: Database, notifier: Notifier, email: str, password: str,
          client: ClientInfo = ClientInfo()) -> Tuple[Dict[str, Any], Session]:
    """Every attempt is audited; unknown emails are recorded with no user."""
    email = email.lower()
    user = db[USERS].find_one({"email": email})
    if not user:
        audit.log_activity(db, user=None, action="login", resource_type="User", status="failure",
                           description=f"Failed login attempt for non-existent email: {email}",
                           ip_address=client.ip_address, user_agent=client.user_agent)
        raise UnauthenticatedError(INVALID_CREDENTIALS)

    user_id = str(user["_id"])
    if not verify_password(password, user.get("password_hash")):
        audit.log_activity(db, user=user_id, action="login", resource_type="User", resource_id=user_id,
                           status="failure", description="Failed login attempt - incorrect password",
                           ip_address=client.ip_address, user_agent=client.user_agent)
        raise UnauthenticatedError(INVALID_CREDENTIALS)

    if not user.get("is_active", True):
        audit.log_activity(db, user=user_id, action="login", resource_type="User", resource_id=user_id,
                           status="failure", description="Failed login attempt - account deactivated",
                           ip_address=client.ip_address, user_agent=client.user_agent)
        raise UnauthenticatedError("Your account has been deactivated. Please contact support.")

    user["last_login"] = utcnow()
    db[USERS].update_one({"_id": user["_id"]}, {"$set": {"last_login": user["last_login"]}})
    dispatch_quietly(notifier.send_login_alert, user, client.ip_address, client.user_agent, event="login-alert")
    audit.log_activity(db, user=user_id, action="login", resource_type="User", resource_id=user_id,
                       description="User logged in successfully",
                       ip_address=client.ip_address, user_agent=client.user_agent)
    return user, issue_session(user_id)


def refresh_session(db: Database, refresh_token: str) -> Session:
    payload = decode_refresh_token(refresh_token)
    oid = to_object_id(payload["id"])
    user = db[USERS].find_one({"_id": oid}, {"is_active": 1}) if oid else None
    if not user or not user.get("is_active", True):
        raise UnauthenticatedError("Token is invalid or has expired. Please login again.")
    return issue_session(str(user["_id"]))


def _consume(db: Database, token_field: str, expire_field: str, raw_token: str) -> Optional[Dict[str, Any]]:
    """Find the user holding an unexpired token hash; None when absent or stale."""
    if not raw_token:
        return None
    user = db[USERS].find_one({token_field: hash_token(raw_token)})
    if not user:
        return None
    expires = user.get(expire_field)
    if expires is None or expires <= utcnow():
        return None
    return user


def verify_email(db: Database, token: str, client: ClientInfo = ClientInfo()) -> Dict[str, Any]:
    user = _consume(db, "email_verification_token", "email_verification_expire", token)
    if not user:
        raise ValidationError("Invalid or expired verification token")
    db[USERS].update_one(
        {"_id": user["_id"]},
        {"$set": {"is_email_verified": True, "updated_at": utcnow()},
         "$unset": {"email_verification_token": "", "email_verification_expire": ""}},
    )
    user_id = str(user["_id"])
    audit.log_activity(db, user=user_id, action="email-verification", resource_type="User",
                       resource_id=user_id, description="Email verified successfully",
                       ip_address=client.ip_address, user_agent=client.user_agent)
    return user


def resend_verification(db: Database, notifier: Notifier, user_id: str) -> None:
    user = get_user(db, user_id)
    if user.get("is_email_verified"):
        raise ValidationError("Email already verified")
    raw_token, token_hash = generate_token()
    db[USERS].update_one(
        {"_id": user["_id"]},
        {"$set": {"email_verification_token": token_hash,
                  "email_verification_expire": utcnow() + EMAIL_VERIFICATION_TTL}},
    )
    try:
        notifier.send_email_verification(user, raw_token)
    except NotificationError as exc:
        logger.warning("notification_failed", notification="email-verification", error=str(exc))
        raise InternalError("Failed to send verification email. Please try again.")


def _revoke_reset_token(db: Database, user_oid) -> None:
    db[USERS].update_one({"_id": user_oid}, {"$unset": {"reset_password_token": "", "reset_password_expire": ""}})


def request_password_reset(db: Database, notifier: Notifier, email: str,
                           client: ClientInfo = ClientInfo()) -> str:
    """
    Issue a reset token and mail it. The caller sees the same message whether
    or not the email exists; a token that could not be delivered is revoked.
    """
    user = db[USERS].find_one({"email": email.lower()})
    if not user:
        return RESET_REQUESTED

    raw_token, token_hash = generate_token()
    db[USERS].update_one(
        {"_id": user["_id"]},
        {"$set": {"reset_password_token": token_hash, "reset_password_expire": utcnow() + PASSWORD_RESET_TTL}},
    )
    user_id = str(user["_id"])
    delivered = False
    try:
        notifier.send_password_reset(user, raw_token)
        delivered = True
    except NotificationError as exc:
        logger.warning("notification_failed", notification="password-reset", error=str(exc))
    finally:
        if not delivered:
            _revoke_reset_token(db, user["_id"])

    if not delivered:
        audit.log_activity(db, user=user_id, action="password-reset-request", resource_type="User",
                           resource_id=user_id, status="failure",
                           description="Password reset requested - delivery failed, token revoked",
                           ip_address=client.ip_address, user_agent=client.user_agent)
        return RESET_REQUESTED

    audit.log_activity(db, user=user_id, action="password-reset-request", resource_type="User",
                       resource_id=user_id, description="Password reset requested - email sent",
                       ip_address=client.ip_address, user_agent=client.user_agent)
    return RESET_REQUESTED


def reset_password(db: Database, token: str, new_password: str,
                   client: ClientInfo = ClientInfo()) -> Tuple[Dict[str, Any], Session]:
    _password_strength(new_password)
    user = _consume(db, "reset_password_token", "reset_password_expire", token)
    if not user:
        raise ValidationError("Invalid or expired reset token")
    db[USERS].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": get_password_hash(new_password), "updated_at": utcnow()},
         "$unset": {"reset_password_token": "", "reset_password_expire": ""}},
    )
    user_id = str(user["_id"])
    audit.log_activity(db, user=user_id, action="password-reset", resource_type="User", resource_id=user_id,
                       description="Password reset successfully",
                       ip_address=client.ip_address, user_agent=client.user_agent)
    return user, issue_session(user_id)


def update_password(db: Database, user_id: str, current_password: str, new_password: str,
                    client: ClientInfo = ClientInfo()) -> Session:
    _password_strength(new_password)
    user = get_user(db, user_id)
    if not verify_password(current_password, user.get("password_hash")):
        raise UnauthenticatedError("Current password is incorrect")
    db[USERS].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": get_password_hash(new_password), "updated_at": utcnow()}},
    )
    audit.log_activity(db, user=user_id, action="password-update", resource_type="User", resource_id=user_id,
                       description="Password updated successfully",
                       ip_address=client.ip_address, user_agent=client.user_agent)
    return issue_session(user_id)


def update_profile(db: Database, user_id: str, payload: UpdateProfileRequest,
                   client: ClientInfo = ClientInfo()) -> Dict[str, Any]:
    changes = {k: _as_stored(v) for k, v in payload.model_dump(exclude_none=True).items()}
    user = get_user(db, user_id)
    if changes:
        changes["updated_at"] = utcnow()
        db[USERS].update_one({"_id": user["_id"]}, {"$set": changes})
        user.update(changes)
    audit.log_activity(db, user=user_id, action="profile-update", resource_type="User", resource_id=user_id,
                       description="User profile updated",
                       ip_address=client.ip_address, user_agent=client.user_agent)
    return user


def logout(db: Database, user_id: str, client: ClientInfo = ClientInfo()) -> None:
    audit.log_activity(db, user=user_id, action="logout", resource_type="User", resource_id=user_id,
                       description="User logged out", ip_address=client.ip_address, user_agent=client.user_agent)
