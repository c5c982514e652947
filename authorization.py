"""
Two-tier access control.

``authorize`` is the coarse role gate; ``can_access_resource`` is the
per-resource ownership gate. Routes compose them through the dependencies at
the bottom of this module.
"""
from typing import Any, Callable, Dict, Iterable, Optional

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from pymongo.database import Database

from database import USERS, get_db, to_object_id
from errors import ForbiddenError, UnauthenticatedError
from logging_config import bind_context
from security import decode_access_token

Identity = Dict[str, Any]

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)

SECRET_FIELDS = (
    "password_hash",
    "email_verification_token",
    "email_verification_expire",
    "reset_password_token",
    "reset_password_expire",
)


def _role(identity: Identity) -> str:
    return str(identity.get("role") or "").lower()


def authorize(identity: Optional[Identity], required_roles: Iterable[str]) -> Identity:
    if not identity:
        raise UnauthenticatedError("Authentication required")
    required = [r.lower() for r in required_roles]
    if _role(identity) not in required:
        raise ForbiddenError(
            f"User role '{identity.get('role')}' is not authorized to access this resource. "
            f"Required roles: {', '.join(required)}"
        )
    return identity


def can_access_resource(identity: Optional[Identity], resource_type: str, owner_id: Optional[str]) -> Identity:
    """
    Ownership gate. Admins pass everything; doctors may read any patient;
    patients only reach records that are theirs.
    """
    if not identity:
        raise UnauthenticatedError("Authentication required")
    role = _role(identity)
    if role == "admin":
        return identity

    is_owner = owner_id is not None and str(identity["_id"]) == str(owner_id)
    if resource_type == "patient":
        allowed = role == "doctor" or (role == "patient" and is_owner)
    elif resource_type == "doctor":
        allowed = role == "doctor" and is_owner
    elif resource_type == "user":
        allowed = is_owner
    elif resource_type == "appointment":
        allowed = role == "doctor" or (role == "patient" and is_owner)
    else:
        allowed = False

    if not allowed:
        raise ForbiddenError("Access denied. You can only access your own resources.")
    return identity


def get_token(request: Request, bearer: Optional[str] = Depends(oauth2_scheme)) -> Optional[str]:
    return bearer or request.cookies.get("token")


def get_current_user(token: Optional[str] = Depends(get_token), db: Database = Depends(get_db)) -> Identity:
    if not token:
        raise UnauthenticatedError()
    payload = decode_access_token(token)
    oid = to_object_id(payload["id"])
    user = db[USERS].find_one({"_id": oid}, {field: 0 for field in SECRET_FIELDS}) if oid else None
    if not user:
        raise UnauthenticatedError("User not found. Please login again.")
    if not user.get("is_active", True):
        raise UnauthenticatedError("Your account has been deactivated. Please contact support.")
    user["_id"] = str(user["_id"])  # serialize
    bind_context(user_id=user["_id"], role=user["role"])
    return user


def require_roles(*roles: str) -> Callable[..., Identity]:
    def dependency(user: Identity = Depends(get_current_user)) -> Identity:
        return authorize(user, roles)
    return dependency


def patient_access(id: str, user: Identity = Depends(get_current_user)) -> Identity:
    return can_access_resource(user, "patient", id)


def doctor_access(id: str, user: Identity = Depends(get_current_user)) -> Identity:
    return can_access_resource(user, "doctor", id)
