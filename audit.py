"""
Append-only audit trail.

``log_activity`` is called from inside business operations and must never be
the reason one fails: any storage error is logged and swallowed.
"""
from datetime import timedelta
from typing import Any, Dict, List, NamedTuple, Optional

from fastapi import Request
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import AUDIT_LOGS, to_object_id, utcnow
from logging_config import get_logger
from rate_limit import client_ip

logger = get_logger(__name__)


class ClientInfo(NamedTuple):
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


def client_info(request: Request) -> ClientInfo:
    return ClientInfo(client_ip(request), request.headers.get("user-agent"))

ACTIONS = {
    "login", "logout", "register", "password-reset", "password-reset-request",
    "password-update", "email-verification", "profile-update", "create", "read",
    "update", "delete", "export", "import", "download", "upload", "approve",
    "reject", "cancel", "restore", "archive", "send-notification",
    "access-denied", "permission-change", "system-config-change",
}
RESOURCE_TYPES = {
    "User", "Patient", "Doctor", "Admin", "Appointment", "MedicalRecord",
    "Prescription", "Notification", "System", "Report", "Settings",
}
STATUSES = {"success", "failure", "pending"}
SEVERITIES = {"low", "medium", "high", "critical"}

_AUTH_ACTIONS = {"login", "logout", "register", "password-reset", "password-reset-request",
                 "password-update", "email-verification"}
_MODIFY_ACTIONS = {"create", "update", "delete", "cancel", "restore", "archive", "import",
                   "upload", "approve", "reject", "profile-update"}

MAX_DISTINCT_IPS = 3
MAX_FAILED_LOGINS = 5
MAX_ACTIONS = 1000


def _category_for(action: str, resource_type: str) -> str:
    if action in _AUTH_ACTIONS:
        return "authentication"
    if action in ("access-denied", "permission-change"):
        return "authorization"
    if action == "system-config-change":
        return "system-administration"
    if resource_type in ("MedicalRecord", "Prescription", "Appointment") and action in _MODIFY_ACTIONS:
        return "patient-care"
    if action in _MODIFY_ACTIONS:
        return "data-modification"
    return "data-access"


def _severity_for(action: str, status: str) -> str:
    if action == "access-denied":
        return "high"
    if status == "failure":
        return "medium"
    if action in ("delete", "permission-change", "system-config-change"):
        return "medium"
    return "low"


def log_activity(
    db: Database,
    *,
    action: str,
    resource_type: str,
    description: str,
    user: Optional[str] = None,
    resource_id: Optional[str] = None,
    status: str = "success",
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    severity: Optional[str] = None,
    category: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[Dict[str, Any]]:
    """Record one audit entry; returns the stored document or None on failure."""
    try:
        if action not in ACTIONS:
            raise ValueError(f"unknown audit action {action!r}")
        if resource_type not in RESOURCE_TYPES:
            raise ValueError(f"unknown audit resource type {resource_type!r}")
        if status not in STATUSES:
            raise ValueError(f"unknown audit status {status!r}")
        entry = {
            "user": str(user) if user else None,
            "action": action,
            "resource_type": resource_type,
            "resource_id": str(resource_id) if resource_id else None,
            "description": description,
            "status": status,
            "ip_address": ip_address or "unknown",
            "user_agent": user_agent,
            "severity": severity if severity in SEVERITIES else _severity_for(action, status),
            "category": category or _category_for(action, resource_type),
            "metadata": metadata,
            "is_suspicious": False,
            "is_reviewed": False,
            "created_at": utcnow(),
        }
        result = db[AUDIT_LOGS].insert_one(entry)
        entry["_id"] = result.inserted_id
        return entry
    except (PyMongoError, ValueError, TypeError) as exc:
        logger.error("audit_log_failed", action=action, resource_type=resource_type, error=str(exc))
        return None


def get_user_activity(
    db: Database,
    user_id: Optional[str] = None,
    *,
    limit: int = 50,
    skip: int = 0,
    action: Optional[str] = None,
    start_date=None,
    end_date=None,
) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {}
    if user_id:
        query["user"] = str(user_id)
    if action:
        query["action"] = action
    if start_date or end_date:
        query["created_at"] = {}
        if start_date:
            query["created_at"]["$gte"] = start_date
        if end_date:
            query["created_at"]["$lte"] = end_date
    cursor = db[AUDIT_LOGS].find(query).sort("created_at", DESCENDING).skip(skip).limit(limit)
    return list(cursor)


def count_activity(db: Database, user_id: Optional[str] = None, action: Optional[str] = None) -> int:
    query: Dict[str, Any] = {}
    if user_id:
        query["user"] = str(user_id)
    if action:
        query["action"] = action
    return db[AUDIT_LOGS].count_documents(query)


def get_resource_history(db: Database, resource_type: str, resource_id: str) -> List[Dict[str, Any]]:
    query = {"resource_type": resource_type, "resource_id": str(resource_id)}
    return list(db[AUDIT_LOGS].find(query).sort("created_at", DESCENDING))


def get_failed_logins(db: Database, hours: int = 24, ip_address: Optional[str] = None) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {
        "action": "login",
        "status": "failure",
        "created_at": {"$gte": utcnow() - timedelta(hours=hours)},
    }
    if ip_address:
        query["ip_address"] = ip_address
    return list(db[AUDIT_LOGS].find(query).sort("created_at", DESCENDING))


def get_suspicious_activities(db: Database, limit: int = 100, skip: int = 0) -> List[Dict[str, Any]]:
    cursor = db[AUDIT_LOGS].find({"is_suspicious": True}).sort("created_at", DESCENDING)
    return list(cursor.skip(skip).limit(limit))


def get_statistics(db: Database, start_date=None, end_date=None) -> Dict[str, Any]:
    match: Dict[str, Any] = {}
    if start_date or end_date:
        match["created_at"] = {}
        if start_date:
            match["created_at"]["$gte"] = start_date
        if end_date:
            match["created_at"]["$lte"] = end_date

    by_action: Dict[str, Dict[str, Any]] = {}
    for entry in db[AUDIT_LOGS].find(match, {"action": 1, "status": 1}):
        bucket = by_action.setdefault(
            entry["action"], {"action": entry["action"], "count": 0, "successCount": 0, "failureCount": 0}
        )
        bucket["count"] += 1
        if entry.get("status") == "success":
            bucket["successCount"] += 1
        elif entry.get("status") == "failure":
            bucket["failureCount"] += 1

    return {
        "totalLogs": db[AUDIT_LOGS].count_documents(match),
        "suspiciousCount": db[AUDIT_LOGS].count_documents({**match, "is_suspicious": True}),
        "unreviewedCount": db[AUDIT_LOGS].count_documents({**match, "is_reviewed": False}),
        "byAction": sorted(by_action.values(), key=lambda b: b["count"], reverse=True),
    }


def mark_as_reviewed(db: Database, log_id: str, reviewer_id: str, notes: Optional[str] = None):
    oid = to_object_id(log_id)
    if oid is None:
        return None
    return db[AUDIT_LOGS].find_one_and_update(
        {"_id": oid},
        {"$set": {"is_reviewed": True, "reviewed_by": str(reviewer_id),
                  "reviewed_at": utcnow(), "review_notes": notes}},
        return_document=ReturnDocument.AFTER,
    )


def mark_as_suspicious(db: Database, log_id: str, reason: str):
    oid = to_object_id(log_id)
    if oid is None:
        return None
    return db[AUDIT_LOGS].find_one_and_update(
        {"_id": oid},
        {"$set": {"is_suspicious": True, "suspicious_reason": reason, "severity": "critical"}},
        return_document=ReturnDocument.AFTER,
    )


def detect_anomalies(db: Database, user_id: str, window_hours: int = 24) -> List[Dict[str, str]]:
    """
    Heuristic scan of one user's recent activity.

    Flags more than three distinct source IPs, more than five failed logins,
    or more than a thousand actions inside the window. Best effort only.
    """
    since = utcnow() - timedelta(hours=window_hours)
    recent = list(db[AUDIT_LOGS].find(
        {"user": str(user_id), "created_at": {"$gte": since}},
        {"ip_address": 1, "action": 1, "status": 1},
    ))
    anomalies = []

    ips = {entry.get("ip_address") for entry in recent if entry.get("ip_address")}
    if len(ips) > MAX_DISTINCT_IPS:
        anomalies.append({
            "type": "multiple-ips",
            "message": f"User logged in from {len(ips)} different IP addresses",
            "severity": "medium",
        })

    failed = [e for e in recent if e.get("action") == "login" and e.get("status") == "failure"]
    if len(failed) > MAX_FAILED_LOGINS:
        anomalies.append({
            "type": "multiple-failed-logins",
            "message": f"{len(failed)} failed login attempts detected",
            "severity": "high",
        })

    if len(recent) > MAX_ACTIONS:
        anomalies.append({
            "type": "high-activity-volume",
            "message": f"Unusually high activity: {len(recent)} actions in {window_hours} hours",
            "severity": "medium",
        })
    return anomalies
