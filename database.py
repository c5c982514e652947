"""
MongoDB access for the hospital API.

Each Pydantic schema in ``schemas`` maps to a collection. Routes receive the
database through the ``get_db`` dependency so tests can swap in an in-memory
client.
"""
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from logging_config import get_logger

logger = get_logger(__name__)

USERS = "users"
APPOINTMENTS = "appointments"
MEDICAL_RECORDS = "medical_records"
PRESCRIPTIONS = "prescriptions"
NOTIFICATIONS = "notifications"
AUDIT_LOGS = "audit_logs"
ANALYTICS_CACHE = "analytics_cache"

AUDIT_RETENTION_SECONDS = 365 * 24 * 60 * 60

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db: Optional[Database] = None
if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL, tz_aware=False)
    db = _client[DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise RuntimeError("Database not configured")
    return db


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what pymongo hands back on reads."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def next_sequence(database: Database, collection_name: str, field: str, prefix: str, width: int,
                  offset: int = 0) -> str:
    """Count numbers already issued under ``prefix`` and return the next one."""
    count = database[collection_name].count_documents({field: {"$regex": f"^{prefix}"}})
    return f"{prefix}{str(count + 1 + offset).zfill(width)}"


def duplicate_key_field(exc: DuplicateKeyError) -> Optional[str]:
    details = exc.details or {}
    pattern = details.get("keyPattern") or {}
    if pattern:
        return next(iter(pattern))
    message = str(exc)
    for candidate in ("registration_number", "employee_id", "appointment_number",
                      "record_number", "prescription_number", "license_number",
                      "slot_key", "email"):
        if candidate in message:
            return candidate
    return None


def insert_numbered(
    database: Database,
    collection_name: str,
    doc: Dict[str, Any],
    field: str,
    make_number: Callable[[int], str],
    attempts: int = 5,
) -> Dict[str, Any]:
    """
    Insert ``doc`` with a generated human-readable number in ``field``.

    The number comes from a count, so two concurrent inserts can compute the
    same value; the unique index rejects the loser and it retries with the
    next number. Duplicates on any other field propagate.
    """
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    for attempt in range(attempts):
        doc[field] = make_number(attempt)
        doc.pop("_id", None)
        try:
            result = database[collection_name].insert_one(doc)
        except DuplicateKeyError as exc:
            if duplicate_key_field(exc) != field:
                raise
            logger.info("sequence_collision", collection=collection_name, number=doc[field])
            continue
        doc["_id"] = result.inserted_id
        return doc
    raise RuntimeError(f"Could not allocate a unique {field} after {attempts} attempts")


def ensure_indexes(database: Database) -> None:
    users = database[USERS]
    users.create_index([("email", ASCENDING)], unique=True)
    users.create_index([("role", ASCENDING)])
    users.create_index([("created_at", DESCENDING)])
    users.create_index([("license_number", ASCENDING)], unique=True, sparse=True)
    users.create_index([("registration_number", ASCENDING)], unique=True, sparse=True)
    users.create_index([("employee_id", ASCENDING)], unique=True, sparse=True)

    appointments = database[APPOINTMENTS]
    appointments.create_index([("appointment_number", ASCENDING)], unique=True)
    appointments.create_index([("slot_key", ASCENDING)], unique=True, sparse=True)
    appointments.create_index([("doctor_id", ASCENDING), ("appointment_date", ASCENDING)])
    appointments.create_index([("patient_id", ASCENDING), ("appointment_date", DESCENDING)])

    database[MEDICAL_RECORDS].create_index([("record_number", ASCENDING)], unique=True)
    database[PRESCRIPTIONS].create_index([("prescription_number", ASCENDING)], unique=True)
    database[NOTIFICATIONS].create_index([("recipient_id", ASCENDING), ("created_at", DESCENDING)])

    audit = database[AUDIT_LOGS]
    audit.create_index([("user", ASCENDING), ("created_at", DESCENDING)])
    audit.create_index([("action", ASCENDING), ("created_at", DESCENDING)])
    audit.create_index([("resource_type", ASCENDING), ("resource_id", ASCENDING)])
    audit.create_index([("is_suspicious", ASCENDING)])
    audit.create_index([("created_at", ASCENDING)], expireAfterSeconds=AUDIT_RETENTION_SECONDS)

    cache = database[ANALYTICS_CACHE]
    cache.create_index([("key", ASCENDING)], unique=True)
    cache.create_index([("expires_at", ASCENDING)], expireAfterSeconds=0)
    logger.info("indexes_ensured")
