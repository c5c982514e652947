"""
Appointment lifecycle: slot availability, booking and guarded status
transitions.

    scheduled -> confirmed -> checked-in -> in-progress -> completed

``cancelled`` and ``no-show`` are reachable from any non-terminal state. Each
transition is applied with a filter on the status that was read, so two
concurrent transitions cannot both win.
"""
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import audit
from audit import ClientInfo
from authorization import Identity, can_access_resource
from database import APPOINTMENTS, USERS, insert_numbered, next_sequence, to_object_id, utcnow
from errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from logging_config import get_logger
from notifications import Notifier, dispatch_quietly
from schemas import AppointmentCreate, AppointmentUpdate

logger = get_logger(__name__)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
DEFAULT_SLOT_MINUTES = 30

TERMINAL = frozenset({"completed", "cancelled", "no-show"})
ACTIVE = frozenset({"scheduled", "confirmed", "checked-in", "in-progress"})
# action -> (states it may be applied from, resulting state)
TRANSITIONS: Dict[str, Tuple[frozenset, str]] = {
    "confirm": (frozenset({"scheduled"}), "confirmed"),
    "check-in": (frozenset({"scheduled", "confirmed"}), "checked-in"),
    "start-consultation": (frozenset({"checked-in"}), "in-progress"),
    "complete": (frozenset({"in-progress"}), "completed"),
    "cancel": (ACTIVE, "cancelled"),
    "no-show": (ACTIVE, "no-show"),
}
RELEASES_SLOT = {"cancel", "no-show"}
RESCHEDULABLE = frozenset({"scheduled", "confirmed"})


# Slots
def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def _hhmm(total: int) -> str:
    return f"{total // 60:02d}:{total % 60:02d}"


def generate_time_slots(start: str, end: str, duration: int = DEFAULT_SLOT_MINUTES) -> List[str]:
    """Slot start times from ``start``; a slot is kept only if it ends by ``end``."""
    if duration <= 0:
        raise ValueError("slot duration must be positive")
    slots = []
    current, stop = _minutes(start), _minutes(end)
    while current + duration <= stop:
        slots.append(_hhmm(current))
        current += duration
    return slots


def weekday_name(day: date) -> str:
    return WEEKDAYS[day.weekday()]


def all_slots(doctor: Dict[str, Any], weekday: str) -> List[str]:
    duration = doctor.get("slot_duration") or DEFAULT_SLOT_MINUTES
    slots = set()
    for window in (doctor.get("availability") or {}).get(weekday, []):
        slots.update(generate_time_slots(window["start"], window["end"], duration))
    return sorted(slots)


def booked_times(db: Database, doctor_id: str, day: date, exclude_id=None) -> List[str]:
    query: Dict[str, Any] = {
        "doctor_id": str(doctor_id),
        "appointment_date": day.isoformat(),
        "status": {"$nin": ["cancelled", "no-show"]},
    }
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    return [a["appointment_time"] for a in db[APPOINTMENTS].find(query, {"appointment_time": 1})]


def available_slots(db: Database, doctor: Dict[str, Any], day: date, exclude_id=None) -> List[str]:
    """Bookable times for ``doctor`` on ``day``, earliest first. Never cached."""
    taken = set(booked_times(db, str(doctor["_id"]), day, exclude_id))
    return [slot for slot in all_slots(doctor, weekday_name(day)) if slot not in taken]


def slot_key(doctor_id: str, day: str, time: str) -> str:
    return f"{doctor_id}|{day}|{time}"


# Lookups
def _find_user(db: Database, user_id: Optional[str], role: str) -> Dict[str, Any]:
    oid = to_object_id(user_id)
    user = db[USERS].find_one({"_id": oid, "role": role}) if oid else None
    if not user:
        raise NotFoundError(f"{role.capitalize()} not found")
    if not user.get("is_active", True):
        raise ValidationError(f"{role.capitalize()} account is not active")
    return user


def get_appointment(db: Database, appointment_id: str) -> Dict[str, Any]:
    oid = to_object_id(appointment_id)
    appointment = db[APPOINTMENTS].find_one({"_id": oid}) if oid else None
    if not appointment:
        raise NotFoundError("Appointment not found")
    return appointment


def get_for(db: Database, appointment_id: str, identity: Identity) -> Dict[str, Any]:
    appointment = get_appointment(db, appointment_id)
    can_access_resource(identity, "appointment", appointment["patient_id"])
    return appointment


def _check_slot(db: Database, doctor: Dict[str, Any], day: date, time: str, exclude_id=None) -> None:
    if day < date.today():
        raise ValidationError("Appointment date cannot be in the past")
    if time not in all_slots(doctor, weekday_name(day)):
        raise ValidationError(f"Dr. {doctor['last_name']} is not available on {weekday_name(day)} at {time}")
    if time not in available_slots(db, doctor, day, exclude_id):
        raise ConflictError("The selected time slot is already booked")


# Booking
def book(db: Database, notifier: Notifier, identity: Identity, payload: AppointmentCreate,
         client: ClientInfo = ClientInfo()) -> Dict[str, Any]:
    if identity["role"] == "patient":
        if payload.patient_id and payload.patient_id != str(identity["_id"]):
            raise ForbiddenError("Patients can only book appointments for themselves")
        patient_id = str(identity["_id"])
    else:
        if not payload.patient_id:
            raise ValidationError("Validation error", errors=[{"field": "patientId", "message": "Patient is required"}])
        patient_id = payload.patient_id

    patient = _find_user(db, patient_id, "patient")
    doctor = _find_user(db, payload.doctor_id, "doctor")
    day = payload.appointment_date
    _check_slot(db, doctor, day, payload.appointment_time)

    doctor_id = str(doctor["_id"])
    doc: Dict[str, Any] = {
        "patient_id": str(patient["_id"]),
        "doctor_id": doctor_id,
        "appointment_date": day.isoformat(),
        "appointment_time": payload.appointment_time,
        "type": payload.type,
        "status": "scheduled",
        "reason": payload.reason,
        "symptoms": payload.symptoms,
        "notes": payload.notes,
        "consultation_fee": doctor.get("consultation_fee", 0),
        "is_paid": False,
        "payment_method": None,
        "slot_key": slot_key(doctor_id, day.isoformat(), payload.appointment_time),
        "created_by": str(identity["_id"]),
    }
    prefix = f"APT{utcnow().year}"
    try:
        insert_numbered(db, APPOINTMENTS, doc, "appointment_number",
                        lambda attempt: next_sequence(db, APPOINTMENTS, "appointment_number", prefix, 5,
                                                      offset=attempt))
    except DuplicateKeyError:
        # insert_numbered retries number collisions, so what reaches here is the slot index
        raise ConflictError("The selected time slot is already booked")

    appointment_id = str(doc["_id"])
    logger.info("appointment_booked", appointment_id=appointment_id, doctor_id=doctor_id)
    dispatch_quietly(notifier.send_appointment_confirmation, patient, doctor, doc, event="appointment-confirmation")
    audit.log_activity(db, user=str(identity["_id"]), action="create", resource_type="Appointment",
                       resource_id=appointment_id,
                       description=f"Appointment {doc['appointment_number']} booked",
                       ip_address=client.ip_address, user_agent=client.user_agent)
    return doc


# Transitions
def transition(db: Database, appointment_id: str, action: str, identity: Identity,
               changes: Optional[Dict[str, Any]] = None,
               client: ClientInfo = ClientInfo()) -> Dict[str, Any]:
    """Apply ``action``; Conflict when the current state does not allow it."""
    allowed_from, target = TRANSITIONS[action]
    appointment = get_for(db, appointment_id, identity)
    current = appointment["status"]
    if current not in allowed_from:
        raise ConflictError(f"Cannot {action} appointment: current status is '{current}', "
                            f"requested '{target}'")

    now = utcnow()
    update: Dict[str, Any] = {"$set": {"status": target, "updated_at": now, **(changes or {})}}
    if action == "check-in":
        update["$set"]["check_in_time"] = now
    elif action == "start-consultation":
        update["$set"]["consultation_start_time"] = now
    elif action == "complete":
        update["$set"]["consultation_end_time"] = now
    if action in RELEASES_SLOT:
        update["$unset"] = {"slot_key": ""}

    updated = db[APPOINTMENTS].find_one_and_update(
        {"_id": appointment["_id"], "status": current}, update, return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        latest = get_appointment(db, appointment_id)
        raise ConflictError(f"Cannot {action} appointment: current status is '{latest['status']}', "
                            f"requested '{target}'")

    audit.log_activity(db, user=str(identity["_id"]), action="cancel" if action == "cancel" else "update",
                       resource_type="Appointment", resource_id=str(updated["_id"]),
                       description=f"Appointment {updated['appointment_number']}: {current} -> {target}",
                       ip_address=client.ip_address, user_agent=client.user_agent)
    return updated


def _require_own_doctor(appointment: Dict[str, Any], identity: Identity) -> None:
    if identity["role"] == "doctor" and appointment["doctor_id"] != str(identity["_id"]):
        raise ForbiddenError("Only the assigned doctor can manage this consultation")


def confirm(db, appointment_id, identity, client=ClientInfo()):
    return transition(db, appointment_id, "confirm", identity, client=client)


def check_in(db, appointment_id, identity, client=ClientInfo()):
    return transition(db, appointment_id, "check-in", identity, client=client)


def start_consultation(db, appointment_id, identity, client=ClientInfo()):
    _require_own_doctor(get_appointment(db, appointment_id), identity)
    return transition(db, appointment_id, "start-consultation", identity, client=client)


def complete(db, appointment_id, identity, notes=None, is_paid=None, payment_method=None, client=ClientInfo()):
    _require_own_doctor(get_appointment(db, appointment_id), identity)
    changes: Dict[str, Any] = {}
    if notes is not None:
        changes["notes"] = notes
    if is_paid is not None:
        changes["is_paid"] = is_paid
    if payment_method is not None:
        changes["payment_method"] = payment_method
    return transition(db, appointment_id, "complete", identity, changes, client=client)


def cancel(db: Database, notifier: Notifier, appointment_id: str, identity: Identity,
           reason: Optional[str] = None, client: ClientInfo = ClientInfo()) -> Dict[str, Any]:
    changes = {"cancellation_reason": reason, "cancelled_by": str(identity["_id"])}
    updated = transition(db, appointment_id, "cancel", identity, changes, client=client)
    patient = db[USERS].find_one({"_id": to_object_id(updated["patient_id"])})
    if patient:
        dispatch_quietly(notifier.send_appointment_cancellation, patient, updated,
                         event="appointment-cancellation")
    return updated


def mark_no_show(db, appointment_id, identity, client=ClientInfo()):
    return transition(db, appointment_id, "no-show", identity, client=client)


def update(db: Database, appointment_id: str, identity: Identity, payload: AppointmentUpdate,
           client: ClientInfo = ClientInfo()) -> Dict[str, Any]:
    """Edit details or reschedule; a new date or time must be an open slot."""
    appointment = get_for(db, appointment_id, identity)
    current = appointment["status"]
    if current in TERMINAL:
        raise ConflictError(f"Cannot update appointment: current status is '{current}'")

    changes = payload.model_dump(exclude_none=True)
    changes.pop("appointment_date", None)
    new_day = payload.appointment_date or date.fromisoformat(appointment["appointment_date"])
    new_time = payload.appointment_time or appointment["appointment_time"]
    rescheduled = (new_day.isoformat(), new_time) != (appointment["appointment_date"],
                                                       appointment["appointment_time"])
    if rescheduled and current not in RESCHEDULABLE:
        raise ConflictError(f"Cannot reschedule appointment: current status is '{current}'")
    if rescheduled:
        doctor = _find_user(db, appointment["doctor_id"], "doctor")
        _check_slot(db, doctor, new_day, new_time, exclude_id=appointment["_id"])
        changes.update({
            "appointment_date": new_day.isoformat(),
            "appointment_time": new_time,
            "slot_key": slot_key(appointment["doctor_id"], new_day.isoformat(), new_time),
        })
    changes["updated_at"] = utcnow()

    try:
        updated = db[APPOINTMENTS].find_one_and_update(
            {"_id": appointment["_id"], "status": current}, {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise ConflictError("The selected time slot is already booked")
    if updated is None:
        raise ConflictError("Appointment changed while updating; please retry")

    audit.log_activity(db, user=str(identity["_id"]), action="update", resource_type="Appointment",
                       resource_id=str(updated["_id"]),
                       description="Appointment rescheduled" if rescheduled else "Appointment updated",
                       ip_address=client.ip_address, user_agent=client.user_agent)
    return updated


# Views
def _scope(identity: Identity) -> Dict[str, Any]:
    if identity["role"] == "patient":
        return {"patient_id": str(identity["_id"])}
    if identity["role"] == "doctor":
        return {"doctor_id": str(identity["_id"])}
    return {}


def list_for(db: Database, identity: Identity, *, skip: int = 0, limit: int = 10,
             status: Optional[str] = None, on: Optional[date] = None,
             doctor_id: Optional[str] = None, patient_id: Optional[str] = None):
    query = _scope(identity)
    if identity["role"] == "admin":
        if doctor_id:
            query["doctor_id"] = doctor_id
        if patient_id:
            query["patient_id"] = patient_id
    if status:
        query["status"] = status
    if on:
        query["appointment_date"] = on.isoformat()
    cursor = db[APPOINTMENTS].find(query).sort(
        [("appointment_date", DESCENDING), ("appointment_time", DESCENDING)]
    ).skip(skip).limit(limit)
    return list(cursor), db[APPOINTMENTS].count_documents(query)


def today(db: Database, identity: Identity) -> List[Dict[str, Any]]:
    query = {**_scope(identity), "appointment_date": date.today().isoformat()}
    return list(db[APPOINTMENTS].find(query).sort("appointment_time", ASCENDING))


def upcoming(db: Database, identity: Identity, days: int = 7, limit: int = 10) -> List[Dict[str, Any]]:
    start = date.today()
    query = {
        **_scope(identity),
        "appointment_date": {"$gte": start.isoformat(), "$lte": (start + timedelta(days=days)).isoformat()},
        "status": {"$in": ["scheduled", "confirmed"]},
    }
    cursor = db[APPOINTMENTS].find(query).sort([("appointment_date", ASCENDING), ("appointment_time", ASCENDING)])
    return list(cursor.limit(limit))


def stats(db: Database, identity: Identity) -> Dict[str, Any]:
    scope = _scope(identity)
    by_status = {status: 0 for status in sorted(ACTIVE | TERMINAL)}
    for row in db[APPOINTMENTS].aggregate([
        {"$match": scope},
        {"$group": {"_id": "$status", "count": {"$sum": 1}}},
    ]):
        by_status[row["_id"]] = row["count"]
    today_str = date.today().isoformat()
    return {
        "total": sum(by_status.values()),
        "byStatus": by_status,
        "today": db[APPOINTMENTS].count_documents({**scope, "appointment_date": today_str}),
        "upcoming": db[APPOINTMENTS].count_documents({
            **scope, "appointment_date": {"$gte": today_str}, "status": {"$in": ["scheduled", "confirmed"]},
        }),
    }
