"""
Patient, doctor and admin directory operations.

Users of every role live in one collection; these helpers always filter on
``role`` so a patient id can never be used to reach a doctor document.
"""
import re
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database

import audit
from audit import ClientInfo
from authorization import SECRET_FIELDS, Identity
from database import APPOINTMENTS, MEDICAL_RECORDS, PRESCRIPTIONS, USERS, to_object_id, utcnow
from errors import NotFoundError
from schemas import DoctorUpdate, PatientUpdate, ScheduleUpdate

PUBLIC = {field: 0 for field in SECRET_FIELDS}


def _stored(changes: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v.isoformat() if isinstance(v, date) else v for k, v in changes.items()}


def get_by_role(db: Database, user_id: str, role: str) -> Dict[str, Any]:
    oid = to_object_id(user_id)
    user = db[USERS].find_one({"_id": oid, "role": role}, PUBLIC) if oid else None
    if not user:
        raise NotFoundError(f"{role.capitalize()} not found")
    return user


def search(db: Database, *, role: Optional[str] = None, text: Optional[str] = None,
           skip: int = 0, limit: int = 10, active_only: bool = False,
           extra: Optional[Dict[str, Any]] = None,
           sort=None) -> Tuple[List[Dict[str, Any]], int]:
    query: Dict[str, Any] = dict(extra or {})
    if role:
        query["role"] = role
    if active_only:
        query["is_active"] = True
    if text:
        pattern = {"$regex": re.escape(text), "$options": "i"}
        fields = ["first_name", "last_name", "email", "registration_number", "employee_id", "specialization"]
        query["$or"] = [{field: pattern} for field in fields]
    cursor = db[USERS].find(query, PUBLIC).sort(sort or [("created_at", DESCENDING)]).skip(skip).limit(limit)
    return list(cursor), db[USERS].count_documents(query)


def _update_user(db: Database, user: Dict[str, Any], changes: Dict[str, Any], identity: Identity,
                 resource_type: str, client: ClientInfo) -> Dict[str, Any]:
    changes = _stored(changes)
    changes["updated_at"] = utcnow()
    updated = db[USERS].find_one_and_update(
        {"_id": user["_id"]}, {"$set": changes}, projection=PUBLIC, return_document=ReturnDocument.AFTER,
    )
    audit.log_activity(db, user=str(identity["_id"]), action="update", resource_type=resource_type,
                       resource_id=str(user["_id"]), description=f"{resource_type} profile updated",
                       ip_address=client.ip_address, user_agent=client.user_agent)
    return updated


def deactivate(db: Database, user_id: str, role: str, identity: Identity,
               client: ClientInfo = ClientInfo()) -> None:
    """Soft delete: the account stays for history but can no longer sign in."""
    user = get_by_role(db, user_id, role)
    db[USERS].update_one({"_id": user["_id"]}, {"$set": {"is_active": False, "updated_at": utcnow()}})
    audit.log_activity(db, user=str(identity["_id"]), action="delete", resource_type=role.capitalize(),
                       resource_id=user_id, description=f"{role.capitalize()} account deactivated",
                       ip_address=client.ip_address, user_agent=client.user_agent)


def toggle_status(db: Database, user_id: str, identity: Identity,
                  client: ClientInfo = ClientInfo()) -> Dict[str, Any]:
    oid = to_object_id(user_id)
    user = db[USERS].find_one({"_id": oid}, PUBLIC) if oid else None
    if not user:
        raise NotFoundError("User not found")
    active = not user.get("is_active", True)
    updated = db[USERS].find_one_and_update(
        {"_id": user["_id"]}, {"$set": {"is_active": active, "updated_at": utcnow()}},
        projection=PUBLIC, return_document=ReturnDocument.AFTER,
    )
    audit.log_activity(db, user=str(identity["_id"]), action="update", resource_type="User",
                       resource_id=user_id, description=f"User {'activated' if active else 'deactivated'}",
                       ip_address=client.ip_address, user_agent=client.user_agent)
    return updated


# Patients
def update_patient(db: Database, patient_id: str, payload: PatientUpdate, identity: Identity,
                   client: ClientInfo = ClientInfo()) -> Dict[str, Any]:
    patient = get_by_role(db, patient_id, "patient")
    return _update_user(db, patient, payload.model_dump(exclude_none=True), identity, "Patient", client)


def assign_doctor(db: Database, patient_id: str, doctor_id: str, identity: Identity,
                  client: ClientInfo = ClientInfo()) -> Dict[str, Any]:
    patient = get_by_role(db, patient_id, "patient")
    doctor = get_by_role(db, doctor_id, "doctor")
    return _update_user(db, patient, {"assigned_doctor": str(doctor["_id"])}, identity, "Patient", client)


def patient_dashboard(db: Database, patient_id: str) -> Dict[str, Any]:
    patient = get_by_role(db, patient_id, "patient")
    upcoming = db[APPOINTMENTS].find({
        "patient_id": patient_id,
        "appointment_date": {"$gte": date.today().isoformat()},
        "status": {"$in": ["scheduled", "confirmed"]},
    }).sort([("appointment_date", ASCENDING), ("appointment_time", ASCENDING)]).limit(5)
    prescriptions = db[PRESCRIPTIONS].find({"patient_id": patient_id}).sort("created_at", DESCENDING).limit(5)
    return {
        "patient": patient,
        "upcomingAppointments": list(upcoming),
        "prescriptions": list(prescriptions),
        "stats": {
            "totalAppointments": db[APPOINTMENTS].count_documents({"patient_id": patient_id}),
            "completedAppointments": db[APPOINTMENTS].count_documents(
                {"patient_id": patient_id, "status": "completed"}),
            "totalPrescriptions": db[PRESCRIPTIONS].count_documents({"patient_id": patient_id}),
            "totalRecords": db[MEDICAL_RECORDS].count_documents({"patient_id": patient_id}),
        },
    }


def patient_statistics(db: Database) -> Dict[str, int]:
    total = db[USERS].count_documents({"role": "patient"})
    active = db[USERS].count_documents({"role": "patient", "is_active": True})
    return {
        "totalPatients": total,
        "activePatients": active,
        "inactivePatients": total - active,
        "newPatients": db[USERS].count_documents({
            "role": "patient", "created_at": {"$gte": utcnow() - timedelta(days=30)},
        }),
    }


# Doctors
def update_doctor(db: Database, doctor_id: str, payload: DoctorUpdate, identity: Identity,
                  client: ClientInfo = ClientInfo()) -> Dict[str, Any]:
    doctor = get_by_role(db, doctor_id, "doctor")
    return _update_user(db, doctor, payload.model_dump(exclude_none=True), identity, "Doctor", client)


def schedule(db: Database, doctor_id: str) -> Dict[str, Any]:
    doctor = get_by_role(db, doctor_id, "doctor")
    return {
        "id": str(doctor["_id"]),
        "availability": doctor.get("availability") or {},
        "slotDuration": doctor.get("slot_duration") or 30,
    }


def update_schedule(db: Database, doctor_id: str, payload: ScheduleUpdate, identity: Identity,
                    client: ClientInfo = ClientInfo()) -> Dict[str, Any]:
    doctor = get_by_role(db, doctor_id, "doctor")
    availability = {day: [w.model_dump() for w in windows] for day, windows in payload.availability.items()}
    _update_user(db, doctor, {"availability": availability, "slot_duration": payload.slot_duration},
                 identity, "Doctor", client)
    return schedule(db, doctor_id)


def doctor_dashboard(db: Database, doctor_id: str) -> Dict[str, Any]:
    today = date.today()
    today_str = today.isoformat()
    todays = list(db[APPOINTMENTS].find({"doctor_id": doctor_id, "appointment_date": today_str})
                  .sort("appointment_time", ASCENDING))
    upcoming = db[APPOINTMENTS].find({
        "doctor_id": doctor_id,
        "appointment_date": {"$gt": today_str, "$lte": (today + timedelta(days=7)).isoformat()},
        "status": {"$in": ["scheduled", "confirmed"]},
    }).sort([("appointment_date", ASCENDING), ("appointment_time", ASCENDING)]).limit(10)
    queue = db[APPOINTMENTS].find({"doctor_id": doctor_id, "status": "checked-in"}).sort("check_in_time", ASCENDING)
    return {
        "todayAppointments": todays,
        "upcomingAppointments": list(upcoming),
        "patientQueue": list(queue),
        "statistics": {
            "totalPatients": db[USERS].count_documents({"role": "patient", "assigned_doctor": doctor_id}),
            "totalAppointments": db[APPOINTMENTS].count_documents({"doctor_id": doctor_id}),
            "todayTotal": len(todays),
            "completedToday": sum(1 for a in todays if a["status"] == "completed"),
            "pending": sum(1 for a in todays if a["status"] in ("scheduled", "confirmed")),
        },
    }


def doctor_statistics(db: Database) -> Dict[str, Any]:
    by_specialization = list(db[USERS].aggregate([
        {"$match": {"role": "doctor"}},
        {"$group": {"_id": "$specialization", "count": {"$sum": 1}}},
        {"$sort": {"count": -1}},
    ]))
    return {
        "stats": by_specialization,
        "totalDoctors": db[USERS].count_documents({"role": "doctor", "is_active": True}),
    }


# Admin
def system_statistics(db: Database) -> Dict[str, int]:
    return {
        "totalUsers": db[USERS].count_documents({"is_active": True}),
        "totalPatients": db[USERS].count_documents({"role": "patient", "is_active": True}),
        "totalDoctors": db[USERS].count_documents({"role": "doctor", "is_active": True}),
        "totalAdmins": db[USERS].count_documents({"role": "admin", "is_active": True}),
        "totalAppointments": db[APPOINTMENTS].count_documents({}),
        "totalMedicalRecords": db[MEDICAL_RECORDS].count_documents({}),
        "totalPrescriptions": db[PRESCRIPTIONS].count_documents({}),
    }
