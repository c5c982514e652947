"""Medical records and prescriptions written by doctors."""
import time
from typing import Any, Dict, List, Optional, Tuple

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

import audit
from audit import ClientInfo
from authorization import Identity, can_access_resource
from database import (APPOINTMENTS, MEDICAL_RECORDS, PRESCRIPTIONS, USERS, insert_numbered, to_object_id,
                      utcnow)
from errors import ConflictError, ForbiddenError, NotFoundError
from notifications import Notifier, dispatch_quietly
from schemas import MedicalRecordCreate, MedicalRecordUpdate, PrescriptionCreate, PrescriptionUpdate


def _number(db: Database, collection: str, prefix: str, attempt: int) -> str:
    count = db[collection].count_documents({})
    return f"{prefix}{int(time.time() * 1000)}{str(count + 1 + attempt).zfill(4)}"


def _patient(db: Database, patient_id: str) -> Dict[str, Any]:
    oid = to_object_id(patient_id)
    patient = db[USERS].find_one({"_id": oid, "role": "patient"}) if oid else None
    if not patient:
        raise NotFoundError("Patient not found")
    return patient


def _get(db: Database, collection: str, doc_id: str, label: str) -> Dict[str, Any]:
    oid = to_object_id(doc_id)
    doc = db[collection].find_one({"_id": oid}) if oid else None
    if not doc:
        raise NotFoundError(f"{label} not found")
    return doc


def _author_only(doc: Dict[str, Any], identity: Identity, label: str) -> None:
    if identity["role"] != "admin" and doc["doctor_id"] != str(identity["_id"]):
        raise ForbiddenError(f"Only the doctor who wrote this {label} can change it")


def _scope(identity: Identity, patient_id: Optional[str]) -> Dict[str, Any]:
    if identity["role"] == "patient":
        return {"patient_id": str(identity["_id"])}
    query: Dict[str, Any] = {}
    if patient_id:
        query["patient_id"] = patient_id
    elif identity["role"] == "doctor":
        query["doctor_id"] = str(identity["_id"])
    return query


# Medical records
def create_record(db: Database, identity: Identity, payload: MedicalRecordCreate,
                  client: ClientInfo = ClientInfo()) -> Dict[str, Any]:
    patient = _patient(db, payload.patient_id)
    if payload.appointment_id:
        _get(db, APPOINTMENTS, payload.appointment_id, "Appointment")
    doc = payload.model_dump()
    doc["patient_id"] = str(patient["_id"])
    doc["doctor_id"] = str(identity["_id"])
    doc["visit_date"] = (payload.visit_date or utcnow().date()).isoformat()
    insert_numbered(db, MEDICAL_RECORDS, doc, "record_number",
                    lambda attempt: _number(db, MEDICAL_RECORDS, "MR", attempt))
    audit.log_activity(db, user=str(identity["_id"]), action="create", resource_type="MedicalRecord",
                       resource_id=str(doc["_id"]),
                       description=f"Medical record created for patient {doc['patient_id']}",
                       ip_address=client.ip_address, user_agent=client.user_agent)
    return doc


def list_records(db: Database, identity: Identity, *, skip: int = 0, limit: int = 10,
                 patient_id: Optional[str] = None) -> Tuple[List[Dict[str, Any]], int]:
    if patient_id:
        can_access_resource(identity, "patient", patient_id)
    query = _scope(identity, patient_id)
    cursor = db[MEDICAL_RECORDS].find(query).sort("created_at", DESCENDING).skip(skip).limit(limit)
    return list(cursor), db[MEDICAL_RECORDS].count_documents(query)


def get_record(db: Database, record_id: str, identity: Identity,
               client: ClientInfo = ClientInfo()) -> Dict[str, Any]:
    record = _get(db, MEDICAL_RECORDS, record_id, "Medical record")
    can_access_resource(identity, "patient", record["patient_id"])
    audit.log_activity(db, user=str(identity["_id"]), action="read", resource_type="MedicalRecord",
                       resource_id=record_id, description="Medical record viewed",
                       ip_address=client.ip_address, user_agent=client.user_agent)
    return record


def update_record(db: Database, record_id: str, identity: Identity, payload: MedicalRecordUpdate,
                  client: ClientInfo = ClientInfo()) -> Dict[str, Any]:
    record = _get(db, MEDICAL_RECORDS, record_id, "Medical record")
    _author_only(record, identity, "record")
    changes = payload.model_dump(exclude_none=True)
    changes["updated_at"] = utcnow()
    updated = db[MEDICAL_RECORDS].find_one_and_update(
        {"_id": record["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER,
    )
    audit.log_activity(db, user=str(identity["_id"]), action="update", resource_type="MedicalRecord",
                       resource_id=record_id, description="Medical record updated",
                       ip_address=client.ip_address, user_agent=client.user_agent)
    return updated


# Prescriptions
def create_prescription(db: Database, notifier: Notifier, identity: Identity, payload: PrescriptionCreate,
                        client: ClientInfo = ClientInfo()) -> Dict[str, Any]:
    patient = _patient(db, payload.patient_id)
    if payload.medical_record_id:
        _get(db, MEDICAL_RECORDS, payload.medical_record_id, "Medical record")
    doc = payload.model_dump()
    doc.update({
        "patient_id": str(patient["_id"]),
        "doctor_id": str(identity["_id"]),
        "status": "active",
        "dispensed_at": None,
        "dispensed_by": None,
    })
    insert_numbered(db, PRESCRIPTIONS, doc, "prescription_number",
                    lambda attempt: _number(db, PRESCRIPTIONS, "RX", attempt))
    dispatch_quietly(notifier.send_prescription_ready, patient, doc, event="prescription-ready")
    audit.log_activity(db, user=str(identity["_id"]), action="create", resource_type="Prescription",
                       resource_id=str(doc["_id"]),
                       description=f"Prescription {doc['prescription_number']} issued",
                       ip_address=client.ip_address, user_agent=client.user_agent)
    return doc


def list_prescriptions(db: Database, identity: Identity, *, skip: int = 0, limit: int = 10,
                       patient_id: Optional[str] = None,
                       status: Optional[str] = None) -> Tuple[List[Dict[str, Any]], int]:
    if patient_id:
        can_access_resource(identity, "patient", patient_id)
    query = _scope(identity, patient_id)
    if status:
        query["status"] = status
    cursor = db[PRESCRIPTIONS].find(query).sort("created_at", DESCENDING).skip(skip).limit(limit)
    return list(cursor), db[PRESCRIPTIONS].count_documents(query)


def get_prescription(db: Database, prescription_id: str, identity: Identity) -> Dict[str, Any]:
    prescription = _get(db, PRESCRIPTIONS, prescription_id, "Prescription")
    can_access_resource(identity, "patient", prescription["patient_id"])
    return prescription


def update_prescription(db: Database, prescription_id: str, identity: Identity, payload: PrescriptionUpdate,
                        client: ClientInfo = ClientInfo()) -> Dict[str, Any]:
    prescription = _get(db, PRESCRIPTIONS, prescription_id, "Prescription")
    _author_only(prescription, identity, "prescription")
    changes = payload.model_dump(exclude_none=True)
    changes["updated_at"] = utcnow()
    updated = db[PRESCRIPTIONS].find_one_and_update(
        {"_id": prescription["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER,
    )
    audit.log_activity(db, user=str(identity["_id"]), action="update", resource_type="Prescription",
                       resource_id=prescription_id, description="Prescription updated",
                       ip_address=client.ip_address, user_agent=client.user_agent)
    return updated


def dispense(db: Database, prescription_id: str, identity: Identity,
             client: ClientInfo = ClientInfo()) -> Dict[str, Any]:
    prescription = _get(db, PRESCRIPTIONS, prescription_id, "Prescription")
    updated = db[PRESCRIPTIONS].find_one_and_update(
        {"_id": prescription["_id"], "status": "active"},
        {"$set": {"status": "completed", "dispensed_at": utcnow(), "dispensed_by": str(identity["_id"]),
                  "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise ConflictError(f"Only active prescriptions can be dispensed (status is '{prescription['status']}')")
    audit.log_activity(db, user=str(identity["_id"]), action="update", resource_type="Prescription",
                       resource_id=prescription_id, description="Prescription dispensed",
                       ip_address=client.ip_address, user_agent=client.user_agent)
    return updated
