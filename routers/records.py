from typing import Optional

from fastapi import APIRouter, Depends, Query
from pymongo.database import Database

import records
from audit import ClientInfo, client_info
from authorization import Identity, get_current_user, require_roles
from database import get_db
from notifications import Notifier, get_notifier
from responses import created, paginate, paginated, success
from schemas import (MedicalRecordCreate, MedicalRecordOut, MedicalRecordUpdate, PrescriptionCreate,
                     PrescriptionOut, PrescriptionStatus, PrescriptionUpdate, to_out)

router = APIRouter(prefix="/records", tags=["records"])
prescriptions = APIRouter(prefix="/prescriptions", tags=["prescriptions"])

doctor_only = require_roles("doctor")


@router.post("")
def create_record(payload: MedicalRecordCreate, user: Identity = Depends(doctor_only),
                  db: Database = Depends(get_db), client: ClientInfo = Depends(client_info)):
    return created(to_out(MedicalRecordOut, records.create_record(db, user, payload, client)),
                   "Medical record created successfully")


@router.get("")
def list_records(page: int = 1, limit: int = 10, patient_id: Optional[str] = Query(None, alias="patientId"),
                 user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    skip, limit, page = paginate(page, limit)
    items, total = records.list_records(db, user, skip=skip, limit=limit, patient_id=patient_id)
    return paginated([to_out(MedicalRecordOut, r) for r in items], total, page, limit,
                     "Medical records retrieved successfully")


@router.get("/{id}")
def get_record(id: str, user: Identity = Depends(get_current_user), db: Database = Depends(get_db),
               client: ClientInfo = Depends(client_info)):
    return success(to_out(MedicalRecordOut, records.get_record(db, id, user, client)),
                   "Medical record retrieved successfully")


@router.put("/{id}")
def update_record(id: str, payload: MedicalRecordUpdate, user: Identity = Depends(require_roles("doctor", "admin")),
                  db: Database = Depends(get_db), client: ClientInfo = Depends(client_info)):
    return success(to_out(MedicalRecordOut, records.update_record(db, id, user, payload, client)),
                   "Medical record updated successfully")


@prescriptions.post("")
def create_prescription(payload: PrescriptionCreate, user: Identity = Depends(doctor_only),
                        db: Database = Depends(get_db), notifier: Notifier = Depends(get_notifier),
                        client: ClientInfo = Depends(client_info)):
    doc = records.create_prescription(db, notifier, user, payload, client)
    return created(to_out(PrescriptionOut, doc), "Prescription created successfully")


@prescriptions.get("")
def list_prescriptions(page: int = 1, limit: int = 10, status: Optional[PrescriptionStatus] = None,
                       patient_id: Optional[str] = Query(None, alias="patientId"),
                       user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    skip, limit, page = paginate(page, limit)
    items, total = records.list_prescriptions(db, user, skip=skip, limit=limit, patient_id=patient_id,
                                              status=status)
    return paginated([to_out(PrescriptionOut, p) for p in items], total, page, limit,
                     "Prescriptions retrieved successfully")


@prescriptions.get("/{id}")
def get_prescription(id: str, user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    return success(to_out(PrescriptionOut, records.get_prescription(db, id, user)),
                   "Prescription retrieved successfully")


@prescriptions.put("/{id}")
def update_prescription(id: str, payload: PrescriptionUpdate, user: Identity = Depends(doctor_only),
                        db: Database = Depends(get_db), client: ClientInfo = Depends(client_info)):
    return success(to_out(PrescriptionOut, records.update_prescription(db, id, user, payload, client)),
                   "Prescription updated successfully")


@prescriptions.put("/{id}/dispense")
def dispense(id: str, user: Identity = Depends(require_roles("admin")), db: Database = Depends(get_db),
             client: ClientInfo = Depends(client_info)):
    return success(to_out(PrescriptionOut, records.dispense(db, id, user, client)),
                   "Prescription dispensed successfully")
