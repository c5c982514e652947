from typing import Optional

from fastapi import APIRouter, Depends
from pymongo.database import Database

import profiles
import records
from audit import ClientInfo, client_info
from authorization import Identity, patient_access, require_roles
from database import get_db
from rate_limit import search_limiter
from responses import paginate, paginated, success
from schemas import (AppointmentOut, AssignDoctorRequest, MedicalRecordOut, PatientUpdate, PrescriptionOut, to_out,
                     user_out)

router = APIRouter(prefix="/patients", tags=["patients"])

patient_only = require_roles("patient")
admin_only = require_roles("admin")


# Signed-in patient
@router.get("/profile")
def profile(user: Identity = Depends(patient_only), db: Database = Depends(get_db)):
    return success(user_out(profiles.get_by_role(db, user["_id"], "patient")), "Profile retrieved successfully")


@router.get("/medical-records")
def my_medical_records(page: int = 1, limit: int = 10, user: Identity = Depends(patient_only),
                       db: Database = Depends(get_db)):
    skip, limit, page = paginate(page, limit)
    items, total = records.list_records(db, user, skip=skip, limit=limit)
    return paginated([to_out(MedicalRecordOut, r) for r in items], total, page, limit,
                     "Medical history retrieved successfully")


@router.get("/prescriptions")
def my_prescriptions(page: int = 1, limit: int = 10, user: Identity = Depends(patient_only),
                     db: Database = Depends(get_db)):
    skip, limit, page = paginate(page, limit)
    items, total = records.list_prescriptions(db, user, skip=skip, limit=limit)
    return paginated([to_out(PrescriptionOut, p) for p in items], total, page, limit,
                     "Prescriptions retrieved successfully")


@router.get("/dashboard")
def dashboard(user: Identity = Depends(patient_only), db: Database = Depends(get_db)):
    data = profiles.patient_dashboard(db, user["_id"])
    data["patient"] = user_out(data["patient"])
    data["upcomingAppointments"] = [to_out(AppointmentOut, a) for a in data["upcomingAppointments"]]
    data["prescriptions"] = [to_out(PrescriptionOut, p) for p in data["prescriptions"]]
    return success(data, "Dashboard data retrieved successfully")


@router.get("/statistics")
def statistics(user: Identity = Depends(admin_only), db: Database = Depends(get_db)):
    return success(profiles.patient_statistics(db), "Statistics retrieved successfully")


# Staff views
@router.get("", dependencies=[Depends(search_limiter)])
def list_patients(page: int = 1, limit: int = 10, search: Optional[str] = None,
                  user: Identity = Depends(require_roles("doctor", "admin")), db: Database = Depends(get_db)):
    skip, limit, page = paginate(page, limit)
    items, total = profiles.search(db, role="patient", text=search, skip=skip, limit=limit)
    return paginated([user_out(p) for p in items], total, page, limit, "Patients retrieved successfully")


@router.get("/{id}")
def get_patient(id: str, user: Identity = Depends(patient_access), db: Database = Depends(get_db)):
    return success(user_out(profiles.get_by_role(db, id, "patient")), "Patient retrieved successfully")


@router.put("/{id}")
def update_patient(id: str, payload: PatientUpdate, user: Identity = Depends(patient_access),
                   db: Database = Depends(get_db), client: ClientInfo = Depends(client_info)):
    return success(user_out(profiles.update_patient(db, id, payload, user, client)), "Patient updated successfully")


@router.delete("/{id}")
def delete_patient(id: str, user: Identity = Depends(admin_only), db: Database = Depends(get_db),
                   client: ClientInfo = Depends(client_info)):
    profiles.deactivate(db, id, "patient", user, client)
    return success(message="Patient deactivated successfully")


@router.get("/{id}/medical-history")
def medical_history(id: str, page: int = 1, limit: int = 10, user: Identity = Depends(patient_access),
                    db: Database = Depends(get_db)):
    skip, limit, page = paginate(page, limit)
    items, total = records.list_records(db, user, skip=skip, limit=limit, patient_id=id)
    return paginated([to_out(MedicalRecordOut, r) for r in items], total, page, limit,
                     "Medical history retrieved successfully")


@router.get("/{id}/prescriptions")
def patient_prescriptions(id: str, page: int = 1, limit: int = 10, user: Identity = Depends(patient_access),
                          db: Database = Depends(get_db)):
    skip, limit, page = paginate(page, limit)
    items, total = records.list_prescriptions(db, user, skip=skip, limit=limit, patient_id=id)
    return paginated([to_out(PrescriptionOut, p) for p in items], total, page, limit,
                     "Prescriptions retrieved successfully")


@router.put("/{id}/assign-doctor")
def assign_doctor(id: str, payload: AssignDoctorRequest, user: Identity = Depends(admin_only),
                  db: Database = Depends(get_db), client: ClientInfo = Depends(client_info)):
    patient = profiles.assign_doctor(db, id, payload.doctor_id, user, client)
    return success(user_out(patient), "Doctor assigned successfully")
