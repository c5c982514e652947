from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pymongo.database import Database

import appointments
import profiles
from audit import ClientInfo, client_info
from authorization import Identity, doctor_access, get_current_user, require_roles
from database import get_db
from rate_limit import search_limiter
from responses import paginate, paginated, success
from schemas import AppointmentOut, DoctorUpdate, ScheduleUpdate, to_out, user_out

router = APIRouter(prefix="/doctors", tags=["doctors"])

doctor_only = require_roles("doctor")
admin_only = require_roles("admin")


@router.get("/dashboard")
def dashboard(user: Identity = Depends(doctor_only), db: Database = Depends(get_db)):
    data = profiles.doctor_dashboard(db, user["_id"])
    for key in ("todayAppointments", "upcomingAppointments", "patientQueue"):
        data[key] = [to_out(AppointmentOut, a) for a in data[key]]
    return success(data, "Dashboard data retrieved successfully")


@router.get("/my-patients")
def my_patients(page: int = 1, limit: int = 10, user: Identity = Depends(doctor_only),
                db: Database = Depends(get_db)):
    skip, limit, page = paginate(page, limit)
    items, total = profiles.search(db, role="patient", skip=skip, limit=limit,
                                   extra={"assigned_doctor": user["_id"]}, sort=[("first_name", 1)])
    return paginated([user_out(p) for p in items], total, page, limit, "Patients retrieved successfully")


@router.get("/my-schedule")
def my_schedule(user: Identity = Depends(doctor_only), db: Database = Depends(get_db)):
    return success(profiles.schedule(db, user["_id"]), "Schedule retrieved successfully")


@router.put("/my-schedule")
def update_my_schedule(payload: ScheduleUpdate, user: Identity = Depends(doctor_only),
                       db: Database = Depends(get_db), client: ClientInfo = Depends(client_info)):
    return success(profiles.update_schedule(db, user["_id"], payload, user, client), "Schedule updated successfully")


@router.get("/statistics")
def statistics(user: Identity = Depends(admin_only), db: Database = Depends(get_db)):
    return success(profiles.doctor_statistics(db), "Statistics retrieved")


@router.get("", dependencies=[Depends(search_limiter)])
def list_doctors(page: int = 1, limit: int = 10, search: Optional[str] = None,
                 specialization: Optional[str] = None, department: Optional[str] = None,
                 available_today: bool = Query(False, alias="availableToday"),
                 user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    skip, limit, page = paginate(page, limit)
    extra = {}
    if specialization:
        extra["specialization"] = specialization
    if department:
        extra["department"] = department
    if available_today:
        extra[f"availability.{appointments.weekday_name(date.today())}.0"] = {"$exists": True}
    items, total = profiles.search(db, role="doctor", text=search, skip=skip, limit=limit, active_only=True,
                                   extra=extra, sort=[("first_name", 1)])
    return paginated([user_out(d) for d in items], total, page, limit, "Doctors retrieved successfully")


@router.get("/{id}/available-slots")
def available_slots(id: str, on: date = Query(..., alias="date"), user: Identity = Depends(get_current_user),
                    db: Database = Depends(get_db)):
    doctor = profiles.get_by_role(db, id, "doctor")
    return success({
        "date": on.isoformat(),
        "dayName": appointments.weekday_name(on),
        "availableSlots": appointments.available_slots(db, doctor, on),
        "bookedSlots": sorted(appointments.booked_times(db, str(doctor["_id"]), on)),
    }, "Available slots retrieved")


@router.get("/{id}/schedule")
def doctor_schedule(id: str, user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    return success(profiles.schedule(db, id), "Schedule retrieved successfully")


@router.get("/{id}")
def get_doctor(id: str, user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    return success(user_out(profiles.get_by_role(db, id, "doctor")), "Doctor retrieved successfully")


@router.put("/{id}")
def update_doctor(id: str, payload: DoctorUpdate, user: Identity = Depends(doctor_access),
                  db: Database = Depends(get_db), client: ClientInfo = Depends(client_info)):
    doctor = profiles.update_doctor(db, id, payload, user, client)
    return success(user_out(doctor), "Doctor updated successfully")


@router.delete("/{id}")
def delete_doctor(id: str, user: Identity = Depends(admin_only), db: Database = Depends(get_db),
                  client: ClientInfo = Depends(client_info)):
    profiles.deactivate(db, id, "doctor", user, client)
    return success(message="Doctor deactivated successfully")
