from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pymongo.database import Database

import appointments
from audit import ClientInfo, client_info
from authorization import Identity, get_current_user, require_roles
from database import get_db
from notifications import Notifier, get_notifier
from rate_limit import appointment_limiter
from responses import created, paginate, paginated, success
from schemas import (AppointmentCreate, AppointmentOut, AppointmentStatus, AppointmentUpdate, CancelRequest,
                     CompleteRequest, to_out)

router = APIRouter(prefix="/appointments", tags=["appointments"])

staff = require_roles("doctor", "admin")


def _out(docs):
    return [to_out(AppointmentOut, d) for d in docs]


@router.get("/stats")
def stats(user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    return success(appointments.stats(db, user), "Appointment statistics retrieved")


@router.get("/today")
def today(user: Identity = Depends(staff), db: Database = Depends(get_db)):
    return success(_out(appointments.today(db, user)), "Today's appointments retrieved")


@router.get("/upcoming")
def upcoming(days: int = 7, limit: int = 10, user: Identity = Depends(get_current_user),
             db: Database = Depends(get_db)):
    return success(_out(appointments.upcoming(db, user, days=days, limit=min(max(limit, 1), 100))),
                   "Upcoming appointments retrieved")


@router.get("")
def list_appointments(page: int = 1, limit: int = 10, status: Optional[AppointmentStatus] = None,
                      on: Optional[date] = Query(None, alias="date"),
                      doctor_id: Optional[str] = Query(None, alias="doctorId"),
                      patient_id: Optional[str] = Query(None, alias="patientId"),
                      user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    skip, limit, page = paginate(page, limit)
    items, total = appointments.list_for(db, user, skip=skip, limit=limit, status=status, on=on,
                                         doctor_id=doctor_id, patient_id=patient_id)
    return paginated(_out(items), total, page, limit, "Appointments retrieved")


@router.post("", dependencies=[Depends(appointment_limiter)])
def book(payload: AppointmentCreate, user: Identity = Depends(get_current_user), db: Database = Depends(get_db),
         notifier: Notifier = Depends(get_notifier), client: ClientInfo = Depends(client_info)):
    doc = appointments.book(db, notifier, user, payload, client)
    return created(to_out(AppointmentOut, doc), "Appointment booked successfully")


@router.get("/{id}")
def get_appointment(id: str, user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    return success(to_out(AppointmentOut, appointments.get_for(db, id, user)), "Appointment retrieved")


@router.put("/{id}")
def update_appointment(id: str, payload: AppointmentUpdate, user: Identity = Depends(get_current_user),
                       db: Database = Depends(get_db), client: ClientInfo = Depends(client_info)):
    doc = appointments.update(db, id, user, payload, client)
    return success(to_out(AppointmentOut, doc), "Appointment updated successfully")


@router.put("/{id}/confirm")
def confirm(id: str, user: Identity = Depends(staff), db: Database = Depends(get_db),
            client: ClientInfo = Depends(client_info)):
    return success(to_out(AppointmentOut, appointments.confirm(db, id, user, client)), "Appointment confirmed")


@router.put("/{id}/cancel")
def cancel(id: str, payload: Optional[CancelRequest] = None, user: Identity = Depends(get_current_user),
           db: Database = Depends(get_db), notifier: Notifier = Depends(get_notifier),
           client: ClientInfo = Depends(client_info)):
    reason = payload.reason if payload else None
    doc = appointments.cancel(db, notifier, id, user, reason, client)
    return success(to_out(AppointmentOut, doc), "Appointment cancelled successfully")


@router.put("/{id}/check-in")
def check_in(id: str, user: Identity = Depends(staff), db: Database = Depends(get_db),
             client: ClientInfo = Depends(client_info)):
    return success(to_out(AppointmentOut, appointments.check_in(db, id, user, client)), "Patient checked in")


@router.put("/{id}/start-consultation")
def start_consultation(id: str, user: Identity = Depends(require_roles("doctor")), db: Database = Depends(get_db),
                       client: ClientInfo = Depends(client_info)):
    doc = appointments.start_consultation(db, id, user, client)
    return success(to_out(AppointmentOut, doc), "Consultation started")


@router.put("/{id}/complete")
def complete(id: str, payload: Optional[CompleteRequest] = None, user: Identity = Depends(require_roles("doctor")),
             db: Database = Depends(get_db), client: ClientInfo = Depends(client_info)):
    payload = payload or CompleteRequest()
    doc = appointments.complete(db, id, user, notes=payload.notes, is_paid=payload.is_paid,
                                payment_method=payload.payment_method, client=client)
    return success(to_out(AppointmentOut, doc), "Appointment completed")


@router.put("/{id}/no-show")
def no_show(id: str, user: Identity = Depends(staff), db: Database = Depends(get_db),
            client: ClientInfo = Depends(client_info)):
    return success(to_out(AppointmentOut, appointments.mark_no_show(db, id, user, client)),
                   "Appointment marked as no-show")
