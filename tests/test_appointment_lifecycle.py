import itertools

import pytest
from bson import ObjectId

import appointments
from appointments import ACTIVE, TERMINAL
from errors import ConflictError
from schemas import AppointmentUpdate

ADMIN = {"_id": str(ObjectId()), "role": "admin"}
ALL_STATUSES = sorted(ACTIVE | TERMINAL)
_numbers = itertools.count(1)


def make_appointment(db, status):
    number = next(_numbers)
    doc = {
        "appointment_number": f"APT2099{number:05d}",
        "patient_id": str(ObjectId()),
        "doctor_id": str(ObjectId()),
        "appointment_date": "2099-01-05",
        "appointment_time": "09:00",
        "status": status,
        "reason": "Routine follow-up visit",
    }
    if status in ACTIVE:
        doc["slot_key"] = f"{doc['doctor_id']}|2099-01-05|09:00"
    return str(db.appointments.insert_one(doc).inserted_id)


@pytest.mark.parametrize("status", [s for s in ALL_STATUSES if s != "in-progress"])
def test_complete_outside_in_progress_is_conflict(db, status):
    appointment_id = make_appointment(db, status)

    with pytest.raises(ConflictError) as excinfo:
        appointments.transition(db, appointment_id, "complete", ADMIN)

    assert f"'{status}'" in excinfo.value.message
    assert "'completed'" in excinfo.value.message
    assert db.appointments.find_one({"_id": ObjectId(appointment_id)})["status"] == status


@pytest.mark.parametrize("status", sorted(ACTIVE))
def test_cancel_from_any_active_state(db, status):
    appointment_id = make_appointment(db, status)

    updated = appointments.transition(db, appointment_id, "cancel", ADMIN)

    assert updated["status"] == "cancelled"
    assert updated["status"] in TERMINAL
    assert "slot_key" not in updated


@pytest.mark.parametrize("status", sorted(TERMINAL))
@pytest.mark.parametrize("action", ["cancel", "no-show", "confirm", "check-in"])
def test_terminal_states_are_absorbing(db, status, action):
    appointment_id = make_appointment(db, status)
    with pytest.raises(ConflictError):
        appointments.transition(db, appointment_id, action, ADMIN)


def test_happy_path_stamps_times(db):
    appointment_id = make_appointment(db, "scheduled")

    assert appointments.transition(db, appointment_id, "confirm", ADMIN)["status"] == "confirmed"
    checked_in = appointments.transition(db, appointment_id, "check-in", ADMIN)
    assert checked_in["check_in_time"] is not None
    started = appointments.transition(db, appointment_id, "start-consultation", ADMIN)
    assert started["consultation_start_time"] is not None
    done = appointments.transition(db, appointment_id, "complete", ADMIN, {"is_paid": True})
    assert done["status"] == "completed"
    assert done["is_paid"] is True
    assert done["consultation_end_time"] >= done["consultation_start_time"]
    assert done["slot_key"]


def test_check_in_allowed_from_scheduled(db):
    appointment_id = make_appointment(db, "scheduled")
    assert appointments.transition(db, appointment_id, "check-in", ADMIN)["status"] == "checked-in"


def test_transition_is_conditional_on_status_read(db, monkeypatch):
    appointment_id = make_appointment(db, "cancelled")
    stale = dict(db.appointments.find_one({"_id": ObjectId(appointment_id)}), status="checked-in")
    monkeypatch.setattr(appointments, "get_for", lambda *_: stale)

    with pytest.raises(ConflictError) as excinfo:
        appointments.transition(db, appointment_id, "start-consultation", ADMIN)

    assert "'cancelled'" in excinfo.value.message
    assert db.appointments.find_one({"_id": ObjectId(appointment_id)})["status"] == "cancelled"


def test_transition_writes_audit_entry(db):
    appointment_id = make_appointment(db, "scheduled")
    appointments.transition(db, appointment_id, "no-show", ADMIN)

    entry = db.audit_logs.find_one({"resource_id": appointment_id})
    assert entry["resource_type"] == "Appointment"
    assert "scheduled -> no-show" in entry["description"]


@pytest.mark.parametrize("status", ["checked-in", "in-progress"])
def test_reschedule_after_arrival_is_conflict(db, status):
    appointment_id = make_appointment(db, status)

    with pytest.raises(ConflictError) as excinfo:
        appointments.update(db, appointment_id, ADMIN, AppointmentUpdate(appointment_time="09:30"))

    assert f"'{status}'" in excinfo.value.message
    stored = db.appointments.find_one({"_id": ObjectId(appointment_id)})
    assert (stored["status"], stored["appointment_time"]) == (status, "09:00")


def test_notes_can_change_after_arrival(db):
    appointment_id = make_appointment(db, "in-progress")

    updated = appointments.update(db, appointment_id, ADMIN, AppointmentUpdate(notes="Bring previous scans"))

    assert updated["notes"] == "Bring previous scans"
    assert updated["appointment_time"] == "09:00"
