from datetime import date

import pytest
from bson import ObjectId

from appointments import all_slots, available_slots, booked_times, generate_time_slots, weekday_name
from conftest import next_monday


def test_generate_time_slots_steps_through_window():
    assert generate_time_slots("09:00", "10:00", 30) == ["09:00", "09:30"]
    assert generate_time_slots("09:00", "10:00", 20) == ["09:00", "09:20", "09:40"]


def test_slot_must_end_by_window_end():
    assert generate_time_slots("09:00", "10:00", 45) == ["09:00"]
    assert generate_time_slots("09:00", "09:15", 30) == []


def test_generate_time_slots_rejects_non_positive_duration():
    with pytest.raises(ValueError):
        generate_time_slots("09:00", "10:00", 0)


def test_weekday_name():
    assert weekday_name(date(2024, 1, 1)) == "monday"
    assert weekday_name(date(2024, 1, 7)) == "sunday"


def test_all_slots_merges_windows_in_order():
    doctor = {
        "availability": {"monday": [{"start": "14:00", "end": "15:00"}, {"start": "09:00", "end": "10:00"}]},
        "slot_duration": 30,
    }
    assert all_slots(doctor, "monday") == ["09:00", "09:30", "14:00", "14:30"]
    assert all_slots(doctor, "tuesday") == []


def test_all_slots_defaults_to_thirty_minutes():
    doctor = {"availability": {"friday": [{"start": "08:00", "end": "09:00"}]}}
    assert all_slots(doctor, "friday") == ["08:00", "08:30"]


def _appointment(db, doctor_id, day, time, status):
    db.appointments.insert_one({
        "appointment_number": f"APT-{ObjectId()}",
        "doctor_id": doctor_id,
        "patient_id": str(ObjectId()),
        "appointment_date": day.isoformat(),
        "appointment_time": time,
        "status": status,
    })


def test_available_slots_excludes_active_bookings_only(db):
    doctor = {
        "_id": ObjectId(),
        "availability": {"monday": [{"start": "09:00", "end": "11:00"}]},
        "slot_duration": 30,
    }
    monday = next_monday()
    doctor_id = str(doctor["_id"])
    _appointment(db, doctor_id, monday, "09:30", "scheduled")
    _appointment(db, doctor_id, monday, "10:00", "cancelled")
    _appointment(db, doctor_id, monday, "10:30", "no-show")
    _appointment(db, str(ObjectId()), monday, "09:00", "confirmed")

    slots = available_slots(db, doctor, monday)

    assert slots == ["09:00", "10:00", "10:30"]
    assert set(slots) < set(all_slots(doctor, "monday"))
    assert slots == sorted(slots)
    assert booked_times(db, doctor_id, monday) == ["09:30"]
