import pytest

from conftest import auth, next_monday

SCHEDULE = {"availability": {"monday": [{"start": "09:00", "end": "10:00"}]}, "slotDuration": 30}


@pytest.fixture
def clinic(client, register):
    """A patient and a doctor who works Monday mornings."""
    patient, patient_token = register("patient")
    doctor, doctor_token = register("doctor")
    response = client.put("/api/doctors/my-schedule", json=SCHEDULE, headers=auth(doctor_token))
    assert response.status_code == 200, response.text
    return {
        "patient": patient,
        "patient_token": patient_token,
        "doctor": doctor,
        "doctor_token": doctor_token,
        "monday": next_monday().isoformat(),
    }


def slots(client, clinic):
    response = client.get(f"/api/doctors/{clinic['doctor']['id']}/available-slots",
                          params={"date": clinic["monday"]}, headers=auth(clinic["patient_token"]))
    assert response.status_code == 200, response.text
    return response.json()["data"]


def book(client, clinic, time="09:00", reason="Persistent headache for a week"):
    return client.post("/api/appointments", headers=auth(clinic["patient_token"]), json={
        "doctorId": clinic["doctor"]["id"],
        "appointmentDate": clinic["monday"],
        "appointmentTime": time,
        "reason": reason,
    })


def test_register_login_and_profile(client, register):
    register("patient")
    login = client.post("/api/auth/login", json={"email": "alice@x.com", "password": "secret123"})
    assert login.status_code == 200
    token = login.json()["data"]["token"]

    me = client.get("/api/auth/me", headers=auth(token))

    assert me.status_code == 200
    body = me.json()
    assert body["success"] is True
    profile = body["data"]
    assert profile["bloodGroup"] == "O+"
    assert profile["emergencyContact"]["name"] == "Bob Smith"
    assert "password" not in profile
    assert "passwordHash" not in profile
    assert "emailVerificationToken" not in profile

    own = client.get("/api/patients/profile", headers=auth(token))

    assert own.status_code == 200
    patient = own.json()["data"]
    assert patient["email"] == "alice@x.com"
    assert patient["bloodGroup"] == "O+"
    assert "password" not in patient
    assert "passwordHash" not in patient


def test_schedule_defines_slots(client, clinic):
    data = slots(client, clinic)
    assert data["dayName"] == "monday"
    assert data["availableSlots"] == ["09:00", "09:30"]
    assert data["bookedSlots"] == []

    schedule = client.get(f"/api/doctors/{clinic['doctor']['id']}/schedule", headers=auth(clinic["patient_token"]))
    assert schedule.json()["data"]["slotDuration"] == 30


def test_booking_consumes_and_cancel_releases_slot(client, clinic, notifier):
    response = book(client, clinic)
    assert response.status_code == 201, response.text
    appointment = response.json()["data"]
    assert appointment["status"] == "scheduled"
    assert appointment["appointmentNumber"].startswith("APT")
    assert appointment["consultationFee"] == 150
    assert any("booked" in mail["subject"] for mail in notifier.emails)

    assert slots(client, clinic)["availableSlots"] == ["09:30"]
    assert book(client, clinic).status_code == 409

    cancelled = client.put(f"/api/appointments/{appointment['id']}/cancel",
                           json={"reason": "Feeling better"}, headers=auth(clinic["patient_token"]))
    assert cancelled.status_code == 200
    assert cancelled.json()["data"]["status"] == "cancelled"
    assert slots(client, clinic)["availableSlots"] == ["09:00", "09:30"]
    assert book(client, clinic).status_code == 201


def test_booking_outside_schedule_is_rejected(client, clinic):
    assert book(client, clinic, time="11:00").status_code == 400
    assert book(client, clinic, time="9am").status_code == 400


def test_reason_must_be_descriptive(client, clinic):
    response = book(client, clinic, reason="headache")
    assert response.status_code == 400
    assert response.json()["errors"][0]["field"] == "reason"


def test_full_visit_lifecycle(client, clinic, register):
    _, admin_token = register("admin")
    doctor_headers = auth(clinic["doctor_token"])
    appointment_id = book(client, clinic).json()["data"]["id"]

    steps = [
        ("confirm", auth(admin_token), "confirmed"),
        ("check-in", auth(admin_token), "checked-in"),
        ("start-consultation", doctor_headers, "in-progress"),
    ]
    for action, headers, expected in steps:
        response = client.put(f"/api/appointments/{appointment_id}/{action}", headers=headers)
        assert response.status_code == 200, (action, response.text)
        assert response.json()["data"]["status"] == expected

    done = client.put(f"/api/appointments/{appointment_id}/complete", headers=doctor_headers,
                      json={"notes": "Prescribed rest", "isPaid": True, "paymentMethod": "card"})
    assert done.status_code == 200
    data = done.json()["data"]
    assert data["status"] == "completed"
    assert data["isPaid"] is True
    assert data["checkInTime"] and data["consultationStartTime"] and data["consultationEndTime"]

    again = client.put(f"/api/appointments/{appointment_id}/complete", headers=doctor_headers)
    assert again.status_code == 409
    assert "'completed'" in again.json()["message"]
    assert client.put(f"/api/appointments/{appointment_id}/cancel",
                      headers=auth(clinic["patient_token"])).status_code == 409


def test_patient_cannot_drive_clinical_transitions(client, clinic):
    appointment_id = book(client, clinic).json()["data"]["id"]
    response = client.put(f"/api/appointments/{appointment_id}/confirm", headers=auth(clinic["patient_token"]))
    assert response.status_code == 403


def test_reschedule_moves_slot(client, clinic):
    appointment_id = book(client, clinic).json()["data"]["id"]

    response = client.put(f"/api/appointments/{appointment_id}", headers=auth(clinic["patient_token"]),
                          json={"appointmentTime": "09:30"})

    assert response.status_code == 200, response.text
    assert response.json()["data"]["appointmentTime"] == "09:30"
    assert slots(client, clinic)["availableSlots"] == ["09:00"]


def test_slot_lookup_accepts_uppercase_doctor_id(client, clinic):
    book(client, clinic)

    response = client.get(f"/api/doctors/{clinic['doctor']['id'].upper()}/available-slots",
                          params={"date": clinic["monday"]}, headers=auth(clinic["patient_token"]))

    assert response.status_code == 200, response.text
    data = response.json()["data"]
    assert data["bookedSlots"] == ["09:00"]
    assert data["availableSlots"] == ["09:30"]


def test_listing_is_scoped_to_caller(client, clinic, register):
    book(client, clinic)
    _, other_token = register("patient", email="carol@x.com", firstName="Carol")

    mine = client.get("/api/appointments", headers=auth(clinic["patient_token"])).json()
    theirs = client.get("/api/appointments", headers=auth(other_token)).json()
    doctors = client.get("/api/appointments", headers=auth(clinic["doctor_token"])).json()

    assert mine["pagination"]["total"] == 1
    assert theirs["pagination"]["total"] == 0
    assert doctors["pagination"]["total"] == 1


def test_doctor_dashboard_lists_upcoming(client, clinic):
    book(client, clinic)
    response = client.get("/api/doctors/dashboard", headers=auth(clinic["doctor_token"]))
    assert response.status_code == 200, response.text


def test_health(client):
    assert client.get("/health").json()["success"] is True
