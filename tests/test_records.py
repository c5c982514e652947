import re

import pytest

from conftest import auth

MEDICATIONS = [{"name": "Amoxicillin", "dosage": "500mg", "frequency": "3x daily", "duration": "7 days"}]


@pytest.fixture
def care(client, register):
    patient, patient_token = register("patient")
    _, other_token = register("patient", email="bob@x.com", firstName="Bob")
    _, doctor_token = register("doctor")
    _, admin_token = register("admin")
    return {
        "patient": patient,
        "patient_token": patient_token,
        "other_token": other_token,
        "doctor_token": doctor_token,
        "admin_token": admin_token,
    }


def write_record(client, care, **overrides):
    payload = {"patientId": care["patient"]["id"], "diagnosis": "Tension headache",
               "symptoms": ["headache", "fatigue"], "treatment": "Rest and hydration", **overrides}
    return client.post("/api/records", json=payload, headers=auth(care["doctor_token"]))


def prescribe(client, care, medications=MEDICATIONS):
    payload = {"patientId": care["patient"]["id"], "medications": medications}
    return client.post("/api/prescriptions", json=payload, headers=auth(care["doctor_token"]))


def test_doctor_writes_record(client, care):
    response = write_record(client, care)

    assert response.status_code == 201, response.text
    record = response.json()["data"]
    assert re.fullmatch(r"MR\d{17}", record["recordNumber"])
    assert record["visitDate"]


def test_only_doctors_write_records(client, care):
    response = client.post("/api/records", json={"patientId": care["patient"]["id"], "diagnosis": "Flu"},
                           headers=auth(care["patient_token"]))
    assert response.status_code == 403


def test_record_reads_are_audited_and_owned(client, care, db):
    record_id = write_record(client, care).json()["data"]["id"]

    own = client.get(f"/api/records/{record_id}", headers=auth(care["patient_token"]))
    assert own.status_code == 200
    assert db.audit_logs.count_documents({"action": "read", "resource_type": "MedicalRecord",
                                          "resource_id": record_id}) == 1

    other = client.get(f"/api/records/{record_id}", headers=auth(care["other_token"]))
    assert other.status_code == 403


def test_patient_sees_own_history(client, care):
    write_record(client, care)
    write_record(client, care, diagnosis="Seasonal allergy")

    mine = client.get("/api/patients/medical-records", headers=auth(care["patient_token"])).json()
    theirs = client.get("/api/patients/medical-records", headers=auth(care["other_token"])).json()

    assert mine["pagination"]["total"] == 2
    assert theirs["pagination"]["total"] == 0


def test_only_author_updates_record(client, care, register):
    record_id = write_record(client, care).json()["data"]["id"]
    _, wilson_token = register("doctor", email="wilson@clinic.com", licenseNumber="LIC-2002")

    denied = client.put(f"/api/records/{record_id}", json={"notes": "x"}, headers=auth(wilson_token))
    assert denied.status_code == 403

    ok = client.put(f"/api/records/{record_id}", json={"notes": "Review in 2 weeks"},
                    headers=auth(care["doctor_token"]))
    assert ok.status_code == 200
    assert ok.json()["data"]["notes"] == "Review in 2 weeks"


def test_prescription_notifies_patient(client, care, db):
    response = prescribe(client, care)

    assert response.status_code == 201, response.text
    prescription = response.json()["data"]
    assert re.fullmatch(r"RX\d{17}", prescription["prescriptionNumber"])
    assert prescription["status"] == "active"
    assert db.notifications.count_documents({"recipient_id": care["patient"]["id"],
                                             "category": "prescription-ready"}) == 1


def test_prescription_needs_medications(client, care):
    assert prescribe(client, care, medications=[]).status_code == 400


def test_dispense_once(client, care):
    prescription_id = prescribe(client, care).json()["data"]["id"]
    url = f"/api/prescriptions/{prescription_id}/dispense"

    assert client.put(url, headers=auth(care["doctor_token"])).status_code == 403
    first = client.put(url, headers=auth(care["admin_token"]))
    assert first.status_code == 200
    assert first.json()["data"]["status"] == "completed"
    assert first.json()["data"]["dispensedBy"]

    assert client.put(url, headers=auth(care["admin_token"])).status_code == 409


def test_prescription_list_filters_by_status(client, care):
    prescription_id = prescribe(client, care).json()["data"]["id"]
    prescribe(client, care)
    client.put(f"/api/prescriptions/{prescription_id}/dispense", headers=auth(care["admin_token"]))

    active = client.get("/api/prescriptions", params={"status": "active"}, headers=auth(care["patient_token"]))
    assert active.json()["pagination"]["total"] == 1


def test_unknown_record_is_404(client, care):
    response = client.get("/api/records/5f0000000000000000000000", headers=auth(care["admin_token"]))
    assert response.status_code == 404
