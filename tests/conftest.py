import os

os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["ENVIRONMENT"] = "test"
os.environ.pop("DATABASE_URL", None)

import re
from datetime import date, timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

from config import get_settings
from database import ensure_indexes, get_db
from main import app
from notifications import NotificationError, Notifier, get_notifier
from rate_limit import InMemoryCounterStore, get_counter_store

TOKEN_RE = re.compile(r"token=([0-9a-f]+)")

PATIENT = {
    "role": "patient",
    "firstName": "Alice",
    "lastName": "Smith",
    "email": "alice@x.com",
    "password": "secret123",
    "phone": "+2348012345678",
    "gender": "female",
    "dateOfBirth": "1990-04-12",
    "bloodGroup": "O+",
    "genotype": "AA",
    "emergencyContact": {"name": "Bob Smith", "relationship": "spouse", "phone": "+2348098765432"},
}
DOCTOR = {
    "role": "doctor",
    "firstName": "Gregory",
    "lastName": "House",
    "email": "house@clinic.com",
    "password": "secret123",
    "phone": "08011112222",
    "gender": "male",
    "specialization": "Diagnostics",
    "licenseNumber": "LIC-1001",
    "consultationFee": 150,
}
ADMIN = {
    "role": "admin",
    "firstName": "Ada",
    "lastName": "Admin",
    "email": "admin@clinic.com",
    "password": "secret123",
    "phone": "08033334444",
    "department": "Operations",
}
PAYLOADS = {"patient": PATIENT, "doctor": DOCTOR, "admin": ADMIN}


class RecordingNotifier(Notifier):
    """Stores in-app notifications like the real one but keeps outbound mail in memory."""

    def __init__(self, db):
        super().__init__(db, get_settings())
        self.emails = []
        self.sms = []
        self.fail = False

    def send_email(self, to, subject, body):
        if self.fail:
            raise NotificationError("smtp down")
        self.emails.append({"to": to, "subject": subject, "body": body})

    def send_sms(self, phone, message):
        if self.fail:
            raise NotificationError("gateway down")
        self.sms.append({"to": phone, "message": message})

    def last_token(self, subject_fragment):
        for mail in reversed(self.emails):
            if subject_fragment in mail["subject"]:
                return TOKEN_RE.search(mail["body"]).group(1)
        raise AssertionError(f"no email matching {subject_fragment!r}")


@pytest.fixture
def db():
    database = mongomock.MongoClient(tz_aware=False)["hospital_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def notifier(db):
    return RecordingNotifier(db)


@pytest.fixture
def client(db, notifier):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_notifier] = lambda: notifier
    store = InMemoryCounterStore()
    app.dependency_overrides[get_counter_store] = lambda: store
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def register(client):
    """Register a user of ``role``; returns ``(user, token)``."""

    def _register(role="patient", **overrides):
        payload = {**PAYLOADS[role], **overrides}
        response = client.post("/api/auth/register", json=payload)
        assert response.status_code == 201, response.text
        data = response.json()["data"]
        return data["user"], data["token"]

    return _register


def auth(token):
    return {"Authorization": f"Bearer {token}"}


def next_monday(today=None):
    today = today or date.today()
    return today + timedelta(days=(7 - today.weekday()) % 7 or 7)
