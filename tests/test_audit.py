from datetime import timedelta
from unittest.mock import MagicMock

from bson import ObjectId
from pymongo.errors import PyMongoError

import audit
from database import utcnow


def test_defaults_are_derived(db):
    entry = audit.log_activity(db, user="u1", action="login", resource_type="User", description="ok")

    assert entry["severity"] == "low"
    assert entry["category"] == "authentication"
    assert entry["ip_address"] == "unknown"
    assert entry["is_suspicious"] is False
    assert db.audit_logs.count_documents({}) == 1


def test_failure_raises_severity(db):
    entry = audit.log_activity(db, action="login", resource_type="User", description="bad", status="failure")
    assert entry["severity"] == "medium"
    assert entry["user"] is None


def test_clinical_writes_are_patient_care(db):
    entry = audit.log_activity(db, user="d1", action="create", resource_type="MedicalRecord", description="x")
    assert entry["category"] == "patient-care"
    entry = audit.log_activity(db, user="a1", action="access-denied", resource_type="System", description="x")
    assert entry["category"] == "authorization"
    assert entry["severity"] == "high"


def test_invalid_entry_is_swallowed(db):
    assert audit.log_activity(db, action="teleport", resource_type="User", description="x") is None
    assert audit.log_activity(db, action="read", resource_type="Spaceship", description="x") is None
    assert db.audit_logs.count_documents({}) == 0


def test_storage_failure_never_propagates():
    broken = MagicMock()
    broken.__getitem__.return_value.insert_one.side_effect = PyMongoError("down")

    assert audit.log_activity(broken, action="read", resource_type="User", description="x") is None


def test_failed_logins_window(db):
    audit.log_activity(db, action="login", resource_type="User", description="x", status="failure",
                       ip_address="10.0.0.1")
    audit.log_activity(db, action="login", resource_type="User", description="x", status="failure",
                       ip_address="10.0.0.2")
    old = audit.log_activity(db, action="login", resource_type="User", description="x", status="failure")
    db.audit_logs.update_one({"_id": old["_id"]}, {"$set": {"created_at": utcnow() - timedelta(hours=48)}})

    assert len(audit.get_failed_logins(db)) == 2
    assert len(audit.get_failed_logins(db, ip_address="10.0.0.1")) == 1


def test_review_and_flag(db):
    entry = audit.log_activity(db, user="u1", action="export", resource_type="Report", description="x")
    log_id = str(entry["_id"])

    reviewed = audit.mark_as_reviewed(db, log_id, "admin-1", "looked fine")
    assert reviewed["is_reviewed"] is True
    assert reviewed["review_notes"] == "looked fine"

    flagged = audit.mark_as_suspicious(db, log_id, "bulk export at 3am")
    assert flagged["is_suspicious"] is True
    assert flagged["severity"] == "critical"
    assert audit.mark_as_suspicious(db, str(ObjectId()), "missing") is None
    assert audit.mark_as_reviewed(db, "not-an-id", "admin-1") is None


def test_statistics_groups_by_action(db):
    for status in ("success", "failure", "failure"):
        audit.log_activity(db, user="u1", action="login", resource_type="User", description="x", status=status)
    audit.log_activity(db, user="u1", action="logout", resource_type="User", description="x")

    stats = audit.get_statistics(db)

    assert stats["totalLogs"] == 4
    login = stats["byAction"][0]
    assert login == {"action": "login", "count": 3, "successCount": 1, "failureCount": 2}


def test_detect_anomalies_thresholds(db):
    user_id = "u-anomaly"
    assert audit.detect_anomalies(db, user_id) == []

    for i in range(4):
        audit.log_activity(db, user=user_id, action="login", resource_type="User", description="x",
                           ip_address=f"10.0.0.{i}")
    assert [a["type"] for a in audit.detect_anomalies(db, user_id)] == ["multiple-ips"]

    for _ in range(6):
        audit.log_activity(db, user=user_id, action="login", resource_type="User", description="x",
                           status="failure", ip_address="10.0.0.0")
    types = {a["type"] for a in audit.detect_anomalies(db, user_id)}
    assert types == {"multiple-ips", "multiple-failed-logins"}


def test_detect_anomalies_ignores_old_activity(db):
    for i in range(5):
        entry = audit.log_activity(db, user="u-old", action="login", resource_type="User", description="x",
                                   ip_address=f"10.1.0.{i}")
        db.audit_logs.update_one({"_id": entry["_id"]}, {"$set": {"created_at": utcnow() - timedelta(days=3)}})
    assert audit.detect_anomalies(db, "u-old") == []
