import pytest
from bson import ObjectId

from authorization import authorize, can_access_resource
from conftest import auth
from errors import ForbiddenError, UnauthenticatedError

PATIENT = {"_id": str(ObjectId()), "role": "patient"}
OTHER_PATIENT = {"_id": str(ObjectId()), "role": "patient"}
DOCTOR = {"_id": str(ObjectId()), "role": "doctor"}
ADMIN = {"_id": str(ObjectId()), "role": "admin"}


def test_authorize_requires_identity():
    with pytest.raises(UnauthenticatedError):
        authorize(None, ["admin"])


def test_authorize_role_gate():
    assert authorize(ADMIN, ["admin"]) is ADMIN
    assert authorize(DOCTOR, ["Doctor", "admin"]) is DOCTOR
    with pytest.raises(ForbiddenError) as excinfo:
        authorize(PATIENT, ["doctor", "admin"])
    assert "Required roles: doctor, admin" in excinfo.value.message


@pytest.mark.parametrize("identity, resource_type, owner, allowed", [
    (ADMIN, "patient", PATIENT["_id"], True),
    (ADMIN, "doctor", DOCTOR["_id"], True),
    (ADMIN, "invoice", None, True),
    (DOCTOR, "patient", PATIENT["_id"], True),
    (DOCTOR, "appointment", PATIENT["_id"], True),
    (DOCTOR, "doctor", DOCTOR["_id"], True),
    (DOCTOR, "doctor", str(ObjectId()), False),
    (PATIENT, "patient", PATIENT["_id"], True),
    (PATIENT, "patient", OTHER_PATIENT["_id"], False),
    (PATIENT, "appointment", PATIENT["_id"], True),
    (PATIENT, "appointment", OTHER_PATIENT["_id"], False),
    (PATIENT, "doctor", PATIENT["_id"], False),
    (PATIENT, "user", PATIENT["_id"], True),
    (PATIENT, "invoice", PATIENT["_id"], False),
])
def test_can_access_resource(identity, resource_type, owner, allowed):
    if allowed:
        assert can_access_resource(identity, resource_type, owner) is identity
    else:
        with pytest.raises(ForbiddenError):
            can_access_resource(identity, resource_type, owner)


def test_can_access_resource_requires_identity():
    with pytest.raises(UnauthenticatedError):
        can_access_resource(None, "patient", PATIENT["_id"])


def test_missing_token_is_401(client):
    client.cookies.clear()
    response = client.get("/api/auth/me")
    assert response.status_code == 401
    assert response.json()["success"] is False


def test_garbage_token_is_401(client):
    client.cookies.clear()
    response = client.get("/api/auth/me", headers=auth("not-a-jwt"))
    assert response.status_code == 401


def test_cookie_token_is_accepted(client, register):
    register("patient")
    response = client.get("/api/auth/me")
    assert response.status_code == 200
    assert response.json()["data"]["email"] == "alice@x.com"


def test_patient_cannot_reach_admin_routes(client, register):
    _, token = register("patient")
    response = client.get("/api/admin/users", headers=auth(token))
    assert response.status_code == 403
    assert "not authorized" in response.json()["message"]


def test_patient_cannot_read_another_patient(client, register):
    alice, _ = register("patient")
    _, bob_token = register("patient", email="bob@x.com", firstName="Bob")

    response = client.get(f"/api/patients/{alice['id']}", headers=auth(bob_token))
    assert response.status_code == 403


def test_deactivated_user_token_is_rejected(client, register, db):
    user, token = register("patient")
    db.users.update_one({"_id": ObjectId(user["id"])}, {"$set": {"is_active": False}})
    client.cookies.clear()

    response = client.get("/api/auth/me", headers=auth(token))
    assert response.status_code == 401
    assert "deactivated" in response.json()["message"]
