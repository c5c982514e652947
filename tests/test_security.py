from datetime import timedelta

import pytest

import security
from errors import UnauthenticatedError


def test_access_token_round_trip():
    token = security.create_access_token("user-1")
    payload = security.decode_access_token(token)
    assert payload["id"] == "user-1"
    assert payload["type"] == "access"
    assert payload["exp"] > payload["iat"]


def test_refresh_token_is_not_an_access_token():
    refresh = security.create_refresh_token("user-1")
    assert security.decode_refresh_token(refresh)["id"] == "user-1"
    with pytest.raises(UnauthenticatedError):
        security.decode_access_token(refresh)
    with pytest.raises(UnauthenticatedError):
        security.decode_refresh_token(security.create_access_token("user-1"))


def test_expired_token_is_rejected():
    token = security.create_access_token("user-1", expires_delta=timedelta(seconds=-5))
    with pytest.raises(UnauthenticatedError):
        security.decode_access_token(token)


def test_tampered_token_is_rejected():
    token = security.create_access_token("user-1")
    with pytest.raises(UnauthenticatedError):
        security.decode_access_token(token[:-2] + ("AA" if token[-2:] != "AA" else "BB"))


def test_issue_session_has_both_tokens():
    session = security.issue_session("user-1")
    assert set(session) == {"token", "refreshToken"}


def test_password_hashing():
    hashed = security.get_password_hash("secret123")
    assert hashed != "secret123"
    assert security.verify_password("secret123", hashed)
    assert not security.verify_password("wrong", hashed)


@pytest.mark.parametrize("stored", [None, "", "not-a-bcrypt-hash"])
def test_verify_password_never_raises(stored):
    assert security.verify_password("secret123", stored) is False


def test_generated_tokens_store_only_hash():
    raw, digest = security.generate_token()
    assert len(raw) == 40
    assert digest == security.hash_token(raw)
    assert raw not in digest
    assert security.generate_token()[0] != raw
