from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pymongo.database import Database

import identity
from audit import ClientInfo, client_info
from authorization import Identity, get_current_user
from config import get_settings
from database import get_db
from notifications import Notifier, get_notifier
from rate_limit import auth_limiter, password_reset_limiter, register_limiter, verification_limiter
from responses import success
from schemas import (ForgotPasswordRequest, LoginRequest, RefreshTokenRequest, RegisterRequest,
                     ResetPasswordRequest, TokenRequest, UpdatePasswordRequest, UpdateProfileRequest, user_out)

router = APIRouter(prefix="/auth", tags=["auth"])


def _with_cookie(response: JSONResponse, token: str) -> JSONResponse:
    settings = get_settings()
    response.set_cookie(
        "token", token,
        max_age=settings.jwt_cookie_expire_days * 24 * 60 * 60,
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
    )
    return response


def _session_response(user: Dict[str, Any], session: Dict[str, str], message: str,
                      status_code: int = 200) -> JSONResponse:
    data = {**session, "user": user_out(user)}
    return _with_cookie(success(data, message, status_code), session["token"])


@router.post("/register", dependencies=[Depends(register_limiter)])
def register(payload: RegisterRequest, db: Database = Depends(get_db),
             notifier: Notifier = Depends(get_notifier), client: ClientInfo = Depends(client_info)):
    user, session = identity.register(db, notifier, payload, client)
    return _session_response(user, session,
                             "Registration successful. Please check your email to verify your account.", 201)


@router.post("/login", dependencies=[Depends(auth_limiter)])
def login(payload: LoginRequest, db: Database = Depends(get_db),
          notifier: Notifier = Depends(get_notifier), client: ClientInfo = Depends(client_info)):
    user, session = identity.login(db, notifier, payload.email, payload.password, client)
    return _session_response(user, session, "Login successful")


@router.post("/refresh-token", dependencies=[Depends(auth_limiter)])
def refresh_token(payload: RefreshTokenRequest, db: Database = Depends(get_db)):
    session = identity.refresh_session(db, payload.refresh_token)
    return _with_cookie(success(session, "Token refreshed"), session["token"])


@router.post("/verify-email", dependencies=[Depends(verification_limiter)])
def verify_email(payload: TokenRequest, db: Database = Depends(get_db), client: ClientInfo = Depends(client_info)):
    identity.verify_email(db, payload.token, client)
    return success(message="Email verified successfully")


@router.post("/resend-verification", dependencies=[Depends(verification_limiter)])
def resend_verification(user: Identity = Depends(get_current_user), db: Database = Depends(get_db),
                        notifier: Notifier = Depends(get_notifier)):
    identity.resend_verification(db, notifier, user["_id"])
    return success(message="Verification email sent")


@router.post("/forgot-password", dependencies=[Depends(password_reset_limiter)])
def forgot_password(payload: ForgotPasswordRequest, db: Database = Depends(get_db),
                    notifier: Notifier = Depends(get_notifier), client: ClientInfo = Depends(client_info)):
    message = identity.request_password_reset(db, notifier, payload.email, client)
    return success(message=message)


@router.post("/reset-password", dependencies=[Depends(password_reset_limiter)])
def reset_password(payload: ResetPasswordRequest, db: Database = Depends(get_db),
                   client: ClientInfo = Depends(client_info)):
    user, session = identity.reset_password(db, payload.token, payload.password, client)
    return _session_response(user, session, "Password reset successful")


@router.get("/me")
def me(user: Identity = Depends(get_current_user)):
    return success(user_out(user), "User retrieved successfully")


@router.put("/update-password")
def update_password(payload: UpdatePasswordRequest, user: Identity = Depends(get_current_user),
                    db: Database = Depends(get_db), client: ClientInfo = Depends(client_info)):
    session = identity.update_password(db, user["_id"], payload.current_password, payload.new_password, client)
    return _with_cookie(success(session, "Password updated successfully"), session["token"])


@router.put("/update-profile")
def update_profile(payload: UpdateProfileRequest, user: Identity = Depends(get_current_user),
                   db: Database = Depends(get_db), client: ClientInfo = Depends(client_info)):
    updated = identity.update_profile(db, user["_id"], payload, client)
    return success(user_out(updated), "Profile updated successfully")


@router.api_route("/logout", methods=["GET", "POST"])
def logout(user: Identity = Depends(get_current_user), db: Database = Depends(get_db),
           client: ClientInfo = Depends(client_info)):
    identity.logout(db, user["_id"], client)
    response = success(message="Logged out successfully")
    response.delete_cookie("token", httponly=True, samesite="strict", secure=get_settings().is_production)
    return response
