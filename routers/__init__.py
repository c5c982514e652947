"""
Hospital API routes, all mounted under ``/api``.
"""
from fastapi import APIRouter, Depends

from rate_limit import api_limiter
from routers import admin, analytics, appointments, auth, doctors, notifications, patients, records

api_router = APIRouter(prefix="/api", dependencies=[Depends(api_limiter)])

api_router.include_router(auth.router)
api_router.include_router(appointments.router)
api_router.include_router(doctors.router)
api_router.include_router(patients.router)
api_router.include_router(records.router)
api_router.include_router(records.prescriptions)
api_router.include_router(admin.router)
api_router.include_router(analytics.router)
api_router.include_router(notifications.router)

__all__ = ["api_router"]
