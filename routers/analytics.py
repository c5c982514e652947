from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pymongo.database import Database

import analytics
from authorization import require_roles
from database import get_db
from rate_limit import analytics_limiter
from responses import success
from schemas import ClearCacheRequest

router = APIRouter(
    prefix="/analytics",
    tags=["analytics"],
    dependencies=[Depends(require_roles("admin")), Depends(analytics_limiter)],
)

Period = Literal["today", "yesterday", "week", "month", "year"]


def get_cache(db: Database = Depends(get_db)) -> analytics.AnalyticsCache:
    return analytics.AnalyticsCache(db)


@router.get("/dashboard")
def dashboard(db: Database = Depends(get_db), cache: analytics.AnalyticsCache = Depends(get_cache)):
    data, cached = analytics.overview(db, cache)
    return success(data, "Dashboard data retrieved from cache" if cached else "Dashboard overview retrieved")


@router.get("/patients")
def patients(period: Period = "month", db: Database = Depends(get_db)):
    return success(analytics.patient_statistics(db, period), "Patient statistics retrieved")


@router.get("/appointments")
def appointments(period: Period = "month", db: Database = Depends(get_db)):
    return success(analytics.appointment_statistics(db, period), "Appointment statistics retrieved")


@router.get("/doctors")
def doctors(period: Period = "month", db: Database = Depends(get_db)):
    return success(analytics.doctor_performance(db, period), "Doctor performance metrics retrieved")


@router.get("/revenue")
def revenue(period: Period = "month", db: Database = Depends(get_db)):
    return success(analytics.revenue(db, period), "Revenue analytics retrieved")


@router.get("/cache")
def cache_stats(cache: analytics.AnalyticsCache = Depends(get_cache)):
    return success(cache.stats(), "Cache statistics retrieved")


@router.post("/clear-cache")
def clear_cache(payload: Optional[ClearCacheRequest] = None, cache: analytics.AnalyticsCache = Depends(get_cache)):
    if payload and payload.cache_type:
        removed = cache.invalidate_by_type(payload.cache_type)
    else:
        removed = cache.clear()
    return success({"removed": removed}, "Cache cleared successfully")
