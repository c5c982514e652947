"""
Dashboard analytics.

Counts and breakdowns are computed from the live collections; the overview is
memoized in ``analytics_cache`` for five minutes. The cache is never a source
of truth, so its failures are logged and treated as misses.
"""
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import ANALYTICS_CACHE, APPOINTMENTS, USERS, to_object_id, utcnow
from errors import ValidationError
from logging_config import get_logger

logger = get_logger(__name__)

OVERVIEW_KEY = "dashboard-overview"
OVERVIEW_TTL = 300
PERIODS = {"today": 0, "yesterday": 1, "week": 7, "month": 30, "year": 365}
AGE_BUCKETS = (0, 18, 30, 45, 60, 100)
ACTIVE_STATUSES = ["scheduled", "confirmed", "checked-in", "in-progress"]


class AnalyticsCache:
    def __init__(self, db: Database):
        self.collection = db[ANALYTICS_CACHE]

    def get(self, key: str) -> Optional[Any]:
        now = utcnow()
        try:
            entry = self.collection.find_one_and_update(
                {"key": key, "expires_at": {"$gt": now}},
                {"$inc": {"hit_count": 1}, "$set": {"last_accessed": now}},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as exc:
            logger.warning("analytics_cache_read_failed", key=key, error=str(exc))
            return None
        return entry["data"] if entry else None

    def set(self, key: str, data: Any, cache_type: str = "general", ttl: int = OVERVIEW_TTL) -> bool:
        now = utcnow()
        try:
            self.collection.update_one(
                {"key": key},
                {"$set": {"data": data, "cache_type": cache_type, "expires_at": now + timedelta(seconds=ttl),
                          "hit_count": 0, "last_accessed": now, "updated_at": now},
                 "$setOnInsert": {"created_at": now}},
                upsert=True,
            )
        except PyMongoError as exc:
            logger.warning("analytics_cache_write_failed", key=key, error=str(exc))
            return False
        return True

    def invalidate_by_type(self, cache_type: str) -> int:
        return self.collection.delete_many({"cache_type": cache_type}).deleted_count

    def clear(self) -> int:
        return self.collection.delete_many({}).deleted_count

    def stats(self) -> Dict[str, Any]:
        now = utcnow()
        return {
            "totalEntries": self.collection.count_documents({}),
            "activeEntries": self.collection.count_documents({"expires_at": {"$gt": now}}),
            "expiredEntries": self.collection.count_documents({"expires_at": {"$lte": now}}),
        }


def get_date_range(period: str = "month") -> Tuple[datetime, datetime]:
    if period not in PERIODS:
        raise ValidationError(f"Unknown period '{period}'. Use one of: {', '.join(PERIODS)}")
    now = utcnow()
    end = now.replace(hour=23, minute=59, second=59, microsecond=999999)
    start = (now - timedelta(days=PERIODS[period])).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, end


def _grouped(db: Database, collection: str, match: Dict[str, Any], field: str,
             total_field: Optional[str] = None) -> List[Dict[str, Any]]:
    group: Dict[str, Any] = {"_id": f"${field}", "count": {"$sum": 1}}
    if total_field:
        group["total"] = {"$sum": f"${total_field}"}
    return list(db[collection].aggregate([{"$match": match}, {"$group": group}, {"$sort": {"_id": 1}}]))


def overview(db: Database, cache: AnalyticsCache) -> Tuple[Dict[str, Any], bool]:
    """Return ``(data, from_cache)``."""
    cached = cache.get(OVERVIEW_KEY)
    if cached is not None:
        return cached, True

    data = {
        "overview": {
            "totalPatients": db[USERS].count_documents({"role": "patient", "is_active": True}),
            "totalDoctors": db[USERS].count_documents({"role": "doctor", "is_active": True}),
            "totalAppointments": db[APPOINTMENTS].count_documents({}),
            "todayAppointments": db[APPOINTMENTS].count_documents({"appointment_date": date.today().isoformat()}),
            "activeAppointments": db[APPOINTMENTS].count_documents({"status": {"$in": ACTIVE_STATUSES}}),
            "completedAppointments": db[APPOINTMENTS].count_documents({"status": "completed"}),
        },
        "lastUpdated": utcnow(),
    }
    cache.set(OVERVIEW_KEY, data, cache_type=OVERVIEW_KEY, ttl=OVERVIEW_TTL)
    return data, False


def _age(dob: str, today: date) -> Optional[int]:
    try:
        born = date.fromisoformat(dob)
    except (TypeError, ValueError):
        return None
    return today.year - born.year - ((today.month, today.day) < (born.month, born.day))


def _age_bucket(age: Optional[int]) -> str:
    if age is None:
        return "Unknown"
    for low, high in zip(AGE_BUCKETS, AGE_BUCKETS[1:]):
        if low <= age < high:
            return f"{low}-{high - 1}"
    return "Unknown"


def patient_statistics(db: Database, period: str = "month") -> Dict[str, Any]:
    start, end = get_date_range(period)
    patients = list(db[USERS].find({"role": "patient"}, {"created_at": 1, "date_of_birth": 1}))

    trends: Dict[str, int] = {}
    ages: Dict[str, int] = {}
    today = date.today()
    for patient in patients:
        created = patient.get("created_at")
        if created and start <= created <= end:
            day = created.date().isoformat()
            trends[day] = trends.get(day, 0) + 1
        bucket = _age_bucket(_age(patient.get("date_of_birth"), today))
        ages[bucket] = ages.get(bucket, 0) + 1

    return {
        "registrationTrends": [{"date": d, "count": c} for d, c in sorted(trends.items())],
        "bloodGroupDistribution": _grouped(db, USERS, {"role": "patient"}, "blood_group"),
        "genderDistribution": _grouped(db, USERS, {"role": "patient"}, "gender"),
        "ageDistribution": [{"range": r, "count": c} for r, c in sorted(ages.items())],
        "period": period,
    }


def _date_match(start: datetime, end: datetime) -> Dict[str, Any]:
    return {"appointment_date": {"$gte": start.date().isoformat(), "$lte": end.date().isoformat()}}


def appointment_statistics(db: Database, period: str = "month") -> Dict[str, Any]:
    start, end = get_date_range(period)
    match = _date_match(start, end)
    by_status = _grouped(db, APPOINTMENTS, match, "status")
    total = sum(row["count"] for row in by_status)
    completed = next((row["count"] for row in by_status if row["_id"] == "completed"), 0)
    return {
        "statusDistribution": by_status,
        "typeDistribution": _grouped(db, APPOINTMENTS, match, "type"),
        "dailyTrends": _grouped(db, APPOINTMENTS, match, "appointment_date"),
        "total": total,
        "completionRate": round(completed / total * 100, 2) if total else 0,
        "period": period,
    }


def doctor_performance(db: Database, period: str = "month", top: int = 10) -> Dict[str, Any]:
    start, end = get_date_range(period)
    rows = db[APPOINTMENTS].aggregate([
        {"$match": _date_match(start, end)},
        {"$group": {"_id": {"doctor": "$doctor_id", "status": "$status"}, "count": {"$sum": 1}}},
    ])
    per_doctor: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        doctor_id = row["_id"]["doctor"]
        entry = per_doctor.setdefault(doctor_id, {"doctorId": doctor_id, "totalAppointments": 0,
                                                  "completed": 0, "cancelled": 0, "noShow": 0})
        entry["totalAppointments"] += row["count"]
        key = {"completed": "completed", "cancelled": "cancelled", "no-show": "noShow"}.get(row["_id"]["status"])
        if key:
            entry[key] += row["count"]

    ranked = sorted(per_doctor.values(), key=lambda e: e["totalAppointments"], reverse=True)[:top]
    for entry in ranked:
        doctor = db[USERS].find_one({"_id": to_object_id(entry["doctorId"])},
                                    {"first_name": 1, "last_name": 1, "specialization": 1})
        entry["doctorName"] = f"{doctor['first_name']} {doctor['last_name']}" if doctor else None
        entry["specialization"] = doctor.get("specialization") if doctor else None

    durations: Dict[str, List[float]] = {}
    for appt in db[APPOINTMENTS].find({
        "status": "completed",
        "consultation_start_time": {"$ne": None},
        "consultation_end_time": {"$ne": None},
    }, {"doctor_id": 1, "consultation_start_time": 1, "consultation_end_time": 1}):
        minutes = (appt["consultation_end_time"] - appt["consultation_start_time"]).total_seconds() / 60
        durations.setdefault(appt["doctor_id"], []).append(minutes)

    return {
        "doctorAppointments": ranked,
        "avgConsultationTime": [
            {"doctorId": d, "avgDuration": round(sum(v) / len(v), 2)} for d, v in sorted(durations.items())
        ],
        "period": period,
    }


def revenue(db: Database, period: str = "month") -> Dict[str, Any]:
    start, end = get_date_range(period)
    match = {"created_at": {"$gte": start, "$lte": end}, "is_paid": True}
    methods = _grouped(db, APPOINTMENTS, match, "payment_method", total_field="consultation_fee")
    trends: Dict[str, Dict[str, Any]] = {}
    for appt in db[APPOINTMENTS].find(match, {"created_at": 1, "consultation_fee": 1}):
        day = appt["created_at"].date().isoformat()
        bucket = trends.setdefault(day, {"date": day, "totalRevenue": 0, "count": 0})
        bucket["totalRevenue"] += appt.get("consultation_fee") or 0
        bucket["count"] += 1
    return {
        "revenueTrends": [trends[d] for d in sorted(trends)],
        "paymentMethods": methods,
        "totalRevenue": sum(row["total"] for row in methods),
        "period": period,
    }
