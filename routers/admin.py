from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pymongo.database import Database

import audit
import identity
import profiles
from audit import ClientInfo, client_info
from authorization import Identity, require_roles
from database import get_db
from errors import NotFoundError
from responses import paginate, paginated, success
from schemas import AuditLogOut, ReviewRequest, Role, SuspiciousRequest, to_out, user_out

admin_only = require_roles("admin")

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(admin_only)])


@router.get("/users")
def list_users(page: int = 1, limit: int = 10, role: Optional[Role] = None, search: Optional[str] = None,
               db: Database = Depends(get_db)):
    skip, limit, page = paginate(page, limit)
    items, total = profiles.search(db, role=role, text=search, skip=skip, limit=limit)
    return paginated([user_out(u) for u in items], total, page, limit, "Users retrieved")


@router.put("/users/{id}/toggle-status")
def toggle_status(id: str, user: Identity = Depends(admin_only), db: Database = Depends(get_db),
                  client: ClientInfo = Depends(client_info)):
    updated = profiles.toggle_status(db, id, user, client)
    state = "activated" if updated["is_active"] else "deactivated"
    return success(user_out(updated), f"User {state} successfully")


@router.get("/statistics")
def statistics(db: Database = Depends(get_db)):
    return success(profiles.system_statistics(db), "System statistics retrieved")


@router.get("/audit-logs")
def audit_logs(page: int = 1, limit: int = 50, action: Optional[str] = None,
               user_id: Optional[str] = Query(None, alias="userId"),
               start_date: Optional[datetime] = Query(None, alias="startDate"),
               end_date: Optional[datetime] = Query(None, alias="endDate"),
               db: Database = Depends(get_db)):
    skip, limit, page = paginate(page, limit, max_limit=200)
    logs = audit.get_user_activity(db, user_id, limit=limit, skip=skip, action=action,
                                   start_date=start_date, end_date=end_date)
    total = audit.count_activity(db, user_id, action)
    return paginated([to_out(AuditLogOut, log) for log in logs], total, page, limit, "Audit logs retrieved")


@router.get("/audit-logs/statistics")
def audit_statistics(start_date: Optional[datetime] = Query(None, alias="startDate"),
                     end_date: Optional[datetime] = Query(None, alias="endDate"),
                     db: Database = Depends(get_db)):
    return success(audit.get_statistics(db, start_date, end_date), "Audit statistics retrieved")


@router.get("/audit-logs/failed-logins")
def failed_logins(hours: int = 24, ip: Optional[str] = None, db: Database = Depends(get_db)):
    logs = audit.get_failed_logins(db, hours=hours, ip_address=ip)
    return success([to_out(AuditLogOut, log) for log in logs], "Failed logins retrieved")


@router.get("/audit-logs/suspicious")
def suspicious(page: int = 1, limit: int = 50, db: Database = Depends(get_db)):
    skip, limit, page = paginate(page, limit, max_limit=200)
    logs = audit.get_suspicious_activities(db, limit=limit, skip=skip)
    return success([to_out(AuditLogOut, log) for log in logs], "Suspicious activities retrieved")


@router.get("/audit-logs/resource/{resource_type}/{resource_id}")
def resource_history(resource_type: str, resource_id: str, db: Database = Depends(get_db)):
    logs = audit.get_resource_history(db, resource_type, resource_id)
    return success([to_out(AuditLogOut, log) for log in logs], "Resource history retrieved")


@router.put("/audit-logs/{id}/review")
def review(id: str, payload: Optional[ReviewRequest] = None, user: Identity = Depends(admin_only),
           db: Database = Depends(get_db)):
    log = audit.mark_as_reviewed(db, id, user["_id"], payload.notes if payload else None)
    if log is None:
        raise NotFoundError("Audit log not found")
    return success(to_out(AuditLogOut, log), "Audit log marked as reviewed")


@router.put("/audit-logs/{id}/suspicious")
def flag_suspicious(id: str, payload: SuspiciousRequest, db: Database = Depends(get_db)):
    log = audit.mark_as_suspicious(db, id, payload.reason)
    if log is None:
        raise NotFoundError("Audit log not found")
    return success(to_out(AuditLogOut, log), "Audit log flagged as suspicious")


@router.get("/users/{id}/anomalies")
def anomalies(id: str, hours: int = 24, db: Database = Depends(get_db)):
    identity.get_user(db, id)
    return success({"userId": id, "windowHours": hours, "anomalies": audit.detect_anomalies(db, id, hours)},
                   "Anomaly scan complete")
