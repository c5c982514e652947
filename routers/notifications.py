from typing import Optional

from fastapi import APIRouter, Depends, Query
from pymongo.database import Database

import notifications
from authorization import Identity, get_current_user
from database import get_db
from errors import NotFoundError
from responses import paginate, paginated, success
from schemas import NotificationOut, to_out

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("")
def list_notifications(page: int = 1, limit: int = 20, is_read: Optional[bool] = Query(None, alias="isRead"),
                       user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    skip, limit, page = paginate(page, limit)
    items, total = notifications.list_notifications(db, user["_id"], skip, limit, is_read)
    return paginated([to_out(NotificationOut, n) for n in items], total, page, limit, "Notifications retrieved",
                     extra={"unreadCount": notifications.unread_count(db, user["_id"])})


@router.get("/unread-count")
def unread_count(user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    return success({"count": notifications.unread_count(db, user["_id"])}, "Unread count retrieved")


@router.put("/read-all")
def mark_all_as_read(user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    updated = notifications.mark_all_as_read(db, user["_id"])
    return success({"updated": updated}, "All notifications marked as read")


@router.put("/{id}/read")
def mark_as_read(id: str, user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    if not notifications.mark_as_read(db, id, user["_id"]):
        raise NotFoundError("Notification not found")
    return success(message="Notification marked as read")
