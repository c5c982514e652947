"""Response envelope helpers: ``{success, message, data?, pagination?}``."""
import math
from typing import Any, Dict, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel


def _encode(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json", by_alias=True)
    if isinstance(data, list):
        return [_encode(item) for item in data]
    if isinstance(data, dict):
        return {key: _encode(value) for key, value in data.items()}
    return jsonable_encoder(data)


def success(data: Any = None, message: str = "Success", status_code: int = 200) -> JSONResponse:
    body: Dict[str, Any] = {"success": True, "message": message}
    if data is not None:
        body["data"] = _encode(data)
    return JSONResponse(body, status_code=status_code)


def created(data: Any, message: str = "Resource created successfully") -> JSONResponse:
    return success(data, message, status_code=201)


def pagination_meta(total: int, page: int, limit: int) -> Dict[str, Any]:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "totalPages": total_pages,
        "hasNextPage": page < total_pages,
        "hasPrevPage": page > 1,
    }


def paginated(data: Any, total: int, page: int, limit: int, message: str = "Success",
              extra: Optional[Dict[str, Any]] = None) -> JSONResponse:
    body: Dict[str, Any] = {
        "success": True,
        "message": message,
        "data": _encode(data),
        "pagination": pagination_meta(total, page, limit),
    }
    if extra:
        body.update(extra)
    return JSONResponse(body)


def paginate(page: int = 1, limit: int = 10, max_limit: int = 100):
    page = max(page, 1)
    limit = min(max(limit, 1), max_limit)
    return (page - 1) * limit, limit, page
