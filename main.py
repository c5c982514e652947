import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from pymongo.errors import PyMongoError

import database
from config import get_settings
from database import ensure_indexes
from errors import register_exception_handlers
from logging_config import bind_context, clear_context, configure_logging, get_logger
from routers import api_router

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level, json_logs=settings.is_production)
    if database.db is not None:
        try:
            ensure_indexes(database.db)
        except PyMongoError as exc:
            logger.error("index_setup_failed", error=str(exc))
    logger.info("startup", environment=settings.environment)
    yield


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="Hospital Management API", lifespan=lifespan)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        clear_context()
        bind_context(method=request.method, path=request.url.path)
        return await call_next(request)

    register_exception_handlers(app)
    app.include_router(api_router)

    @app.get("/")
    def root():
        return {"success": True, "message": "Hospital Management API is running"}

    @app.get("/health")
    def health():
        status = {
            "success": True,
            "message": "OK",
            "environment": settings.environment,
            "database": "not configured",
        }
        if database.db is not None:
            try:
                database.db.command("ping")
                status["database"] = "connected"
            except PyMongoError as exc:
                status["database"] = f"error: {str(exc)[:50]}"
        return status

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
