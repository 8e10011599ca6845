"""
FastAPI backend for the HR query gateway.
Run with: uvicorn backend.main:app --reload --port 8000
"""
import sys
import os
import uuid
import logging
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Ensure project root is importable
sys.path.insert(0, str(Path(__file__).parent.parent))
load_dotenv(Path(__file__).parent.parent / ".env")

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from backend.routes.query import router as query_router
from backend.services.config import GatewaySettings
from backend.services.pipeline import HRQueryPipeline, build_pipeline
from backend.services.response_composer import INVALID_BODY_MESSAGE
from backend.services.runtime import set_request_id, clear_context, log_event, shutdown_shared_executor

logger = logging.getLogger("backend")

if not logging.getLogger().handlers:
    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def create_app(
    pipeline: Optional[HRQueryPipeline] = None,
    settings: Optional[GatewaySettings] = None,
) -> FastAPI:
    settings = settings or GatewaySettings.from_env()
    app = FastAPI(title="HR Query Gateway", version="1.0.0")
    app.state.settings = settings
    app.state.pipeline = pipeline

    @app.on_event("startup")
    def build_resources():
        if app.state.pipeline is None:
            app.state.pipeline = build_pipeline(settings)
        log_event(logger, logging.INFO, "app_started", sql_mode=settings.sql_mode.value)

    @app.on_event("shutdown")
    def shutdown_workers():
        shutdown_shared_executor(wait=False)
        pipeline_ = app.state.pipeline
        store = getattr(pipeline_, "store", None)
        if store is not None and hasattr(store, "dispose"):
            store.dispose()

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        request_id = set_request_id(request.headers.get("x-request-id") or str(uuid.uuid4()))
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("request_failed request_id=%s path=%s", request_id, request.url.path)
            raise
        finally:
            clear_context()
        response.headers["x-request-id"] = request_id
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials="*" not in settings.allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def invalid_body_handler(request: Request, exc: RequestValidationError):
        log_event(logger, logging.WARNING, "request_body_invalid", path=request.url.path)
        return JSONResponse(status_code=400, content={"message": INVALID_BODY_MESSAGE})

    app.include_router(query_router)

    @app.get("/", response_class=PlainTextResponse)
    def root():
        return "AI Backend is running!"

    return app


app = create_app()
