"""Pipeline dependency for the route handlers."""
from fastapi import HTTPException, Request

from backend.services.pipeline import HRQueryPipeline


def get_pipeline(request: Request) -> HRQueryPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(503, "Service is starting up")
    return pipeline
