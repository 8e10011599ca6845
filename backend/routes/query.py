"""Natural-language HR query route."""
import asyncio
import logging
from contextvars import copy_context
from typing import Optional

from fastapi import APIRouter, Depends, Header
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from backend.routes.deps import get_pipeline
from backend.services.pipeline import HRQueryPipeline
from backend.services.response_composer import MISSING_INPUT_MESSAGE
from backend.services.runtime import log_event, set_caller

router = APIRouter(tags=["query"])
logger = logging.getLogger("query_route")


class QueryRequest(BaseModel):
    prompt: Optional[str] = None


@router.post("/ai-query")
async def ai_query(
    req: Optional[QueryRequest] = None,
    x_user_id: Optional[str] = Header(None),
    x_organization_id: Optional[str] = Header(None),
    pipeline: HRQueryPipeline = Depends(get_pipeline),
):
    prompt = ((req.prompt if req else None) or "").strip()
    user_id = (x_user_id or "").strip()
    organization_id = (x_organization_id or "").strip()
    if not prompt or not user_id or not organization_id:
        set_caller(user_id, organization_id)
        log_event(
            logger,
            logging.WARNING,
            "request_missing_input",
            has_prompt=bool(prompt),
            has_user_id=bool(user_id),
            has_organization_id=bool(organization_id),
        )
        return JSONResponse(status_code=400, content={"message": MISSING_INPUT_MESSAGE})

    loop = asyncio.get_running_loop()
    ctx = copy_context()
    result = await loop.run_in_executor(
        None,
        lambda: ctx.run(pipeline.handle, prompt, user_id, organization_id),
    )
    return JSONResponse(status_code=result.status_code, content=jsonable_encoder(result.body))
