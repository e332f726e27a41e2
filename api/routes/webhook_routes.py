# api/routes/webhook_routes.py

import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from api.services.registry import ServiceRegistry, get_services

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/webhooks", tags=["GHL Webhooks"])


@router.api_route("/ghl", methods=["GET", "HEAD"])
async def ghl_webhook_check():
    """GHL checks the endpoint before saving a webhook"""
    return {"status": "ok", "message": "GHL webhook endpoint is active"}


@router.post("/ghl")
async def ghl_webhook(request: Request, services: ServiceRegistry = Depends(get_services)):
    """
    Receive a GHL event. Always answers quickly; the follow-up work
    (analysis, follow-up drafts, learning) runs in background calls.
    """
    raw_body = await request.body()
    try:
        payload = json.loads(raw_body) if raw_body else {}
    except json.JSONDecodeError as e:
        logger.error(f"❌ Invalid JSON in GHL webhook: {e}")
        return JSONResponse(status_code=400, content={"success": False, "error": "Invalid JSON payload"})

    if not isinstance(payload, dict):
        return JSONResponse(status_code=400, content={"success": False, "error": "Payload must be an object"})

    status_code, body = await run_in_threadpool(services.webhooks.handle, payload)
    return JSONResponse(status_code=status_code, content=body)
