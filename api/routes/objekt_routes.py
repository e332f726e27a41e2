# api/routes/objekt_routes.py

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from api.security.service_auth import require_service_key
from api.services.objekt_matcher import ObjektMergeError
from api.services.registry import ServiceRegistry, get_services

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/objekte", tags=["Objekte"], dependencies=[Depends(require_service_key)])


class MatchRequest(BaseModel):
    lead_id: Optional[str] = None
    contact: Optional[Dict[str, Any]] = None
    label: Optional[str] = None
    user_id: Optional[str] = None


class MergeRequest(BaseModel):
    source_id: str
    target_id: str
    user_id: Optional[str] = None


@router.post("/match")
def match_objekt(request: MatchRequest, services: ServiceRegistry = Depends(get_services)):
    """Match a free-text label, or a lead's contact payload, to a listing"""
    if request.label:
        return {"success": True, **services.objekt_matcher.match_label(request.label.strip(), request.user_id)}
    if not request.lead_id or request.contact is None:
        raise HTTPException(status_code=400, detail="label or lead_id with contact is required")
    try:
        result = services.objekt_matcher.match_contact(request.lead_id, request.contact)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"success": True, **result}


@router.post("/merge")
def merge_objekte(request: MergeRequest, services: ServiceRegistry = Depends(get_services)):
    try:
        result = services.objekt_matcher.merge(request.source_id, request.target_id, request.user_id)
    except ObjektMergeError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    if not result["success"]:
        return JSONResponse(status_code=500, content=result)
    return result
