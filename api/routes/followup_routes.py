# api/routes/followup_routes.py

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from api.security.service_auth import require_service_key
from api.services.auto_responder import AutoResponseError
from api.services.followup_service import FollowupError
from api.services.knowledge_service import KnowledgeError
from api.services.registry import ServiceRegistry, get_services

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1", tags=["Follow-ups"], dependencies=[Depends(require_service_key)])


class GenerateRequest(BaseModel):
    lead_id: str


class ApproveRequest(BaseModel):
    message: Optional[str] = None


class AutoRespondRequest(BaseModel):
    lead_id: Optional[str] = None
    message_content: Optional[str] = None


class AutoRespondSetting(BaseModel):
    enabled: bool


class LearnRequest(BaseModel):
    lead_id: Optional[str] = None
    user_id: Optional[str] = None
    response_content: Optional[str] = None


def _raise(error):
    raise HTTPException(status_code=error.status_code, detail=error.message)


@router.post("/followups/generate")
def generate_followup(request: GenerateRequest, services: ServiceRegistry = Depends(get_services)):
    try:
        return {"success": True, "approval": services.followups.generate(request.lead_id)}
    except FollowupError as e:
        _raise(e)


@router.post("/followups/{approval_id}/approve")
def approve_followup(approval_id: str, request: Optional[ApproveRequest] = None,
                     services: ServiceRegistry = Depends(get_services)):
    try:
        return {"success": True, "approval": services.followups.approve(approval_id, request.message if request else None)}
    except FollowupError as e:
        _raise(e)


@router.post("/followups/{approval_id}/reject")
def reject_followup(approval_id: str, services: ServiceRegistry = Depends(get_services)):
    try:
        return {"success": True, "approval": services.followups.reject(approval_id)}
    except FollowupError as e:
        _raise(e)


@router.post("/followups/{approval_id}/expire")
def expire_followup(approval_id: str, services: ServiceRegistry = Depends(get_services)):
    try:
        return {"success": True, "approval": services.followups.expire(approval_id)}
    except FollowupError as e:
        _raise(e)


@router.post("/followups/{approval_id}/send")
def send_followup(approval_id: str, services: ServiceRegistry = Depends(get_services)):
    try:
        return {"success": True, "approval": services.followups.send(approval_id)}
    except FollowupError as e:
        _raise(e)


@router.post("/knowledge/learn")
def learn_response(request: LearnRequest, services: ServiceRegistry = Depends(get_services)):
    if not request.lead_id or not request.user_id or not request.response_content:
        raise HTTPException(status_code=400, detail="lead_id, user_id and response_content are required")
    try:
        return services.knowledge.learn_from_response(request.lead_id, request.user_id, request.response_content)
    except KnowledgeError as e:
        _raise(e)


@router.post("/messages/auto-respond")
def auto_respond(request: AutoRespondRequest, services: ServiceRegistry = Depends(get_services)):
    try:
        return services.auto_responder.respond(request.lead_id, request.message_content)
    except AutoResponseError as e:
        _raise(e)


@router.put("/leads/{lead_id}/auto-respond")
def set_auto_respond(lead_id: str, setting: AutoRespondSetting, services: ServiceRegistry = Depends(get_services)):
    try:
        return services.auto_responder.set_enabled(lead_id, setting.enabled)
    except AutoResponseError as e:
        _raise(e)
