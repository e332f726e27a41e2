# api/routes/job_routes.py

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from api.security.service_auth import require_service_key
from api.services.followup_service import FollowupBatchProcessor
from api.services.lead_analysis import LeadAnalysisProcessor
from api.services.registry import ServiceRegistry, get_services

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1", tags=["Background Jobs"], dependencies=[Depends(require_service_key)])


class JobRequest(BaseModel):
    job_id: Optional[str] = None
    user_id: Optional[str] = None
    force_all: bool = False
    custom_prompt: Optional[str] = None


class LeadAnalysisRequest(BaseModel):
    custom_prompt: Optional[str] = None


def _continue(services: ServiceRegistry, job_id: str):
    try:
        return services.jobs.continue_job(job_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="Job not found")


def _start_or_continue(kind: str, request: Optional[JobRequest], services: ServiceRegistry):
    request = request or JobRequest()
    if request.job_id:
        return _continue(services, request.job_id)
    return services.jobs.start(kind, request.user_id, request.force_all, request.custom_prompt)


@router.post("/jobs/analyze-leads")
def start_lead_analysis(request: Optional[JobRequest] = None, services: ServiceRegistry = Depends(get_services)):
    return _start_or_continue(LeadAnalysisProcessor.kind, request, services)


@router.post("/jobs/followups")
def start_followup_job(request: Optional[JobRequest] = None, services: ServiceRegistry = Depends(get_services)):
    return _start_or_continue(FollowupBatchProcessor.kind, request, services)


@router.post("/jobs/{job_id}/continue")
def continue_job(job_id: str, services: ServiceRegistry = Depends(get_services)):
    return _continue(services, job_id)


@router.get("/jobs/{job_id}")
def get_job(job_id: str, services: ServiceRegistry = Depends(get_services)):
    job = services.jobs.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.post("/leads/{lead_id}/analyze")
def analyze_lead(lead_id: str, request: Optional[LeadAnalysisRequest] = None,
                 services: ServiceRegistry = Depends(get_services)):
    try:
        return services.lead_analysis.analyze_lead(lead_id, request.custom_prompt if request else None)
    except LookupError:
        raise HTTPException(status_code=404, detail="Lead not found")
