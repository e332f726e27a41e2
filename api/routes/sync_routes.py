# api/routes/sync_routes.py

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from api.security.service_auth import require_service_key
from api.services.ghl_sync_service import SYNC_TYPES
from api.services.registry import ServiceRegistry, get_services

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1", tags=["GHL Sync"], dependencies=[Depends(require_service_key)])


class SyncRequest(BaseModel):
    user_id: Optional[str] = None
    connection_id: Optional[str] = None
    sync_type: str = "full"


class TodoCompletion(BaseModel):
    completed: bool = True


@router.post("/sync")
def run_sync(request: SyncRequest, services: ServiceRegistry = Depends(get_services)):
    """Polling sync for one user, one connection or every active connection"""
    if request.sync_type not in SYNC_TYPES:
        raise HTTPException(status_code=400, detail=f"sync_type must be one of {', '.join(SYNC_TYPES)}")
    return services.sync_service.sync(
        user_id=request.user_id, sync_type=request.sync_type, connection_id=request.connection_id
    )


@router.post("/sync/pipeline-stages")
def sync_pipeline_stages(services: ServiceRegistry = Depends(get_services)):
    return services.pipeline_sync.sync()


@router.post("/connections/{connection_id}/disconnect")
def disconnect(connection_id: str, services: ServiceRegistry = Depends(get_services)):
    if not services.db.deactivate_connection(connection_id):
        raise HTTPException(status_code=404, detail="Connection not found")
    return {"success": True, "connection_id": connection_id, "is_active": False}


@router.post("/todos/{todo_id}/complete")
def complete_todo(todo_id: str, request: Optional[TodoCompletion] = None,
                  services: ServiceRegistry = Depends(get_services)):
    completed = request.completed if request else True
    try:
        return services.sync_service.complete_todo(todo_id, completed)
    except LookupError:
        raise HTTPException(status_code=404, detail="Todo not found")


@router.get("/stats")
def stats(services: ServiceRegistry = Depends(get_services)):
    return {"success": True, "tables": services.db.get_stats()}
