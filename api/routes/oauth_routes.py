# api/routes/oauth_routes.py

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from api.services.registry import ServiceRegistry, get_services

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/oauth", tags=["GHL OAuth"])


@router.get("/callback")
async def oauth_callback(request: Request, services: ServiceRegistry = Depends(get_services)):
    """GHL redirects here after the install; the app is sent on via its deep link."""
    params = dict(request.query_params)
    try:
        target = await run_in_threadpool(services.oauth.handle_callback, params)
    except SQLAlchemyError as e:
        logger.error(f"❌ OAuth callback could not store the connection: {e}")
        target = services.oauth.redirect_url(False, "Fehler beim Speichern der Verbindung")
    return RedirectResponse(url=target, status_code=302)
