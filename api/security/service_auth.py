# api/security/service_auth.py

import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException

from config import AppConfig

logger = logging.getLogger(__name__)


def require_service_key(authorization: Optional[str] = Header(None)) -> str:
    """
    Internal routes (sync triggers, job continuations, follow-up actions) are
    called by the scheduler, the app backend and this service itself, all
    with `Authorization: Bearer <SERVICE_ROLE_KEY>`.
    """
    expected = AppConfig.SERVICE_ROLE_KEY
    if not expected:
        logger.error("❌ SERVICE_ROLE_KEY is not configured, rejecting internal call")
        raise HTTPException(status_code=503, detail="Service key not configured")

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), expected):
        raise HTTPException(status_code=401, detail="Unauthorized")
    return token
