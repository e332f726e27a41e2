# api/services/ghl_token_manager.py

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import requests

from config import AppConfig
from database.models import utcnow
from database.simple_connection import SimpleDatabase

logger = logging.getLogger(__name__)


class TokenRefreshError(Exception):
    """Refresh-token exchange failed; the connection has been deactivated"""

    def __init__(self, connection_id: str, message: str):
        super().__init__(message)
        self.connection_id = connection_id


class TokenManager:
    """Keeps a connection's OAuth access token fresh"""

    def __init__(self, db: SimpleDatabase, config=AppConfig, session: Optional[requests.Session] = None):
        self.db = db
        self.config = config
        self.session = session or requests.Session()
        self.lookahead = timedelta(seconds=config.TOKEN_REFRESH_LOOKAHEAD_SECONDS)

    def needs_refresh(self, connection: Dict[str, Any], now: Optional[datetime] = None) -> bool:
        expires_at = connection.get("token_expires_at")
        if expires_at is None:
            return True
        return expires_at <= (now or utcnow()) + self.lookahead

    def _post_token(self, form: Dict[str, str]) -> requests.Response:
        data = {
            "client_id": self.config.GHL_CLIENT_ID,
            "client_secret": self.config.GHL_CLIENT_SECRET,
            **form,
        }
        return self.session.request(
            "POST",
            self.config.GHL_TOKEN_URL,
            headers={"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"},
            data=data,
            timeout=self.config.HTTP_TIMEOUT,
        )

    def ensure_valid_token(self, connection: Dict[str, Any]) -> Dict[str, Any]:
        """
        Return the connection with a usable access token, refreshing it when it
        expires within the lookahead window. A failed refresh deactivates the
        connection and raises TokenRefreshError.
        """
        if not self.needs_refresh(connection):
            return connection

        connection_id = connection["id"]
        logger.info(f"🔄 Refreshing token for connection {connection_id} (location {connection.get('location_id')})")

        try:
            response = self._post_token({
                "grant_type": "refresh_token",
                "refresh_token": connection.get("refresh_token") or "",
            })
        except requests.RequestException as e:
            logger.error(f"❌ Token refresh request failed for {connection_id}: {e}")
            self.db.deactivate_connection(connection_id)
            raise TokenRefreshError(connection_id, f"Token refresh failed - connection deactivated ({e})")

        if not 200 <= response.status_code < 300:
            logger.error(f"❌ Token refresh failed for {connection_id}: {response.status_code} - {response.text[:200]}")
            self.db.deactivate_connection(connection_id)
            raise TokenRefreshError(connection_id, "Token refresh failed - connection deactivated")

        tokens = response.json()
        updates = {
            "access_token": tokens["access_token"],
            "refresh_token": tokens.get("refresh_token") or connection.get("refresh_token"),
            "token_expires_at": utcnow() + timedelta(seconds=int(tokens.get("expires_in", 86399))),
        }
        self.db.update_connection(connection_id, updates)
        logger.info(f"✅ Token refreshed for connection {connection_id}")
        return {**connection, **updates}

    def exchange_code(self, code: str) -> Dict[str, Any]:
        """Authorization-code exchange; raises TokenRefreshError on a non-2xx answer."""
        response = self._post_token({
            "grant_type": "authorization_code",
            "code": code,
            "user_type": "Location",
            "redirect_uri": self.config.OAUTH_REDIRECT_URI,
        })
        if not 200 <= response.status_code < 300:
            logger.error(f"❌ Code exchange failed: {response.status_code} - {response.text[:200]}")
            raise TokenRefreshError("", f"Token exchange failed: {response.status_code}")
        return response.json()
