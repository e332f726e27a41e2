# api/services/oauth_service.py

import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from config import AppConfig
from api.services.ghl_api import GoHighLevelAPI, GHLAPIError
from api.services.ghl_token_manager import TokenManager, TokenRefreshError
from database.models import ApprovedSubaccount, GHLConnection, model_to_dict, utcnow
from database.simple_connection import SimpleDatabase

logger = logging.getLogger(__name__)

WEBHOOK_SUBSCRIPTIONS = [
    ("Simpli.Immo - Inbound Messages", ["InboundMessage"]),
    ("Simpli.Immo - Outbound Messages", ["OutboundMessage"]),
    ("Simpli.Immo - Contacts", ["ContactCreate", "ContactUpdate"]),
]

SUCCESS_MESSAGE = "Erfolgreich mit GoHighLevel verbunden"


class OAuthService:
    """Completes the GoHighLevel OAuth install flow and stores the connection"""

    def __init__(self, db: SimpleDatabase, config=AppConfig, http_session: Optional[requests.Session] = None):
        self.db = db
        self.config = config
        self.http_session = http_session
        self.token_manager = TokenManager(db, config, http_session)

    def redirect_url(self, success: bool, message: str) -> str:
        base = self.config.APP_SUCCESS_REDIRECT if success else self.config.APP_ERROR_REDIRECT
        return f"{base}?message={quote(message)}"

    def is_location_approved(self, location_id: str) -> bool:
        with self.db.session_scope() as session:
            entry = (
                session.query(ApprovedSubaccount)
                .filter(ApprovedSubaccount.location_id == location_id, ApprovedSubaccount.is_active.is_(True))
                .first()
            )
            return entry is not None and (entry.expires_at is None or entry.expires_at > utcnow())

    def handle_callback(self, params: Dict[str, Any]) -> str:
        """Run the callback for the given query parameters; returns the app redirect URL."""
        if params.get("error"):
            logger.error(f"❌ OAuth error from GHL: {params.get('error')} {params.get('error_description')}")
            return self.redirect_url(False, params.get("error_description") or params["error"])

        code = params.get("code")
        state = params.get("state")
        if not code:
            return self.redirect_url(False, "Kein Autorisierungscode erhalten")
        if not state:
            return self.redirect_url(False, "Benutzer-ID fehlt")
        try:
            user_id = str(uuid.UUID(state))
        except ValueError:
            logger.error(f"❌ Invalid user id in OAuth state: {state}")
            return self.redirect_url(False, "Ungültige Benutzer-ID")

        try:
            tokens = self.token_manager.exchange_code(code)
        except (TokenRefreshError, requests.RequestException) as e:
            return self.redirect_url(False, f"Token-Austausch fehlgeschlagen: {e}")

        location_id = tokens.get("locationId")
        if not tokens.get("access_token") or not location_id:
            logger.error(f"❌ Invalid token response: {list(tokens.keys())}")
            return self.redirect_url(False, "Ungültige Token-Antwort von GoHighLevel")

        if not self.is_location_approved(location_id):
            logger.warning(f"🚫 Location {location_id} is not approved")
            return self.redirect_url(False, "Dieser Account ist nicht freigeschaltet")

        client = GoHighLevelAPI(tokens["access_token"], location_id, self.config, session=self.http_session)
        try:
            location = client.get_location()
        except (GHLAPIError, requests.RequestException) as e:
            logger.warning(f"⚠️ Could not load location details for {location_id}: {e}")
            location = {}

        connection = self.save_connection(user_id, tokens, location)
        webhook_result = self.register_webhooks(client)

        self.db.log_sync("oauth", "success", user_id=user_id, connection_id=connection["id"], details={
            "location_id": location_id,
            "scopes": tokens.get("scope"),
            "webhooks_registered": not webhook_result["errors"],
            "webhook_ids": webhook_result["webhook_ids"],
        })
        logger.info(f"✅ OAuth connection stored for user {user_id}, location {location_id}")
        return self.redirect_url(True, SUCCESS_MESSAGE)

    def save_connection(self, user_id: str, tokens: Dict[str, Any], location: Dict[str, Any]) -> Dict[str, Any]:
        """Upsert by user id; other active connections of the location are switched off first."""
        location_id = tokens["locationId"]
        data = {
            "location_id": location_id,
            "company_id": tokens.get("companyId"),
            "ghl_user_id": tokens.get("userId"),
            "access_token": tokens["access_token"],
            "refresh_token": tokens.get("refresh_token") or "",
            "token_expires_at": utcnow() + timedelta(seconds=int(tokens.get("expires_in") or 86400)),
            "scope": tokens.get("scope"),
            "location_name": location.get("name"),
            "location_email": location.get("email"),
            "location_timezone": location.get("timezone"),
            "is_active": True,
            "last_sync_at": None,
        }

        with self.db.session_scope() as session:
            session.query(GHLConnection).filter(
                GHLConnection.location_id == location_id,
                GHLConnection.user_id != user_id,
                GHLConnection.is_active.is_(True),
            ).update({"is_active": False}, synchronize_session=False)

            connection = session.query(GHLConnection).filter(GHLConnection.user_id == user_id).first()
            if connection is None:
                connection = GHLConnection(user_id=user_id, **data)
                session.add(connection)
            else:
                for key, value in data.items():
                    setattr(connection, key, value)
            session.flush()
            return model_to_dict(connection)

    def register_webhooks(self, client: GoHighLevelAPI) -> Dict[str, List]:
        webhook_url = self.config.GHL_WEBHOOK_URL
        try:
            existing = [w for w in client.list_webhooks() if w.get("url") == webhook_url]
        except (GHLAPIError, requests.RequestException) as e:
            logger.warning(f"⚠️ Could not list webhooks, registering anyway: {e}")
            existing = []
        if existing:
            logger.info(f"ℹ️ {len(existing)} webhooks already registered")
            return {"webhook_ids": [w.get("id") for w in existing], "errors": []}

        webhook_ids, errors = [], []
        for name, events in WEBHOOK_SUBSCRIPTIONS:
            try:
                created = client.create_webhook(name, webhook_url, events)
                webhook_ids.append(created.get("id") or (created.get("webhook") or {}).get("id"))
            except (GHLAPIError, requests.RequestException) as e:
                logger.error(f"❌ Webhook registration '{name}' failed: {e}")
                errors.append(f"{name}: {e}")
        return {"webhook_ids": webhook_ids, "errors": errors}
