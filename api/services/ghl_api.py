# api/services/ghl_api.py

import requests
import logging
from typing import Any, Dict, List, Optional

from config import AppConfig

logger = logging.getLogger(__name__)


class GHLAPIError(Exception):
    """Non-2xx response from the GoHighLevel API"""

    def __init__(self, status_code: int, message: str, url: str = ""):
        super().__init__(f"GHL API {status_code} for {url}: {message}")
        self.status_code = status_code
        self.message = message
        self.url = url


def extract_messages(payload: Any) -> List[Dict]:
    """
    The messages endpoint answers in several shapes: a bare list,
    {messages: [...]}, {messages: {messages: [...]}} or {data: [...]}.
    """
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        return []
    messages = payload.get("messages")
    if isinstance(messages, list):
        return messages
    if isinstance(messages, dict) and isinstance(messages.get("messages"), list):
        return messages["messages"]
    if isinstance(payload.get("data"), list):
        return payload["data"]
    return []


class GoHighLevelAPI:
    """GHL API v2 client bound to one location's OAuth access token"""

    def __init__(self, access_token: str, location_id: Optional[str] = None,
                 config=AppConfig, session: Optional[requests.Session] = None):
        if not access_token:
            raise ValueError("access_token must be provided")
        self.location_id = location_id
        self.base_url = config.GHL_API_BASE.rstrip("/")
        self.timeout = config.HTTP_TIMEOUT
        self.session = session or requests.Session()
        self.headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Version": config.GHL_API_VERSION,
        }

    def _url(self, path_or_url: str) -> str:
        if path_or_url.startswith("http"):
            return path_or_url
        return f"{self.base_url}{path_or_url}"

    def _request(self, method: str, path_or_url: str, params: Optional[Dict] = None,
                 json: Optional[Dict] = None, allow_404: bool = False) -> Any:
        url = self._url(path_or_url)
        logger.debug(f"🌐 {method} {url} params={params}")
        response = self.session.request(
            method, url, headers=self.headers, params=params, json=json, timeout=self.timeout
        )

        if allow_404 and response.status_code == 404:
            return None
        if not 200 <= response.status_code < 300:
            logger.error(f"❌ GHL {method} {url} failed: {response.status_code} - {response.text[:300]}")
            raise GHLAPIError(response.status_code, response.text[:500], url)

        if not response.text:
            return {}
        return response.json()

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    def get_contacts_page(self, page_url: Optional[str] = None, limit: int = 100) -> Dict:
        """
        One page of contacts. Pass the previous page's meta.nextPageUrl to
        continue; returns {"contacts": [...], "next_page_url": str|None}.
        """
        if page_url:
            data = self._request("GET", page_url)
        else:
            data = self._request("GET", "/contacts/", params={"locationId": self.location_id, "limit": limit})
        meta = data.get("meta") or {}
        return {
            "contacts": data.get("contacts", []),
            "next_page_url": meta.get("nextPageUrl") or None,
        }

    def get_contact(self, contact_id: str) -> Optional[Dict]:
        data = self._request("GET", f"/contacts/{contact_id}", allow_404=True)
        if data is None:
            return None
        return data.get("contact", data)

    def get_contact_tasks(self, contact_id: str) -> List[Dict]:
        """Tasks of one contact; a 404 means the contact has none."""
        data = self._request("GET", f"/contacts/{contact_id}/tasks", allow_404=True)
        if not data:
            return []
        return data.get("tasks", [])

    def update_contact_task(self, contact_id: str, task_id: str, update_data: Dict) -> Dict:
        return self._request("PUT", f"/contacts/{contact_id}/tasks/{task_id}", json=update_data)

    def set_task_completed(self, contact_id: str, task_id: str, completed: bool) -> Dict:
        """Mark a task (un)completed, via the status endpoint with a task-update fallback."""
        try:
            return self._request(
                "PUT", f"/contacts/{contact_id}/tasks/{task_id}/completed", json={"completed": completed}
            )
        except GHLAPIError as e:
            logger.warning(f"🔄 Task completion endpoint failed ({e.status_code}), updating task instead")
            return self.update_contact_task(
                contact_id, task_id,
                {"completed": completed, "status": "completed" if completed else "pending"},
            )

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def get_conversations(self, contact_id: str) -> List[Dict]:
        """Conversations of a contact, via the list endpoint with a search fallback."""
        params = {"locationId": self.location_id, "contactId": contact_id}
        try:
            data = self._request("GET", "/conversations/", params=params)
        except GHLAPIError as e:
            logger.warning(f"🔄 Conversation list failed ({e.status_code}), trying search endpoint")
            data = self._request("GET", "/conversations/search", params=params)
        return data.get("conversations", [])

    def get_conversation_messages(self, conversation_id: str) -> List[Dict]:
        data = self._request("GET", f"/conversations/{conversation_id}/messages")
        return extract_messages(data)

    def send_message(self, contact_id: str, message: str, message_type: str = "WhatsApp") -> Dict:
        payload = {"type": message_type, "contactId": contact_id, "message": message}
        return self._request("POST", "/conversations/messages", json=payload)

    # ------------------------------------------------------------------
    # Calendars
    # ------------------------------------------------------------------

    def get_calendars(self) -> List[Dict]:
        data = self._request("GET", "/calendars/", params={"locationId": self.location_id})
        return data.get("calendars", [])

    def get_calendar_events(self, calendar_id: str, start_ms: int, end_ms: int) -> List[Dict]:
        params = {
            "locationId": self.location_id,
            "calendarId": calendar_id,
            "startTime": start_ms,
            "endTime": end_ms,
        }
        data = self._request("GET", "/calendars/events", params=params)
        return data.get("events", [])

    # ------------------------------------------------------------------
    # Opportunities
    # ------------------------------------------------------------------

    def get_pipelines(self) -> List[Dict]:
        data = self._request("GET", "/opportunities/pipelines", params={"locationId": self.location_id})
        return data.get("pipelines", [])

    def search_opportunities(self, page: int = 1, limit: int = 100) -> Dict:
        """
        One page of opportunities; POST search with a GET fallback.
        Returns {"opportunities": [...], "total": int|None}; total is None
        when GHL sends no meta.total.
        """
        try:
            data = self._request(
                "POST", "/opportunities/search",
                json={"locationId": self.location_id, "limit": limit, "page": page},
            )
        except GHLAPIError as e:
            logger.warning(f"🔄 Opportunity POST search failed ({e.status_code}), using GET")
            data = self._request(
                "GET", "/opportunities/search",
                params={"location_id": self.location_id, "limit": limit, "page": page},
            )
        opportunities = data.get("opportunities", [])
        meta = data.get("meta") or {}
        return {"opportunities": opportunities, "total": meta.get("total")}

    # ------------------------------------------------------------------
    # Location / webhooks
    # ------------------------------------------------------------------

    def get_location(self, location_id: Optional[str] = None) -> Dict:
        data = self._request("GET", f"/locations/{location_id or self.location_id}")
        return data.get("location", data)

    def list_webhooks(self) -> List[Dict]:
        data = self._request("GET", "/webhooks/", params={"locationId": self.location_id})
        return data.get("webhooks", [])

    def create_webhook(self, name: str, url: str, events: List[str]) -> Dict:
        payload = {"locationId": self.location_id, "name": name, "url": url, "events": events}
        return self._request("POST", "/webhooks/", json=payload)
