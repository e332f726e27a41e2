"""
GHL Entity Mapper - pure transforms from raw GoHighLevel payloads to local rows.

Nothing here touches the database or the network. Missing optional fields
fall back to documented defaults; only a missing external id raises
MappingError so the caller can skip the record and count an error.
"""

import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from utils.ghl_contact_classifier import (
    get_lead_status_from_tags,
    get_todo_priority,
    get_todo_type,
)

UNKNOWN_NAME = "Unbekannt"
DEFAULT_TASK_TITLE = "Aufgabe"
DEFAULT_APPOINTMENT_TITLE = "Termin"
APPOINTMENT_TODO_TYPE = "besichtigung"

WINDOW_EXPIRED_ERROR = "24-Stunden-Fenster abgelaufen. Bitte eine Vorlage verwenden."
DELIVERY_FAILED_ERROR = "Nachricht konnte nicht zugestellt werden"


class MappingError(ValueError):
    """Raised when a payload lacks the external id needed to store it"""


def _require_id(payload: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = payload.get(key)
        if value:
            return str(value)
    raise MappingError(f"Payload has none of the id fields {keys}")


# ---------------------------------------------------------------------------
# Primitive helpers
# ---------------------------------------------------------------------------

def parse_ghl_datetime(value: Any) -> Optional[datetime]:
    """
    Parse ISO strings ('...Z' or with offset), epoch milliseconds (int or
    digit string) or datetimes into a naive UTC datetime.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        parsed = datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    elif isinstance(value, str):
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


_HTML_TAG_RE = re.compile(r"<[^>]*>")
_HTML_ENTITIES = {
    "&nbsp;": " ",
    "&amp;": "&",
    "&lt;": "<",
    "&gt;": ">",
    "&quot;": '"',
    "&#39;": "'",
}


def strip_html(value: Optional[str]) -> str:
    if not value:
        return ""
    text = _HTML_TAG_RE.sub("", value)
    for entity, replacement in _HTML_ENTITIES.items():
        text = text.replace(entity, replacement)
    return text.strip()


def normalize_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    email = email.strip().lower()
    return email or None


def build_contact_name(contact: Dict[str, Any]) -> str:
    first = (contact.get("firstName") or "").strip()
    last = (contact.get("lastName") or "").strip()
    name = f"{first} {last}".strip()
    if not name:
        name = (contact.get("name") or contact.get("contactName") or "").strip()
    return name or UNKNOWN_NAME


# ---------------------------------------------------------------------------
# Contact -> Lead
# ---------------------------------------------------------------------------

def map_contact_to_lead(contact: Dict[str, Any], connection: Dict[str, Any]) -> Dict[str, Any]:
    """Lead row for a GHL contact, keyed by ghl_contact_id."""
    contact_id = _require_id(contact, "id", "contactId")
    custom_fields = contact.get("customFields") or contact.get("customField")

    return {
        "ghl_contact_id": contact_id,
        "ghl_location_id": contact.get("locationId") or connection.get("location_id"),
        "user_id": connection.get("user_id"),
        "connection_id": connection.get("id"),
        "name": build_contact_name(contact),
        "email": normalize_email(contact.get("email")),
        "phone": contact.get("phone") or None,
        "status": get_lead_status_from_tags(contact),
        "source": "extern",
        "notes": json.dumps(custom_fields, ensure_ascii=False) if custom_fields else None,
        "ghl_data": contact,
    }


# ---------------------------------------------------------------------------
# Message -> Message
# ---------------------------------------------------------------------------

def map_direction(direction: Optional[str]) -> str:
    return "incoming" if (direction or "").lower() == "inbound" else "outgoing"


def map_delivery_status(status: Optional[str], message_type: str,
                        error: Optional[str] = None) -> Tuple[str, Optional[str]]:
    """
    Returns (local_status, error_message). Failures that mention the
    messaging window get the template hint; other failures keep GHL's
    error text, or a generic error when there is none.
    """
    normalized = (status or "").strip().lower()

    if normalized == "read":
        return "read", None
    if normalized in ("delivered", "sent", "completed"):
        return "delivered", None
    if normalized in ("failed", "undelivered", "error"):
        error_text = (error or "").lower()
        if any(marker in error_text for marker in ("24", "window", "session", "template")):
            return "failed", WINDOW_EXPIRED_ERROR
        return "failed", error or DELIVERY_FAILED_ERROR
    if normalized in ("pending", "queued", "sending"):
        return "pending", None

    # No usable status reported
    return ("delivered" if message_type == "incoming" else "sent"), None


def extract_message_body(message: Dict[str, Any]) -> str:
    for key in ("body", "message", "text", "content"):
        value = message.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


def extract_message_error(message: Dict[str, Any]) -> Optional[str]:
    error = message.get("error") or message.get("errorMessage")
    if isinstance(error, dict):
        error = error.get("message") or error.get("description") or json.dumps(error)
    meta = message.get("meta") or {}
    if not error and isinstance(meta, dict):
        error = meta.get("error")
    return str(error) if error else None


def map_message(message: Dict[str, Any], lead_id: str,
                conversation_id: Optional[str] = None,
                default_direction: Optional[str] = None) -> Dict[str, Any]:
    """Message row for a GHL message, keyed by ghl_message_id."""
    message_id = _require_id(message, "id", "messageId")
    message_type = map_direction(message.get("direction") or default_direction)
    status, error_message = map_delivery_status(
        message.get("status"), message_type, extract_message_error(message)
    )

    return {
        "ghl_message_id": message_id,
        "lead_id": lead_id,
        "ghl_conversation_id": conversation_id or message.get("conversationId"),
        "type": message_type,
        "content": extract_message_body(message),
        "status": status,
        "error_message": error_message,
        "is_template": False,
        "sent_at": parse_ghl_datetime(message.get("dateAdded") or message.get("createdAt"))
        or datetime.now(timezone.utc).replace(tzinfo=None),
    }


# ---------------------------------------------------------------------------
# Task / appointment -> Todo
# ---------------------------------------------------------------------------

def map_task_to_todo(task: Dict[str, Any], lead: Dict[str, Any]) -> Dict[str, Any]:
    task_id = _require_id(task, "id", "taskId")
    title = strip_html(task.get("title") or task.get("name")) or DEFAULT_TASK_TITLE

    return {
        "ghl_task_id": task_id,
        "lead_id": lead.get("id"),
        "user_id": lead.get("user_id"),
        "objekt_id": lead.get("objekt_id"),
        "title": title,
        "description": strip_html(task.get("description") or task.get("body") or task.get("notes")) or None,
        "type": get_todo_type(title),
        "priority": get_todo_priority(task.get("priority")),
        "completed": task.get("status") == "completed" or task.get("completed") is True,
        "due_date": parse_ghl_datetime(task.get("dueDate") or task.get("due_date")),
    }


def map_appointment_to_todo(event: Dict[str, Any], lead: Dict[str, Any]) -> Dict[str, Any]:
    event_id = _require_id(event, "id", "appointmentId", "eventId")
    status = (event.get("appointmentStatus") or event.get("status") or "").lower()

    return {
        "ghl_event_id": event_id,
        "lead_id": lead.get("id"),
        "user_id": lead.get("user_id"),
        "objekt_id": lead.get("objekt_id"),
        "title": strip_html(event.get("title")) or DEFAULT_APPOINTMENT_TITLE,
        "description": strip_html(event.get("notes") or event.get("description")) or None,
        "type": APPOINTMENT_TODO_TYPE,
        "priority": "normal",
        "completed": status == "completed",
        "due_date": parse_ghl_datetime(event.get("startTime")),
    }


# ---------------------------------------------------------------------------
# Opportunity stage -> pipeline flags
# ---------------------------------------------------------------------------

STAGE_MAPPING = {
    "Finanzierungsberatung gebucht": "beratung_gebucht",
    "Finanzierung blockiert": "blockiert",
    "Finanzierungsbestätigung ausgestellt": "bestaetigung_ausgestellt",
    "Warte auf Kreditentscheidung": "warte_auf_kredit",
    "Vertrag unterschrieben": "vertrag_unterschrieben",
    "Auszahlung erhalten": "auszahlung_erhalten",
}

# Progression order; reaching a stage implies every earlier flag
STAGE_FLAG_ORDER = [
    ("beratung_gebucht", "sf_reached_beratung"),
    ("bestaetigung_ausgestellt", "sf_reached_bestaetigung"),
    ("warte_auf_kredit", "sf_reached_warte_kredit"),
    ("vertrag_unterschrieben", "sf_reached_vertrag"),
    ("auszahlung_erhalten", "sf_reached_auszahlung"),
]
BLOCKED_STAGE = "blockiert"
BLOCKED_FLAG = "sf_blockiert"
STAGE_FLAGS = [flag for _, flag in STAGE_FLAG_ORDER] + [BLOCKED_FLAG]

_UMLAUTS = {"ä": "ae", "ö": "oe", "ü": "ue", "ß": "ss"}
_NON_WORD_RE = re.compile(r"[^a-z0-9\s]")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_stage_name(name: Optional[str]) -> str:
    """Lowercase, fold umlauts, drop punctuation/emoji, collapse whitespace."""
    value = (name or "").lower()
    for umlaut, folded in _UMLAUTS.items():
        value = value.replace(umlaut, folded)
    value = _NON_WORD_RE.sub("", value)
    return _WHITESPACE_RE.sub(" ", value).strip()


_NORMALIZED_STAGES = {normalize_stage_name(label): stage for label, stage in STAGE_MAPPING.items()}


def map_stage(name: Optional[str]) -> Optional[str]:
    """Local stage key for a GHL stage label; unknown labels pass through unchanged."""
    if name is None:
        return None
    return _NORMALIZED_STAGES.get(normalize_stage_name(name), name)


def stage_rank(stage: Optional[str]) -> int:
    """Position in the progression, -1 for blocked or unknown stages"""
    for index, (key, _) in enumerate(STAGE_FLAG_ORDER):
        if stage == key:
            return index
    return -1


def stage_flags_for(stage: Optional[str]) -> Dict[str, bool]:
    """Flags that become true when a lead sits in the given stage."""
    if stage == BLOCKED_STAGE:
        return {BLOCKED_FLAG: True}
    rank = stage_rank(stage)
    return {flag: True for _, flag in STAGE_FLAG_ORDER[:rank + 1]}


def merge_stage_flags(current: Dict[str, Any], stage: Optional[str]) -> Dict[str, bool]:
    """
    High-water-mark merge: a flag that is already true stays true even when
    the reported stage is earlier than the one already reached.
    """
    reached = stage_flags_for(stage)
    return {flag: bool(current.get(flag)) or reached.get(flag, False) for flag in STAGE_FLAGS}
