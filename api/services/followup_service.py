# api/services/followup_service.py
"""
Follow-up drafting and the human approval lifecycle.

A draft is generated from the lead's recent conversation and stored as a
followup_approvals row in status 'pending'. A lead has at most one pending
approval; generating a new draft replaces the old one in the same
transaction. Transitions:

    pending  -> approved | rejected | expired
    approved -> sent | rejected
"""

import logging
import random
import re
from datetime import timedelta
from typing import Any, Dict, List, Optional

import requests
from sqlalchemy import select

from config import AppConfig
from api.services.ghl_api import GoHighLevelAPI, GHLAPIError
from api.services.ghl_token_manager import TokenManager, TokenRefreshError
from api.services.lead_analysis import ItemOutcome, format_conversation, is_real_message
from api.services.llm_adapter import LLMAdapter
from database.models import (
    FollowupApproval, FollowupPromptVersion, GHLConnection, Lead, Message, model_to_dict, utcnow,
)
from database.simple_connection import SimpleDatabase

logger = logging.getLogger(__name__)

FOLLOWUP_MESSAGE_LIMIT = 30
MESSAGING_WINDOW = timedelta(hours=24)
PROMPT_CATEGORY = "standard_followup"

DEFAULT_FOLLOWUP_PROMPT = """Du bist ein erfahrener Immobilien-Follow-up-Spezialist. Deine Aufgabe ist es, eine personalisierte Follow-up Nachricht zu generieren.

ANREDEFORM: {{FORM_TYPE}}
TEMPLATE-MODUS: {{IS_TEMPLATE}}

REGELN:
1. Analysiere die Konversation und erkenne den aktuellen Stand
2. Generiere eine natürliche, persönliche Nachricht
3. Beziehe dich auf vorherige Gesprächspunkte
4. Halte die Nachricht kurz und prägnant (max 3-4 Sätze)
5. Wenn TEMPLATE-MODUS true ist: Generiere NUR den Kerninhalt OHNE "Hallo" am Anfang und OHNE "Viele Grüße" am Ende

Antworte im JSON-Format:
{
  "message": "Die Follow-up Nachricht",
  "reason": "Warum diese Nachricht jetzt sinnvoll ist",
  "summary": "Kurze Zusammenfassung der Konversation"
}"""

USER_PROMPT = """
KONVERSATION:
{{conversation}}

LEAD-INFO:
- Name: {{name}}
- E-Mail: {{email}}
- Telefon: {{phone}}

Generiere jetzt eine passende Follow-up Nachricht.
{{template_note}}
"""

TEMPLATE_NOTE = ('WICHTIG: Da das 24h-Fenster geschlossen ist, generiere NUR den Kerninhalt der Nachricht '
                 'OHNE Anrede und Grußformel. Das System fügt "Hallo ... Viele Grüße!" automatisch hinzu.')

_GREETING_RE = re.compile(r"^(hallo|hi|hey|guten tag|liebe[r]?\s+\w+)[,!]?\s*", re.IGNORECASE)
_CLOSING_RE = re.compile(r"(viele grüße|liebe grüße|mit freundlichen grüßen|mfg|lg)[!.]?\s*$", re.IGNORECASE)

ALLOWED_TRANSITIONS = {
    "pending": {"approved", "rejected", "expired"},
    "approved": {"sent", "rejected"},
}


class FollowupError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def is_within_window(messages: List[Dict[str, Any]], now=None) -> bool:
    """True when the lead wrote within the last 24 hours"""
    incoming = [m["sent_at"] for m in messages if m.get("type") == "incoming" and m.get("sent_at")]
    if not incoming:
        return False
    return (now or utcnow()) - max(incoming) < MESSAGING_WINDOW


def wrap_as_template(text: str) -> str:
    core = _GREETING_RE.sub("", text.strip())
    core = _CLOSING_RE.sub("", core).strip()
    return f"Hallo {core} Viele Grüße!"


class FollowupService:
    def __init__(self, db: SimpleDatabase, llm: Optional[LLMAdapter], config=AppConfig,
                 http_session: Optional[requests.Session] = None, rng: Optional[random.Random] = None):
        self.db = db
        self.llm = llm
        self.config = config
        self.http_session = http_session
        self.rng = rng or random.Random()
        self.token_manager = TokenManager(db, config, http_session)

    # ------------------------------------------------------------------
    # Drafting
    # ------------------------------------------------------------------

    def build_context(self, lead_id: str) -> Optional[Dict[str, Any]]:
        with self.db.session_scope() as session:
            lead = session.get(Lead, lead_id)
            if not lead:
                return None
            connection = session.get(GHLConnection, lead.connection_id) if lead.connection_id else None
            recent = (
                session.query(Message)
                .filter(Message.lead_id == lead_id)
                .order_by(Message.sent_at.desc())
                .limit(FOLLOWUP_MESSAGE_LIMIT)
                .all()
            )
            prompts = (
                session.query(FollowupPromptVersion)
                .filter(FollowupPromptVersion.category == PROMPT_CATEGORY,
                        FollowupPromptVersion.is_active.is_(True))
                .all()
            )
            return {
                "lead": model_to_dict(lead),
                "form_type": (connection.form_type if connection else None) or "sie",
                "messages": [model_to_dict(m) for m in reversed(recent)],
                "prompts": [model_to_dict(p) for p in prompts],
            }

    def draft(self, context: Dict[str, Any]) -> Dict[str, Any]:
        """Ask the LLM for a follow-up; raises FollowupError when nothing usable comes back."""
        messages = [m for m in context["messages"] if is_real_message(m)]
        if not messages:
            raise FollowupError(400, "No messages found for this lead")
        if self.llm is None:
            raise FollowupError(503, "LLM not configured")

        within_window = is_within_window(messages)
        prompt_version = self.rng.choice(context["prompts"]) if context["prompts"] else None
        template = prompt_version["prompt"] if prompt_version else DEFAULT_FOLLOWUP_PROMPT
        lead = context["lead"]

        system = template.replace("{{FORM_TYPE}}", "Du" if context["form_type"] == "du" else "Sie")
        system = system.replace("{{IS_TEMPLATE}}", "false" if within_window else "true")

        result = self.llm.draft(USER_PROMPT, {
            "conversation": format_conversation(messages, outgoing_label="Makler"),
            "name": lead.get("name") or "Unbekannt",
            "email": lead.get("email") or "Nicht angegeben",
            "phone": lead.get("phone") or "Nicht angegeben",
            "template_note": "" if within_window else TEMPLATE_NOTE,
        }, defaults={"reason": "", "summary": ""}, system=system)

        if not result.success:
            raise FollowupError(502, result.error or "Failed to generate follow-up")
        data = result.data if isinstance(result.data, dict) else {"message": str(result.data)}
        text = (data.get("message") or "").strip()
        if not text:
            raise FollowupError(502, "Empty response from AI")

        return {
            "message": text if within_window else wrap_as_template(text),
            "reason": data.get("reason") or "",
            "summary": data.get("summary") or "",
            "is_template": not within_window,
            "prompt_version_id": prompt_version["id"] if prompt_version else None,
        }

    def save_approval(self, lead: Dict[str, Any], draft: Dict[str, Any]) -> Dict[str, Any]:
        """Replace any pending approval of the lead with the new draft."""
        with self.db.session_scope() as session:
            session.query(FollowupApproval).filter(
                FollowupApproval.lead_id == lead["id"], FollowupApproval.status == "pending"
            ).delete(synchronize_session=False)
            approval = FollowupApproval(lead_id=lead["id"], user_id=lead.get("user_id"), status="pending", **draft)
            session.add(approval)
            session.flush()
            return model_to_dict(approval)

    def generate(self, lead_id: str) -> Dict[str, Any]:
        context = self.build_context(lead_id)
        if context is None:
            raise FollowupError(404, "Lead not found")
        approval = self.save_approval(context["lead"], self.draft(context))
        logger.info(f"✍️ Follow-up drafted for lead {lead_id} (template={approval['is_template']})")
        return approval

    def discard_pending(self, lead_id: str) -> int:
        """Drop pending drafts, e.g. because the lead answered in the meantime."""
        with self.db.session_scope() as session:
            return session.query(FollowupApproval).filter(
                FollowupApproval.lead_id == lead_id, FollowupApproval.status == "pending"
            ).delete(synchronize_session=False)

    # ------------------------------------------------------------------
    # Approval lifecycle
    # ------------------------------------------------------------------

    def _transition(self, approval_id: str, new_status: str, **changes) -> Dict[str, Any]:
        with self.db.session_scope() as session:
            approval = session.get(FollowupApproval, approval_id)
            if not approval:
                raise FollowupError(404, "Approval not found")
            if new_status not in ALLOWED_TRANSITIONS.get(approval.status, set()):
                raise FollowupError(409, f"Cannot change approval from {approval.status} to {new_status}")
            approval.status = new_status
            for key, value in changes.items():
                setattr(approval, key, value)
            return model_to_dict(approval)

    def approve(self, approval_id: str, message: Optional[str] = None) -> Dict[str, Any]:
        changes = {"decided_at": utcnow()}
        if message:
            changes["message"] = message
        return self._transition(approval_id, "approved", **changes)

    def reject(self, approval_id: str) -> Dict[str, Any]:
        return self._transition(approval_id, "rejected", decided_at=utcnow())

    def expire(self, approval_id: str) -> Dict[str, Any]:
        return self._transition(approval_id, "expired", decided_at=utcnow())

    def send(self, approval_id: str) -> Dict[str, Any]:
        with self.db.session_scope() as session:
            approval = model_to_dict(session.get(FollowupApproval, approval_id))
            if approval is None:
                raise FollowupError(404, "Approval not found")
            if approval["status"] != "approved":
                raise FollowupError(409, f"Only approved follow-ups can be sent (status {approval['status']})")
            lead = model_to_dict(session.get(Lead, approval["lead_id"]))
            connection = model_to_dict(session.get(GHLConnection, lead["connection_id"])) if lead else None

        if not connection or not connection.get("is_active"):
            raise FollowupError(400, "No active GHL connection for this lead")

        try:
            connection = self.token_manager.ensure_valid_token(connection)
            client = GoHighLevelAPI(connection["access_token"], connection["location_id"], self.config,
                                    session=self.http_session)
            response = client.send_message(lead["ghl_contact_id"], approval["message"])
        except (TokenRefreshError, GHLAPIError, requests.RequestException) as e:
            logger.error(f"❌ Sending follow-up {approval_id} failed: {e}")
            with self.db.session_scope() as session:
                session.get(FollowupApproval, approval_id).error_message = str(e)
            raise FollowupError(502, f"Failed to send message: {e}")

        message_id = response.get("messageId") or response.get("id")
        logger.info(f"📨 Follow-up {approval_id} sent to contact {lead['ghl_contact_id']}")
        return self._transition(approval_id, "sent", sent_at=utcnow(), ghl_message_id=message_id, error_message=None)


class FollowupBatchProcessor:
    """Job processor drafting follow-ups for open conversations"""
    kind = "followup"

    def __init__(self, service: FollowupService):
        self.service = service
        self.db = service.db

    def select_leads(self, user_id: Optional[str] = None, force_all: bool = False) -> List[str]:
        with self.db.session_scope() as session:
            query = (
                session.query(Lead.id)
                .join(GHLConnection, GHLConnection.id == Lead.connection_id)
                .filter(GHLConnection.is_active.is_(True), Lead.is_archived.isnot(True))
                .filter(Lead.id.in_(select(Message.lead_id).where(Message.type == "incoming")))
            )
            if user_id:
                query = query.filter(GHLConnection.user_id == user_id)
            if not force_all:
                query = query.filter(Lead.conversation_status == "unterhaltung_laeuft")
            return [row.id for row in query.all()]

    def load(self, lead_id: str, job: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        return self.service.build_context(lead_id)

    def evaluate(self, context: Optional[Dict[str, Any]], lead_id: str) -> ItemOutcome:
        if context is None:
            return ItemOutcome(lead_id, "failed", {}, "Lead not found")
        try:
            draft = self.service.draft(context)
        except FollowupError as e:
            status = "skipped" if e.status_code == 400 else "failed"
            return ItemOutcome(lead_id, status, {}, e.message)
        return ItemOutcome(lead_id, "analyzed", {"lead": context["lead"], "draft": draft})

    def apply(self, outcome: ItemOutcome):
        if outcome.status == "analyzed":
            self.service.save_approval(outcome.updates["lead"], outcome.updates["draft"])
