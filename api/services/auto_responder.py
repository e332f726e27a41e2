# api/services/auto_responder.py
"""
Automatic answers to customer questions.

For leads with auto_respond_enabled, a new inbound message is answered from
the lead's Objekt data and the stored ki_wissen entries. The model either
writes the reply or says CANNOT_ANSWER, in which case nothing is sent and
the agent answers by hand. Sent replies are stored as outgoing messages
under GHL's message id, so the echoed outbound webhook is a redelivery.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

import requests
from sqlalchemy import or_

from config import AppConfig
from api.services.ghl_api import GoHighLevelAPI, GHLAPIError
from api.services.ghl_token_manager import TokenManager, TokenRefreshError
from api.services.lead_analysis import format_conversation, is_real_message
from api.services.llm_adapter import LLMAdapter
from database.models import GHLConnection, KIWissen, Lead, Message, Objekt, model_to_dict, utcnow
from database.simple_connection import SimpleDatabase

logger = logging.getLogger(__name__)

AUTO_RESPOND_MESSAGE_LIMIT = 10
CANNOT_ANSWER = "CANNOT_ANSWER:"

AUTO_RESPOND_SYSTEM_PROMPT = """Du bist ein freundlicher KI-Assistent für den Immobilienmakler "{{makler}}".
Du antwortest auf Kundenanfragen zu Immobilien.

WICHTIGE REGELN:
1. Antworte NUR mit Informationen aus den gegebenen Objekt-Daten und dem Wissen
2. Wenn du etwas nicht weißt, sage es ehrlich und biete an, dass der Makler sich meldet
3. Sei freundlich, professionell und prägnant
4. Verwende "{{FORM_TYPE}}" als Anrede
5. Antworte auf Deutsch
6. Halte Antworten kurz (max 2-3 Sätze)
7. NIEMALS Informationen von anderen Objekten verwenden!
8. Bei Terminanfragen: Biete an, dass der Makler sich für einen Termin meldet
9. Unterschreibe NICHT mit deinem Namen - du antwortest im Namen des Maklers

{{objekt}}
{{wissen}}

LETZTE NACHRICHTEN:
{{conversation}}

Wenn du die Frage NICHT mit den vorhandenen Informationen beantworten kannst, antworte mit:
"CANNOT_ANSWER: [Grund]"

Ansonsten antworte direkt mit der Nachricht für den Kunden (ohne Anführungszeichen)."""

AUTO_RESPOND_USER_PROMPT = 'Kunde "{{name}}" fragt:\n\n"{{question}}"\n\nBitte antworte.'


class AutoResponseError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def describe_objekt(objekt: Optional[Dict[str, Any]]) -> str:
    if not objekt:
        return "KEIN OBJEKT ZUGEORDNET."
    price = objekt.get("price")
    area = objekt.get("area_sqm")
    price_text = f"{price:,.0f} €".replace(",", ".") if price else "Auf Anfrage"
    area_text = f"{area:g} m²" if area else "Nicht angegeben"
    return "\n".join([
        "OBJEKT-INFORMATIONEN (NUR DIESES OBJEKT!):",
        f"- Name: {objekt.get('name') or 'Nicht angegeben'}",
        f"- Stadt: {objekt.get('city') or 'Nicht angegeben'}",
        f"- Preis: {price_text}",
        f"- Wohnfläche: {area_text}",
        f"- Zimmer: {objekt.get('rooms') or 'Nicht angegeben'}",
    ])


def describe_wissen(entries: List[Dict[str, Any]]) -> str:
    if not entries:
        return ""
    lines = [f"- {e.get('category') or 'allgemein'}: {e.get('question') or ''} → {e['answer']}" for e in entries]
    return "ZUSÄTZLICHES WISSEN:\n" + "\n".join(lines)


class AutoResponder:
    def __init__(self, db: SimpleDatabase, llm: Optional[LLMAdapter], config=AppConfig,
                 http_session: Optional[requests.Session] = None):
        self.db = db
        self.llm = llm
        self.config = config
        self.http_session = http_session
        self.token_manager = TokenManager(db, config, http_session)

    def build_context(self, lead_id: str) -> Optional[Dict[str, Any]]:
        with self.db.session_scope() as session:
            lead = session.get(Lead, lead_id)
            if not lead:
                return None
            connection = session.get(GHLConnection, lead.connection_id) if lead.connection_id else None
            objekt = session.get(Objekt, lead.objekt_id) if lead.objekt_id else None

            # Knowledge of this Objekt plus the agent's general knowledge, never other Objekte
            wissen_filter = KIWissen.objekt_id.is_(None)
            if lead.objekt_id:
                wissen_filter = or_(KIWissen.objekt_id == lead.objekt_id, wissen_filter)
            wissen = (
                session.query(KIWissen)
                .filter(KIWissen.user_id == lead.user_id, wissen_filter)
                .order_by(KIWissen.created_at)
                .all()
            )
            recent = (
                session.query(Message)
                .filter(Message.lead_id == lead_id)
                .order_by(Message.sent_at.desc())
                .limit(AUTO_RESPOND_MESSAGE_LIMIT)
                .all()
            )
            return {
                "lead": model_to_dict(lead),
                "connection": model_to_dict(connection),
                "objekt": model_to_dict(objekt),
                "wissen": [model_to_dict(w) for w in wissen],
                "messages": [model_to_dict(m) for m in reversed(recent)],
            }

    def set_enabled(self, lead_id: str, enabled: bool) -> Dict[str, Any]:
        with self.db.session_scope() as session:
            lead = session.get(Lead, lead_id)
            if not lead:
                raise AutoResponseError(404, "Lead not found")
            lead.auto_respond_enabled = enabled
        logger.info(f"🤖 Auto-respond {'enabled' if enabled else 'disabled'} for lead {lead_id}")
        return {"success": True, "lead_id": lead_id, "auto_respond_enabled": enabled}

    def respond(self, lead_id: str, message_content: str) -> Dict[str, Any]:
        if not lead_id or not message_content:
            raise AutoResponseError(400, "lead_id and message_content are required")
        context = self.build_context(lead_id)
        if context is None:
            raise AutoResponseError(404, "Lead not found")

        lead = context["lead"]
        if not lead.get("auto_respond_enabled"):
            logger.info(f"ℹ️ Auto-respond disabled for lead {lead_id}")
            return {"success": False, "reason": "auto_respond_disabled"}
        connection = context["connection"]
        if not connection or not connection.get("is_active"):
            return {"success": False, "reason": "no_ghl_connection"}
        if self.llm is None:
            raise AutoResponseError(503, "LLM not configured")

        messages = [m for m in context["messages"] if is_real_message(m)]
        result = self.llm.draft(AUTO_RESPOND_USER_PROMPT, {
            "name": lead.get("name") or "Unbekannt",
            "question": message_content,
        }, max_tokens=500, expect_json=False, system=self._render_system(context, messages))
        if not result.success:
            raise AutoResponseError(502, result.error or "AI response generation failed")

        answer = (result.data or "").strip().strip('"').strip()
        if not answer:
            raise AutoResponseError(502, "Empty response from AI")
        if answer.startswith(CANNOT_ANSWER):
            reason = answer[len(CANNOT_ANSWER):].strip()
            logger.info(f"🤷 No automatic answer for lead {lead_id}: {reason}")
            return {"success": False, "reason": "cannot_answer", "details": reason}

        try:
            connection = self.token_manager.ensure_valid_token(connection)
            client = GoHighLevelAPI(connection["access_token"], connection["location_id"], self.config,
                                    session=self.http_session)
            response = client.send_message(lead["ghl_contact_id"], answer)
        except (TokenRefreshError, GHLAPIError, requests.RequestException) as e:
            logger.error(f"❌ Sending automatic answer to lead {lead_id} failed: {e}")
            return {"success": False, "reason": "ghl_send_failed", "details": str(e)}

        ghl_message_id = response.get("messageId") or response.get("id")
        message_id = self._store_reply(lead, answer, ghl_message_id, response.get("conversationId"))
        logger.info(f"🤖 Automatic answer sent to lead {lead_id}")
        return {
            "success": True,
            "response_sent": answer,
            "message_id": message_id,
            "ghl_message_id": ghl_message_id,
        }

    def _render_system(self, context: Dict[str, Any], messages: List[Dict[str, Any]]) -> str:
        connection = context["connection"] or {}
        system = AUTO_RESPOND_SYSTEM_PROMPT
        replacements = {
            "{{FORM_TYPE}}": "Du" if connection.get("form_type") == "du" else "Sie",
            "{{makler}}": connection.get("location_name") or "den Makler",
            "{{objekt}}": describe_objekt(context["objekt"]),
            "{{wissen}}": describe_wissen(context["wissen"]),
            "{{conversation}}": format_conversation(messages, outgoing_label="Makler") or "Keine Nachrichten",
        }
        for placeholder, value in replacements.items():
            system = system.replace(placeholder, value)
        return system

    def _store_reply(self, lead: Dict[str, Any], answer: str, ghl_message_id: Optional[str],
                     conversation_id: Optional[str]) -> str:
        now = utcnow()
        with self.db.session_scope() as session:
            message = Message(
                lead_id=lead["id"],
                ghl_message_id=str(ghl_message_id or f"auto_{uuid.uuid4()}"),
                ghl_conversation_id=conversation_id,
                type="outgoing",
                content=answer,
                status="sent",
                is_ai_generated=True,
                sent_at=now,
            )
            session.add(message)
            stored = session.get(Lead, lead["id"])
            stored.last_message_at = now
            session.flush()
            return message.id
