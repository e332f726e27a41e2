# api/services/lead_analysis.py
"""
Conversation analysis for leads.

Each lead's stored conversation is sent to the LLM with the analysis prompt;
the categorical answer is turned into the lead's quality score, conversation
status and the booleans the dashboard filters on. Used directly for a single
lead (after an inbound message) and as the processor of analysis jobs.
"""

import json
import logging
from typing import Any, Dict, List, NamedTuple, Optional

from sqlalchemy import or_, select

from api.services.llm_adapter import LLMAdapter
from database.models import GHLConnection, Lead, Message, model_to_dict, utcnow
from database.simple_connection import SimpleDatabase

logger = logging.getLogger(__name__)

MAX_CONVERSATION_MESSAGES = 50
SYSTEM_MESSAGE_PREFIXES = ("Opportunity created", "Opportunity updated")

DEFAULT_ANALYSIS_PROMPT = """Du bist ein Senior Conversation-, Sales- und Funnel-Analyst mit Fokus auf Immobilien, Finanzierungsberatung und KI-gestützte Lead-Qualifizierung.

Der folgende Chat ist ein Gespräch zwischen einem Interessenten (Lead) und der KI des Maklers.
Ziel der Makler-KI ist es, Simpli Finance (Finanzierungspartner) sinnvoll und glaubwürdig zu platzieren, sodass der Lead Interesse entwickelt und einen Termin buchen möchte.

KONVERSATION:
{{conversation}}

Analysiere und bewerte:

1. SIMPLI_PLATZIERUNG - Wurde Simpli Finance sinnvoll platziert?
   - erfolg: Erfolgreich und natürlich platziert, Mehrwert klar
   - teilweise: Erwähnt aber verbesserungsfähig (Timing, Erklärung)
   - nicht: Nicht erwähnt oder unpassend platziert

2. LEAD_INTERESSE - Hat der Lead Interesse an Simpli Finance/Finanzierung gezeigt?
   - klar: Klares Interesse, Nachfragen, positive Reaktionen
   - unsicher: Latentes/unklares Interesse, Finanzierung relevant
   - kein: Kein erkennbares Interesse

3. TERMIN_STATUS - Stand bezüglich Terminen:
   - gebucht: Termin mit Simpli Finance ODER Makler gebucht/bestätigt
   - interesse: Interesse an Termin gezeigt, aber nicht gebucht
   - kein: Kein Termininteresse erkennbar

4. GESPRAECHS_STATUS - Qualifizierungsstatus:
   - qualifiziert: Erfolgreich qualifiziert & übergeben
   - offen: Interesse vorhanden, Abschluss noch offen
   - abgebrochen: Früh abgebrochen, kein Interesse, nicht qualifiziert

5. FOLLOW_UP - Maximal 3 konkrete Follow-up Punkte (was nachgefasst werden sollte)

6. VERBESSERUNG - Ein konkreter Satz was die KI besser machen könnte

7. ZUSAMMENFASSUNG - Ein Satz der den aktuellen Stand beschreibt

Antworte NUR mit JSON (keine Markdown-Blöcke):
{
  "simpli_platzierung": "erfolg|teilweise|nicht",
  "lead_interesse": "klar|unsicher|kein",
  "termin_status": "gebucht|interesse|kein",
  "gespraechs_status": "qualifiziert|offen|abgebrochen",
  "follow_up": ["Punkt 1", "Punkt 2"],
  "verbesserung": "Konkreter Verbesserungsvorschlag",
  "zusammenfassung": "Kurze Zusammenfassung"
}"""

ANALYSIS_DEFAULTS = {
    "simpli_platzierung": "nicht",
    "lead_interesse": "kein",
    "termin_status": "kein",
    "gespraechs_status": "offen",
    "follow_up": [],
    "verbesserung": "",
    "zusammenfassung": "",
}

STATUS_RUNNING = "unterhaltung_laeuft"
STATUS_DONE = "abgeschlossen"
STATUS_ABORTED = "unterhaltung_abgebrochen"


class ItemOutcome(NamedTuple):
    """Result of evaluating one lead; applied to the database on the calling thread"""
    lead_id: str
    status: str  # analyzed, skipped, failed
    updates: Dict[str, Any]
    error: Optional[str] = None


def calculate_quality_score(analysis: Dict[str, Any]) -> int:
    score = 5

    placement = analysis.get("simpli_platzierung")
    if placement == "erfolg":
        score += 2
    elif placement == "teilweise":
        score += 1
    else:
        score -= 1

    interest = analysis.get("lead_interesse")
    if interest == "klar":
        score += 2
    elif interest == "unsicher":
        score += 1
    else:
        score -= 1

    appointment = analysis.get("termin_status")
    if appointment == "gebucht":
        score += 2
    elif appointment == "interesse":
        score += 1

    status = analysis.get("gespraechs_status")
    if status == "qualifiziert":
        score += 1
    elif status == "abgebrochen":
        score -= 2

    return max(1, min(10, score))


def conversation_status_for(analysis: Dict[str, Any]) -> str:
    status = analysis.get("gespraechs_status")
    if status == "qualifiziert":
        return STATUS_DONE
    if status == "abgebrochen":
        return STATUS_ABORTED
    return STATUS_RUNNING


def analysis_to_lead_update(analysis: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "quality_score": calculate_quality_score(analysis),
        "conversation_status": conversation_status_for(analysis),
        "has_makler_termin": analysis.get("termin_status") == "gebucht",
        "simpli_platziert": analysis.get("simpli_platzierung") != "nicht",
        "simpli_interessiert": analysis.get("lead_interesse") != "kein",
        "ai_improvement_suggestion": json.dumps(analysis, ensure_ascii=False),
        "last_analyzed_at": utcnow(),
    }


def is_real_message(message: Dict[str, Any]) -> bool:
    content = message.get("content") or ""
    return bool(content) and not content.startswith(SYSTEM_MESSAGE_PREFIXES)


def format_conversation(messages: List[Dict[str, Any]], outgoing_label: str = "KI/Makler") -> str:
    lines = []
    for message in messages:
        role = "Kunde" if message.get("type") == "incoming" else outgoing_label
        lines.append(f"{role}: {message.get('content')}")
    return "\n".join(lines)


class LeadAnalysisProcessor:
    kind = "lead_analysis"

    def __init__(self, db: SimpleDatabase, llm: Optional[LLMAdapter]):
        self.db = db
        self.llm = llm

    def select_leads(self, user_id: Optional[str] = None, force_all: bool = False) -> List[str]:
        """Leads of active connections whose conversation changed since the last analysis."""
        with self.db.session_scope() as session:
            locations = select(GHLConnection.location_id).where(GHLConnection.is_active.is_(True))
            if user_id:
                locations = locations.where(GHLConnection.user_id == user_id)

            query = session.query(Lead.id).filter(
                Lead.ghl_location_id.in_(locations),
                or_(Lead.is_archived.is_(False), Lead.is_archived.is_(None)),
            )
            if not force_all:
                query = query.filter(
                    or_(Lead.last_analyzed_at.is_(None), Lead.last_message_at > Lead.last_analyzed_at)
                )
            return [row.id for row in query.order_by(Lead.created_at).all()]

    def load(self, lead_id: str, job: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        with self.db.session_scope() as session:
            lead = session.get(Lead, lead_id)
            if not lead:
                return None
            messages = (
                session.query(Message)
                .filter(Message.lead_id == lead_id)
                .order_by(Message.sent_at)
                .all()
            )
            return {
                "lead": model_to_dict(lead),
                "messages": [model_to_dict(m) for m in messages],
                "prompt": (job or {}).get("custom_prompt") or DEFAULT_ANALYSIS_PROMPT,
            }

    def evaluate(self, context: Optional[Dict[str, Any]], lead_id: str) -> ItemOutcome:
        """LLM part of the analysis; touches no database state."""
        if context is None:
            return ItemOutcome(lead_id, "failed", {}, "Lead not found")

        messages = [m for m in context["messages"] if is_real_message(m)]
        now = utcnow()

        if not messages:
            return ItemOutcome(lead_id, "skipped", {
                "conversation_status": STATUS_RUNNING,
                "last_analyzed_at": now,
            })

        if not any(m.get("type") == "incoming" for m in messages):
            # Lead never answered
            return ItemOutcome(lead_id, "skipped", {
                "quality_score": 1,
                "conversation_status": STATUS_RUNNING,
                "last_analyzed_at": now,
            })

        if self.llm is None:
            return ItemOutcome(lead_id, "failed", {}, "LLM not configured")

        conversation = format_conversation(messages[-MAX_CONVERSATION_MESSAGES:])
        result = self.llm.classify(context["prompt"], {"conversation": conversation}, defaults=ANALYSIS_DEFAULTS)
        if not result.success or not isinstance(result.data, dict):
            return ItemOutcome(lead_id, "failed", {}, result.error or "Analysis returned no object")

        return ItemOutcome(lead_id, "analyzed", analysis_to_lead_update(result.data))

    def apply(self, outcome: ItemOutcome):
        if outcome.updates:
            self.db.update_lead(outcome.lead_id, outcome.updates)

    def analyze_lead(self, lead_id: str, custom_prompt: Optional[str] = None) -> Dict[str, Any]:
        """Analyze one lead synchronously."""
        context = self.load(lead_id, {"custom_prompt": custom_prompt})
        if context is None:
            raise LookupError(f"Lead {lead_id} not found")
        outcome = self.evaluate(context, lead_id)
        self.apply(outcome)
        logger.info(f"🧠 Lead {lead_id} analysis: {outcome.status}")
        return {
            "success": outcome.status != "failed",
            "lead_id": lead_id,
            "status": outcome.status,
            "error": outcome.error,
            "quality_score": outcome.updates.get("quality_score"),
            "conversation_status": outcome.updates.get("conversation_status"),
        }
