# api/services/knowledge_service.py
"""
Learning from agent answers: when an agent answers a lead's question, the
question/answer pair is classified by the LLM and stored in ki_wissen,
either for the lead's Objekt or as general knowledge.
"""

import logging
from typing import Any, Dict, Optional

from api.services.llm_adapter import LLMAdapter
from database.models import KIWissen, Lead, Message, Objekt
from database.simple_connection import SimpleDatabase

logger = logging.getLogger(__name__)

RECENT_MESSAGE_LIMIT = 10
QUESTION_MATCH_PREFIX = 20

LEARN_SYSTEM_PROMPT = """Du analysierst eine Frage-Antwort-Konversation und entscheidest, ob die Antwort als Wissen gespeichert werden soll.

AUFGABE:
1. Bestimme, ob die Antwort nützliches Wissen enthält (nicht nur "Ich melde mich" oder "Danke")
2. Kategorisiere als objekt_spezifisch (Aufzug, Keller, Balkon, Heizung, Nebenkosten, etc.) oder allgemein (Öffnungszeiten, Telefon, Erreichbarkeit, Firma)
3. Formuliere Frage und Antwort kurz und prägnant für die Wissensdatenbank

OBJEKT-KONTEXT: {objekt}

Antworte NUR mit validem JSON:
{{
  "should_learn": true/false,
  "knowledge_type": "objekt_spezifisch" | "allgemein" | "keine",
  "category": "kategorie z.B. ausstattung, nebenkosten, kontakt, erreichbarkeit",
  "question_formatted": "Kurze, klare Frage",
  "answer_formatted": "Kurze, klare Antwort"
}}"""

LEARN_USER_PROMPT = 'FRAGE VOM KUNDEN:\n"{{question}}"\n\nANTWORT VOM MAKLER:\n"{{answer}}"\n\nAnalysiere und entscheide.'

LEARN_DEFAULTS = {"should_learn": False, "knowledge_type": "keine", "category": "allgemein"}


class KnowledgeError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class KnowledgeService:
    def __init__(self, db: SimpleDatabase, llm: Optional[LLMAdapter]):
        self.db = db
        self.llm = llm

    def find_open_question(self, lead_id: str) -> Optional[str]:
        """Most recent incoming message among the last few that asks something."""
        with self.db.session_scope() as session:
            recent = (
                session.query(Message)
                .filter(Message.lead_id == lead_id)
                .order_by(Message.sent_at.desc())
                .limit(RECENT_MESSAGE_LIMIT)
                .all()
            )
            for message in recent:
                if message.type == "incoming" and "?" in (message.content or ""):
                    return message.content
        return None

    def learn_from_response(self, lead_id: str, user_id: Optional[str], response_content: str) -> Dict[str, Any]:
        if not lead_id or not response_content:
            raise KnowledgeError(400, "lead_id and response_content are required")

        with self.db.session_scope() as session:
            lead = session.get(Lead, lead_id)
            if not lead:
                raise KnowledgeError(404, "Lead not found")
            objekt_id = lead.objekt_id
            user_id = user_id or lead.user_id
            objekt = session.get(Objekt, objekt_id) if objekt_id else None
            objekt_name = objekt.name if objekt else "Kein Objekt zugeordnet"

        question = self.find_open_question(lead_id)
        if not question:
            return {"success": True, "learned": False, "reason": "No pending question found"}
        if self.llm is None:
            raise KnowledgeError(503, "LLM not configured")

        result = self.llm.classify(
            LEARN_USER_PROMPT,
            {"question": question, "answer": response_content},
            defaults=LEARN_DEFAULTS,
            max_tokens=512,
            system=LEARN_SYSTEM_PROMPT.format(objekt=objekt_name),
        )
        if not result.success or not isinstance(result.data, dict):
            raise KnowledgeError(500, "AI analysis failed")

        analysis = result.data
        question_text = (analysis.get("question_formatted") or "").strip()
        answer_text = (analysis.get("answer_formatted") or "").strip()
        if not analysis.get("should_learn") or analysis.get("knowledge_type") == "keine" or not answer_text:
            return {"success": True, "learned": False, "reason": "Not worth learning"}

        is_objekt_specific = analysis["knowledge_type"] == "objekt_spezifisch"
        target_objekt = objekt_id if is_objekt_specific else None

        with self.db.session_scope() as session:
            query = session.query(KIWissen).filter(KIWissen.user_id == user_id)
            if question_text:
                query = query.filter(KIWissen.question.ilike(f"%{question_text[:QUESTION_MATCH_PREFIX]}%"))
            if target_objekt:
                query = query.filter(KIWissen.objekt_id == target_objekt)
            else:
                query = query.filter(KIWissen.objekt_id.is_(None))
            existing = query.first() if question_text else None

            if existing:
                existing.answer = answer_text
                existing.category = analysis.get("category")
                action = "updated"
            else:
                session.add(KIWissen(
                    user_id=user_id,
                    objekt_id=target_objekt,
                    lead_id=lead_id,
                    knowledge_type=analysis["knowledge_type"],
                    category=analysis.get("category"),
                    question=question_text or question,
                    answer=answer_text,
                    source="learned",
                ))
                action = "created"

        logger.info(f"📚 Knowledge {action} from lead {lead_id} ({analysis['knowledge_type']})")
        return {
            "success": True,
            "learned": True,
            "action": action,
            "knowledge_type": analysis["knowledge_type"],
            "category": analysis.get("category"),
            "question": question_text,
            "answer": answer_text,
            "objekt": objekt_name if is_objekt_specific and objekt_id else None,
        }
