# api/services/objekt_matcher.py
"""
Objekt matcher - assigns leads to property listings by fuzzy name matching.

A contact's free-text property label (custom field, top-level field or an
'objekt: <name>' tag) is scored against the user's existing listings. The
best candidate above MATCH_THRESHOLD wins; otherwise a placeholder listing is
created under that label.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from database.models import KIWissen, Lead, Objekt, Todo, model_to_dict
from database.simple_connection import SimpleDatabase
from utils.ghl_contact_classifier import get_objekt_tag_value

logger = logging.getLogger(__name__)

MATCH_THRESHOLD = 0.6

OBJEKT_FIELD_NAMES = [
    "objekttitel", "Objekttitel", "objekt_titel", "property_name", "property",
    "objekt", "immobilie", "object_name", "listing", "listing_name",
    "projekt", "project", "Objekt", "Property", "Immobilie",
]
OBJEKT_KEY_HINTS = ("objekt", "property", "immobilie", "listing", "titel")


class ObjektMergeError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def levenshtein_distance(s1: str, s2: str) -> int:
    if len(s1) < len(s2):
        s1, s2 = s2, s1
    previous = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1, start=1):
        current = [i]
        for j, c2 in enumerate(s2, start=1):
            cost = 0 if c1 == c2 else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def calculate_match_score(search: str, target: str) -> float:
    s1 = (search or "").strip().lower()
    s2 = (target or "").strip().lower()

    if s1 == s2:
        return 1.0
    if not s1 or not s2:
        return 0.0
    if s1 in s2 or s2 in s1:
        return 0.9

    max_len = max(len(s1), len(s2))
    similarity = 1 - levenshtein_distance(s1, s2) / max_len

    words1 = s1.split()
    words2 = s2.split()
    word_matches = sum(1 for w1 in words1 if any(w1 in w2 or w2 in w1 for w2 in words2))
    word_similarity = word_matches / len(words1) if words1 else 0.0

    return max(similarity, word_similarity)


def _first_value(fields: List[Any]) -> Optional[str]:
    for field in fields:
        if isinstance(field, dict):
            value = field.get("value")
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def _by_known_names(fields: Dict[str, Any]) -> Optional[str]:
    for name in OBJEKT_FIELD_NAMES:
        value = fields.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def extract_objekt_name(contact: Dict[str, Any]) -> Optional[str]:
    """Property label from a GHL contact payload, or None when there is none."""
    custom_fields = contact.get("customFields")
    if isinstance(custom_fields, list):
        value = _first_value(custom_fields)
        if value:
            return value
    elif isinstance(custom_fields, dict):
        value = _by_known_names(custom_fields)
        if value:
            return value
        for key, value in custom_fields.items():
            if any(hint in key.lower() for hint in OBJEKT_KEY_HINTS) and isinstance(value, str) and value.strip():
                return value.strip()

    custom_field = contact.get("customField")
    if isinstance(custom_field, list):
        value = _first_value(custom_field)
        if value:
            return value
    elif isinstance(custom_field, dict):
        value = _by_known_names(custom_field)
        if value:
            return value

    value = _by_known_names(contact)
    if value:
        return value

    return get_objekt_tag_value(contact)


class ObjektMatcher:
    def __init__(self, db: SimpleDatabase, threshold: float = MATCH_THRESHOLD):
        self.db = db
        self.threshold = threshold

    def find_best_match(self, label: str, candidates: List[Dict[str, Any]]) -> Tuple[Optional[Dict[str, Any]], float]:
        best, best_score = None, 0.0
        for candidate in candidates:
            score = calculate_match_score(label, candidate.get("name") or "")
            if score > best_score:
                best, best_score = candidate, score
        if best is not None and best_score > self.threshold:
            return best, best_score
        return None, best_score

    def match_label(self, label: str, user_id: Optional[str]) -> Dict[str, Any]:
        """Matched or newly created listing for a free-text label."""
        with self.db.session_scope() as session:
            query = session.query(Objekt)
            if user_id:
                query = query.filter(Objekt.user_id == user_id)
            candidates = [model_to_dict(o) for o in query.all()]

            objekt, score = self.find_best_match(label, candidates)
            if objekt:
                logger.info(f"🏠 Matched '{label}' to '{objekt['name']}' (score {score:.2f})")
                return {"objekt_id": objekt["id"], "objekt_name": objekt["name"],
                        "action": "matched", "match_score": round(score, 3)}

            created = Objekt(
                user_id=user_id,
                name=label,
                city="Unbekannt",
                price=0,
                rooms=0,
                area_sqm=0,
                status="aktiv",
                ai_ready=False,
            )
            session.add(created)
            session.flush()
            logger.info(f"🆕 Created objekt '{label}' (best score {score:.2f})")
            return {"objekt_id": created.id, "objekt_name": label,
                    "action": "created", "match_score": round(score, 3)}

    def match_contact(self, lead_id: str, contact: Dict[str, Any]) -> Dict[str, Any]:
        """Assign the lead to the listing named in the contact payload."""
        label = extract_objekt_name(contact)
        if not label:
            logger.info(f"ℹ️ No objekt field on contact for lead {lead_id}")
            return {"objekt_id": None, "objekt_name": None, "action": "no_field", "match_score": 0.0}

        lead = self.db.get_lead(lead_id)
        if not lead:
            raise ValueError(f"Lead {lead_id} not found")

        result = self.match_label(label, lead.get("user_id"))
        self.db.update_lead(lead_id, {"objekt_id": result["objekt_id"]})
        return result

    def merge(self, source_id: str, target_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Move leads, knowledge entries and todos from source to target, then
        delete the source. Reassignment commits as one transaction; a failed
        delete afterwards yields status 'orphaned' with the moved counts.
        """
        if source_id == target_id:
            raise ObjektMergeError(400, "Source and target objekt must differ")

        with self.db.session_scope() as session:
            ids = [source_id, target_id]
            query = session.query(Objekt).filter(Objekt.id.in_(ids))
            if user_id:
                query = query.filter(Objekt.user_id == user_id)
            if query.count() != 2:
                raise ObjektMergeError(404, "Objekt not found")

            stats = {
                "leads_moved": session.query(Lead).filter(Lead.objekt_id == source_id)
                .update({Lead.objekt_id: target_id}, synchronize_session=False),
                "wissen_moved": session.query(KIWissen).filter(KIWissen.objekt_id == source_id)
                .update({KIWissen.objekt_id: target_id}, synchronize_session=False),
                "todos_moved": session.query(Todo).filter(Todo.objekt_id == source_id)
                .update({Todo.objekt_id: target_id}, synchronize_session=False),
            }
        logger.info(f"🔀 Moved dependents of objekt {source_id} to {target_id}: {stats}")

        try:
            self._delete_objekt(source_id)
        except SQLAlchemyError as e:
            logger.error(f"❌ Data moved but failed to delete source objekt {source_id}: {e}")
            return {"success": False, "status": "orphaned",
                    "error": "Data moved but failed to delete source objekt", **stats}

        return {"success": True, "status": "merged", "target_id": target_id, **stats}

    def _delete_objekt(self, objekt_id: str):
        with self.db.session_scope() as session:
            session.query(Objekt).filter(Objekt.id == objekt_id).delete(synchronize_session=False)
