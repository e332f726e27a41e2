"""
GHL Contact Classifier – ordered rule tables for mapping free-text CRM values to local enums.

Use anywhere (webhooks, sync, scripts) without DB or GHL API dependencies.
Each table is a list of (predicate, result) pairs; the first matching predicate wins.
"""

from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

Rule = Tuple[Callable[[Any], bool], str]

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_LEAD_STATUS = "neu"
DEFAULT_TODO_TYPE = "nachricht"
URGENT_PRIORITY = "dringend"
NORMAL_PRIORITY = "normal"

OBJEKT_TAG_PREFIX = "objekt:"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def get_contact_tags_list(ghl_contact: Dict[str, Any]) -> List[str]:
    """Return normalized list of tag strings (lowercase) from a GHL contact."""
    tags_raw = ghl_contact.get("tags") or []
    if isinstance(tags_raw, str):
        return [t.strip().lower() for t in tags_raw.split(",") if t.strip()]
    if isinstance(tags_raw, list):
        out = []
        for t in tags_raw:
            if isinstance(t, str):
                if t.strip():
                    out.append(t.strip().lower())
            elif isinstance(t, dict):
                name = (t.get("name") or t.get("tag") or "").strip().lower()
                if name:
                    out.append(name)
            elif t is not None:
                out.append(str(t).strip().lower())
        return out
    return []


def any_contains(*needles: str) -> Callable[[Iterable[str]], bool]:
    """Predicate: some haystack string contains one of the needles"""
    def predicate(haystacks: Iterable[str]) -> bool:
        return any(needle in hay for hay in haystacks for needle in needles)
    return predicate


def text_contains(*needles: str) -> Callable[[str], bool]:
    """Predicate: the (lowercased) text contains one of the needles"""
    def predicate(value: str) -> bool:
        return any(needle in value for needle in needles)
    return predicate


def first_match(rules: Sequence[Rule], value: Any, default: Optional[str] = None) -> Optional[str]:
    for predicate, result in rules:
        if predicate(value):
            return result
    return default


# ---------------------------------------------------------------------------
# Rule tables
# ---------------------------------------------------------------------------

# Contact tags -> lead status
LEAD_STATUS_RULES: List[Rule] = [
    (any_contains("käufer", "kaeufer", "gekauft", "buyer", "purchased"), "gekauft"),
    (any_contains("besichtigt", "besichtigung", "viewed"), "besichtigt"),
    (any_contains("finanziert", "simpli", "financed"), "simpli_bestaetigt"),
    (any_contains("kontaktiert", "contacted"), "kontaktiert"),
]

# Task title -> todo type
TODO_TYPE_RULES: List[Rule] = [
    (text_contains("anruf", "call", "phone"), "anruf"),
    (text_contains("besichtigung", "termin", "viewing"), "besichtigung"),
    (text_contains("finanzierung", "financing"), "finanzierung"),
    (text_contains("dokument", "document", "unterlagen"), "dokument"),
]

# GHL task priority -> local priority
PRIORITY_RULES: List[Rule] = [
    (lambda value: value in ("high", "urgent"), URGENT_PRIORITY),
]


def get_lead_status_from_tags(ghl_contact: Dict[str, Any]) -> str:
    """Coarse lead status derived from tags, 'neu' when no rule matches."""
    return first_match(LEAD_STATUS_RULES, get_contact_tags_list(ghl_contact), DEFAULT_LEAD_STATUS)


def get_todo_type(title: Optional[str]) -> str:
    return first_match(TODO_TYPE_RULES, (title or "").lower(), DEFAULT_TODO_TYPE)


def get_todo_priority(priority: Optional[str]) -> str:
    return first_match(PRIORITY_RULES, (priority or "").strip().lower(), NORMAL_PRIORITY)


def get_objekt_tag_value(ghl_contact: Dict[str, Any]) -> Optional[str]:
    """Value of the first tag shaped like 'objekt: <name>' (original casing kept)."""
    tags_raw = ghl_contact.get("tags") or []
    if isinstance(tags_raw, str):
        tags_raw = tags_raw.split(",")
    for tag in tags_raw:
        if not isinstance(tag, str):
            continue
        if tag.strip().lower().startswith(OBJEKT_TAG_PREFIX):
            value = tag.strip()[len(OBJEKT_TAG_PREFIX):].strip()
            if value:
                return value
    return None
