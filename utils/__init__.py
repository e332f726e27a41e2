# utils/__init__.py
from .ghl_contact_classifier import (
    get_contact_tags_list,
    get_lead_status_from_tags,
    get_todo_type,
    get_todo_priority,
    get_objekt_tag_value,
    first_match,
    LEAD_STATUS_RULES,
    TODO_TYPE_RULES,
    PRIORITY_RULES,
    DEFAULT_LEAD_STATUS,
    DEFAULT_TODO_TYPE,
    URGENT_PRIORITY,
    NORMAL_PRIORITY,
)

__all__ = [
    'get_contact_tags_list', 'get_lead_status_from_tags', 'get_todo_type',
    'get_todo_priority', 'get_objekt_tag_value', 'first_match',
    'LEAD_STATUS_RULES', 'TODO_TYPE_RULES', 'PRIORITY_RULES',
    'DEFAULT_LEAD_STATUS', 'DEFAULT_TODO_TYPE', 'URGENT_PRIORITY', 'NORMAL_PRIORITY',
]
