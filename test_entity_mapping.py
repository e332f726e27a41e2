#!/usr/bin/env python3
"""
Tests for the GHL payload mappers and the tag/title classifiers.
"""

import json
from datetime import datetime

import pytest

from api.services.ghl_entity_mapper import (
    DELIVERY_FAILED_ERROR,
    STAGE_MAPPING,
    WINDOW_EXPIRED_ERROR,
    MappingError,
    map_appointment_to_todo,
    map_contact_to_lead,
    map_delivery_status,
    map_message,
    map_stage,
    map_task_to_todo,
    merge_stage_flags,
    parse_ghl_datetime,
    strip_html,
)
from utils import get_lead_status_from_tags, get_objekt_tag_value, get_todo_priority, get_todo_type

CONNECTION = {"id": "conn-1", "user_id": "user-1", "location_id": "loc-1"}


def test_contact_maps_to_lead_with_tag_status():
    contact = {
        "id": "c1",
        "firstName": "Max",
        "lastName": "Mustermann",
        "email": " Max@Example.DE ",
        "phone": "+49 171 1234567",
        "tags": ["Käufer"],
        "customFields": [{"id": "f1", "value": "Musterstraße 5"}],
    }

    lead = map_contact_to_lead(contact, CONNECTION)

    assert lead["ghl_contact_id"] == "c1"
    assert lead["name"] == "Max Mustermann"
    assert lead["email"] == "max@example.de"
    assert lead["status"] == "gekauft"
    assert lead["source"] == "extern"
    assert lead["ghl_location_id"] == "loc-1"
    assert lead["connection_id"] == "conn-1"
    assert json.loads(lead["notes"]) == [{"id": "f1", "value": "Musterstraße 5"}]


def test_contact_without_name_falls_back_to_unbekannt():
    lead = map_contact_to_lead({"id": "c2"}, CONNECTION)
    assert lead["name"] == "Unbekannt"
    assert lead["status"] == "neu"
    assert lead["email"] is None


def test_contact_without_id_raises():
    with pytest.raises(MappingError):
        map_contact_to_lead({"firstName": "Ohne"}, CONNECTION)


@pytest.mark.parametrize("tags, expected", [
    (["buyer"], "gekauft"),
    (["Besichtigung geplant"], "besichtigt"),
    (["simpli-finance"], "simpli_bestaetigt"),
    ("kontaktiert, newsletter", "kontaktiert"),
    ([], "neu"),
])
def test_lead_status_rules(tags, expected):
    assert get_lead_status_from_tags({"tags": tags}) == expected


def test_objekt_tag_keeps_original_casing():
    assert get_objekt_tag_value({"tags": ["vip", "Objekt: Musterstraße 5"]}) == "Musterstraße 5"
    assert get_objekt_tag_value({"tags": ["objekt:"]}) is None


def test_message_mapping_direction_and_status():
    message = {
        "id": "m1",
        "direction": "inbound",
        "body": "Ist die Wohnung noch frei?",
        "status": "read",
        "dateAdded": "2024-05-01T10:00:00Z",
    }

    record = map_message(message, "lead-1", "conv-1")

    assert record["type"] == "incoming"
    assert record["status"] == "read"
    assert record["content"] == "Ist die Wohnung noch frei?"
    assert record["ghl_conversation_id"] == "conv-1"
    assert record["sent_at"] == datetime(2024, 5, 1, 10, 0, 0)


def test_delivery_failures_mentioning_window_get_template_hint():
    assert map_delivery_status("failed", "outgoing", "24 hour window closed") == ("failed", WINDOW_EXPIRED_ERROR)
    assert map_delivery_status("undelivered", "outgoing", "Carrier rejected number") == ("failed", "Carrier rejected number")
    assert map_delivery_status("error", "outgoing") == ("failed", DELIVERY_FAILED_ERROR)
    assert map_delivery_status(None, "outgoing") == ("sent", None)
    assert map_delivery_status(None, "incoming") == ("delivered", None)


def test_parse_ghl_datetime_formats():
    assert parse_ghl_datetime("2024-05-01T12:00:00+02:00") == datetime(2024, 5, 1, 10, 0, 0)
    assert parse_ghl_datetime(1714557600000) == datetime(2024, 5, 1, 10, 0, 0)
    assert parse_ghl_datetime("not a date") is None
    assert parse_ghl_datetime(None) is None


def test_strip_html():
    assert strip_html("<p>Anruf&nbsp;bei <b>Max</b> &amp; Co</p>") == "Anruf bei Max & Co"
    assert strip_html(None) == ""


def test_task_mapping():
    lead = {"id": "lead-1", "user_id": "user-1", "objekt_id": None}
    task = {"id": "t1", "title": "<b>Rückruf</b> Anruf vereinbaren", "priority": "high",
            "status": "completed", "dueDate": "2024-06-01T08:00:00Z"}

    todo = map_task_to_todo(task, lead)

    assert todo["ghl_task_id"] == "t1"
    assert todo["title"] == "Rückruf Anruf vereinbaren"
    assert todo["type"] == "anruf"
    assert todo["priority"] == "dringend"
    assert todo["completed"] is True
    assert todo["lead_id"] == "lead-1"


def test_task_title_defaults_and_types():
    lead = {"id": "lead-1"}
    assert map_task_to_todo({"id": "t2"}, lead)["title"] == "Aufgabe"
    assert get_todo_type("Unterlagen anfordern") == "dokument"
    assert get_todo_type("Finanzierung klären") == "finanzierung"
    assert get_todo_type("Besichtigung Montag") == "besichtigung"
    assert get_todo_type("Irgendwas") == "nachricht"
    assert get_todo_priority("urgent") == "dringend"
    assert get_todo_priority(None) == "normal"


def test_appointment_mapping():
    event = {"id": "e1", "title": "", "status": "confirmed", "startTime": "2024-06-02T09:30:00Z"}
    todo = map_appointment_to_todo(event, {"id": "lead-1", "user_id": "user-1"})

    assert todo["ghl_event_id"] == "e1"
    assert todo["title"] == "Termin"
    assert todo["type"] == "besichtigung"
    assert todo["completed"] is False
    assert todo["due_date"] == datetime(2024, 6, 2, 9, 30)


def test_every_stage_label_maps_to_its_key():
    for label, key in STAGE_MAPPING.items():
        assert map_stage(label) == key
    assert map_stage("🎉 Vertrag   unterschrieben!") == "vertrag_unterschrieben"
    assert map_stage("Neue Stage") == "Neue Stage"
    assert map_stage(None) is None


def test_stage_flags_are_high_water_marks():
    current = {"sf_reached_beratung": True, "sf_reached_bestaetigung": True, "sf_reached_warte_kredit": True}

    flags = merge_stage_flags(current, "beratung_gebucht")

    assert flags["sf_reached_warte_kredit"] is True
    assert flags["sf_reached_vertrag"] is False

    flags = merge_stage_flags({}, "vertrag_unterschrieben")
    assert flags["sf_reached_beratung"] is True
    assert flags["sf_reached_auszahlung"] is False

    flags = merge_stage_flags({"sf_reached_beratung": True}, "blockiert")
    assert flags["sf_blockiert"] is True
    assert flags["sf_reached_beratung"] is True


def test_gekauft_tag_scenario():
    lead = map_contact_to_lead({"id": "c1", "firstName": "Max", "lastName": "Mustermann", "tags": ["gekauft"]},
                               CONNECTION)
    assert (lead["name"], lead["status"]) == ("Max Mustermann", "gekauft")
