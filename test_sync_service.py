#!/usr/bin/env python3
"""
Tests for the polling sync: token handling per connection, pagination,
idempotent upserts and per-entity isolation.
"""

from datetime import datetime, timedelta

import pytest

from api.services.ghl_sync_service import GHLSyncService
from database.models import Lead, Message, SyncLog, Todo, utcnow

from conftest import FakeResponse, make_connection, make_lead

API = "https://services.leadconnectorhq.com"


def _service(db, config, http, no_sleep, llm=None):
    return GHLSyncService(db, config, http_session=http, llm=llm, sleep=no_sleep)


def _contacts_page(contacts, next_url=None):
    return FakeResponse(200, {"contacts": contacts, "meta": {"nextPageUrl": next_url}})


def test_failed_refresh_deactivates_only_that_connection(db, config, http, no_sleep):
    expired = make_connection(db, token_expires_at=utcnow() - timedelta(minutes=1))
    healthy = make_connection(db)
    http.add("POST", "/oauth/token", FakeResponse(400, {"error": "invalid_grant"}))
    http.add("GET", "/contacts/", _contacts_page([{"id": "c1", "firstName": "Erika"}]))

    result = _service(db, config, http, no_sleep).sync(sync_type="contacts")

    assert result["synced_connections"] == 2
    assert result["results"][expired["id"]]["token_failure"] is True
    assert result["results"][healthy["id"]]["entities"]["contacts"]["synced"] == 1
    assert db.get_connection(expired["id"])["is_active"] is False
    assert db.get_connection(healthy["id"])["is_active"] is True
    with db.session_scope() as session:
        statuses = {log.connection_id: log.status for log in session.query(SyncLog).all()}
    assert statuses == {expired["id"]: "error", healthy["id"]: "success"}


def test_refresh_stores_new_tokens(db, config, http, no_sleep):
    connection = make_connection(db, token_expires_at=utcnow() + timedelta(minutes=2))
    http.add("POST", "/oauth/token", FakeResponse(200, {
        "access_token": "fresh-access", "refresh_token": "fresh-refresh", "expires_in": 3600
    }))
    http.add("GET", "/contacts/", _contacts_page([]))

    _service(db, config, http, no_sleep).sync(connection_id=connection["id"], sync_type="contacts")

    stored = db.get_connection(connection["id"])
    assert stored["access_token"] == "fresh-access"
    assert stored["refresh_token"] == "fresh-refresh"
    assert stored["token_expires_at"] > utcnow() + timedelta(minutes=50)
    assert http.calls_to("GET", "/contacts/")[0]["headers"]["Authorization"] == "Bearer fresh-access"


def test_contacts_follow_next_page_url_and_upsert_idempotently(db, config, http, no_sleep):
    connection = make_connection(db)
    page_two = f"{API}/contacts/?startAfterId=c2"
    pages = [
        _contacts_page([{"id": "c1", "firstName": "Anna"}, {"id": "c2", "firstName": "Ben"}], page_two),
        _contacts_page([{"id": "c3", "firstName": "Clara", "tags": ["objekt: Altbau"]}]),
    ]
    http.add("GET", "/contacts/", lambda url, kwargs: pages[1] if "startAfterId" in url else pages[0])
    service = _service(db, config, http, no_sleep)

    first = service.sync(user_id=connection["user_id"], sync_type="contacts")
    service.sync(user_id=connection["user_id"], sync_type="contacts")

    stats = first["results"][connection["id"]]["entities"]["contacts"]
    assert stats["synced"] == 3
    assert stats["objekte_assigned"] == 1
    with db.session_scope() as session:
        assert session.query(Lead).count() == 3
    assert len(http.calls_to("GET", "startAfterId")) == 2


def test_failing_entity_does_not_stop_the_others(db, config, http, no_sleep):
    connection = make_connection(db)
    make_lead(db, connection, ghl_contact_id="c1")
    http.add("GET", "/contacts/", FakeResponse(500, {"message": "boom"}))
    http.add("GET", "/tasks", FakeResponse(200, {"tasks": [{"id": "t1", "title": "Anruf"}]}))

    result = _service(db, config, http, no_sleep).sync(connection_id=connection["id"], sync_type="full")

    entities = result["results"][connection["id"]]["entities"]
    assert entities["contacts"]["errors"] == 1
    assert entities["tasks"]["synced"] == 1
    with db.session_scope() as session:
        log = session.query(SyncLog).one()
        assert log.status == "partial"
        assert log.tasks_synced == 1


def test_conversation_messages_are_stored_once(db, config, http, no_sleep):
    connection = make_connection(db)
    lead = make_lead(db, connection, ghl_contact_id="c1")
    http.add("GET", "/conversations/", FakeResponse(200, {"conversations": [{"id": "conv1"}]}))
    http.add("GET", "/conversations/conv1/messages", [
        FakeResponse(200, {"messages": {"messages": [
            {"id": "m1", "direction": "inbound", "body": "Noch frei?", "dateAdded": "2024-05-01T10:00:00Z"},
            {"id": "m2", "direction": "outbound", "body": "Ja", "status": "sent",
             "dateAdded": "2024-05-01T10:05:00Z"},
        ]}}),
        FakeResponse(200, {"messages": [
            {"id": "m2", "direction": "outbound", "body": "Ja (bearbeitet)", "status": "read",
             "dateAdded": "2024-05-01T10:05:00Z"},
        ]}),
    ])
    service = _service(db, config, http, no_sleep)

    service.sync(connection_id=connection["id"], sync_type="conversations")
    service.sync(connection_id=connection["id"], sync_type="conversations")

    with db.session_scope() as session:
        messages = {m.ghl_message_id: m for m in session.query(Message).all()}
        assert set(messages) == {"m1", "m2"}
        assert messages["m2"].status == "read"
        assert messages["m2"].content == "Ja"
        assert messages["m1"].ghl_conversation_id == "conv1"
    assert db.get_lead(lead["id"])["last_message_at"] == datetime(2024, 5, 1, 10, 5)


def test_appointments_only_for_known_contacts(db, config, http, no_sleep):
    connection = make_connection(db)
    make_lead(db, connection, ghl_contact_id="c1")
    http.add("GET", "/calendars/", FakeResponse(200, {"calendars": [{"id": "cal1"}]}))
    http.add("GET", "/calendars/events", FakeResponse(200, {"events": [
        {"id": "e1", "contactId": "c1", "title": "Besichtigung", "startTime": "2024-06-01T10:00:00Z"},
        {"id": "e2", "contactId": "unknown", "title": "Fremd"},
    ]}))

    result = _service(db, config, http, no_sleep).sync(connection_id=connection["id"], sync_type="appointments")

    assert result["results"][connection["id"]]["entities"]["appointments"] == {"synced": 1, "skipped": 1, "errors": 0}
    with db.session_scope() as session:
        assert [t.ghl_event_id for t in session.query(Todo).all()] == ["e1"]


def test_non_german_tasks_are_translated(db, config, http, no_sleep, llm, provider, monkeypatch):
    monkeypatch.setattr(config, "TRANSLATE_TASKS", True)
    connection = make_connection(db)
    make_lead(db, connection, ghl_contact_id="c1")
    provider.replies = [{"isGerman": False, "translation": "Kunden anrufen"}]
    http.add("GET", "/tasks", FakeResponse(200, {"tasks": [{"id": "t1", "title": "Call the customer"}]}))
    http.add("PUT", "/tasks/t1", FakeResponse(200, {}))

    result = _service(db, config, http, no_sleep, llm=llm).sync(connection_id=connection["id"], sync_type="tasks")

    assert result["results"][connection["id"]]["entities"]["tasks"]["translated"] == 1
    assert http.calls_to("PUT", "/tasks/t1")[0]["json"] == {"title": "Kunden anrufen"}
    with db.session_scope() as session:
        assert session.query(Todo).one().title == "Kunden anrufen"


def test_complete_todo_pushes_to_ghl(db, config, http, no_sleep):
    connection = make_connection(db)
    lead = make_lead(db, connection, ghl_contact_id="c1")
    with db.session_scope() as session:
        todo = Todo(lead_id=lead["id"], ghl_task_id="t1", title="Anruf")
        session.add(todo)
        session.flush()
        todo_id = todo.id
    http.add("PUT", "/tasks/t1/completed", FakeResponse(200, {}))

    result = _service(db, config, http, no_sleep).complete_todo(todo_id)

    assert result == {"success": True, "synced_to_ghl": True}
    assert http.calls_to("PUT", "/tasks/t1/completed")[0]["json"] == {"completed": True}


def test_complete_unknown_todo_raises(db, config, http, no_sleep):
    with pytest.raises(LookupError):
        _service(db, config, http, no_sleep).complete_todo("missing")


def test_unknown_sync_type_is_rejected(db, config, http, no_sleep):
    with pytest.raises(ValueError):
        _service(db, config, http, no_sleep).sync(sync_type="everything")
