#!/usr/bin/env python3
"""
Tests for the GHL webhook endpoint and the per-event handlers.
"""

from database.models import FollowupApproval, Lead, Message, SyncLog, Todo

from conftest import make_connection, make_lead

WEBHOOK = "/api/v1/webhooks/ghl"


def _count(db, model):
    with db.session_scope() as session:
        return session.query(model).count()


def _pending_approval(db, lead_id):
    with db.session_scope() as session:
        session.add(FollowupApproval(lead_id=lead_id, message="Entwurf", status="pending"))


def test_webhook_check_answers_ok(client):
    assert client.get(WEBHOOK).json()["status"] == "ok"


def test_payload_without_location_is_acknowledged_without_writes(client, db):
    response = client.post(WEBHOOK, json={})

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Webhook received"}
    assert _count(db, SyncLog) == 0
    assert _count(db, Message) == 0


def test_invalid_json_is_rejected(client):
    response = client.post(WEBHOOK, content=b"{not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 400


def test_unknown_location_is_not_found(client, db):
    make_connection(db, location_id="loc-known")

    response = client.post(WEBHOOK, json={"type": "InboundMessage", "locationId": "loc-other"})

    assert response.status_code == 404
    assert response.json()["error"] == "Connection not found"


def test_inbound_message_is_stored_and_triggers_followups(client, db, invoker):
    connection = make_connection(db, location_id="loc-1")
    lead = make_lead(db, connection, ghl_contact_id="c1")
    _pending_approval(db, lead["id"])

    payload = {
        "type": "InboundMessage",
        "locationId": "loc-1",
        "contactId": "c1",
        "messageId": "m1",
        "conversationId": "conv1",
        "body": "Ist der Keller trocken?",
        "direction": "inbound",
        "dateAdded": "2024-05-01T10:00:00Z",
    }
    response = client.post(WEBHOOK, json=payload)

    assert response.status_code == 200
    assert response.json()["new_message"] is True
    with db.session_scope() as session:
        message = session.query(Message).one()
        assert (message.type, message.status, message.content) == ("incoming", "delivered", "Ist der Keller trocken?")
        assert session.query(FollowupApproval).count() == 0
        assert session.query(SyncLog).one().status == "success"
    assert invoker.paths() == [f"/api/v1/leads/{lead['id']}/analyze", "/api/v1/followups/generate"]

    # A redelivered webhook neither duplicates nor re-triggers
    client.post(WEBHOOK, json=payload)
    assert _count(db, Message) == 1
    assert len(invoker.calls) == 2


def test_inbound_message_of_opted_in_lead_triggers_auto_respond(client, db, invoker):
    connection = make_connection(db, location_id="loc-1")
    lead = make_lead(db, connection, ghl_contact_id="c1", auto_respond_enabled=True)

    client.post(WEBHOOK, json={
        "type": "InboundMessage", "locationId": "loc-1", "contactId": "c1",
        "messageId": "m1", "body": "Gibt es einen Aufzug?", "direction": "inbound",
    })

    assert invoker.paths()[-1] == "/api/v1/messages/auto-respond"
    assert invoker.calls[-1][1] == {"lead_id": lead["id"], "message_content": "Gibt es einen Aufzug?"}

    # The outbound echo of the sent answer does not answer itself
    client.post(WEBHOOK, json={
        "type": "OutboundMessage", "locationId": "loc-1", "contactId": "c1",
        "messageId": "m2", "body": "Ja, seit 2020.", "direction": "outbound",
    })
    assert invoker.paths().count("/api/v1/messages/auto-respond") == 1


def test_outbound_message_triggers_learning(client, db, invoker):
    connection = make_connection(db, location_id="loc-1")
    lead = make_lead(db, connection, ghl_contact_id="c1")
    _pending_approval(db, lead["id"])

    client.post(WEBHOOK, json={
        "type": "OutboundMessage", "locationId": "loc-1", "contactId": "c1",
        "messageId": "m2", "body": "Ja, der Keller ist trocken.", "direction": "outbound",
    })

    learn = [payload for path, payload in invoker.calls if path == "/api/v1/knowledge/learn"]
    assert learn == [{"lead_id": lead["id"], "user_id": connection["user_id"],
                      "response_content": "Ja, der Keller ist trocken."}]
    # Only an answer from the lead discards the pending draft
    assert _count(db, FollowupApproval) == 1


def test_status_update_moves_delivery_status(client, db):
    connection = make_connection(db, location_id="loc-1")
    make_lead(db, connection, ghl_contact_id="c1")
    base = {"locationId": "loc-1", "contactId": "c1", "messageId": "m3"}

    client.post(WEBHOOK, json={**base, "type": "OutboundMessage", "body": "Hallo", "status": "sent"})
    client.post(WEBHOOK, json={**base, "type": "MessageStatusUpdate", "status": "failed",
                               "error": "24 hour window expired"})

    with db.session_scope() as session:
        message = session.query(Message).one()
        assert message.status == "failed"
        assert message.content == "Hallo"
        assert "Vorlage" in message.error_message


def test_message_for_unknown_contact_is_not_processed(client, db):
    make_connection(db, location_id="loc-1")

    response = client.post(WEBHOOK, json={"type": "InboundMessage", "locationId": "loc-1",
                                          "contactId": "nobody", "body": "Hallo"})

    assert response.status_code == 200
    assert response.json()["processed"] is False


def test_contact_webhook_upserts_lead(client, db):
    make_connection(db, location_id="loc-1")

    for name in ("Erika", "Erika Maria"):
        response = client.post(WEBHOOK, json={
            "type": "ContactUpdate", "locationId": "loc-1", "id": "c9",
            "firstName": name, "tags": ["besichtigung"],
        })
        assert response.json()["processed"] is True

    with db.session_scope() as session:
        lead = session.query(Lead).one()
        assert lead.name == "Erika Maria"
        assert lead.status == "besichtigt"


def test_task_lifecycle(client, db):
    connection = make_connection(db, location_id="loc-1")
    make_lead(db, connection, ghl_contact_id="c1")
    base = {"locationId": "loc-1", "contactId": "c1"}

    done = client.post(WEBHOOK, json={**base, "type": "TaskCreate", "id": "t0", "title": "Alt", "completed": True})
    assert done.json()["processed"] is False

    client.post(WEBHOOK, json={**base, "type": "TaskCreate", "id": "t1", "title": "Rückruf"})
    client.post(WEBHOOK, json={**base, "type": "TaskComplete", "id": "t1", "title": "Rückruf"})
    with db.session_scope() as session:
        todo = session.query(Todo).one()
        assert todo.completed is True
        assert todo.type == "nachricht"

    client.post(WEBHOOK, json={**base, "type": "TaskDelete", "id": "t1"})
    assert _count(db, Todo) == 0


def test_finance_appointment_marks_beratung(client, db, http):
    from conftest import FakeResponse

    agent = make_connection(db, location_id="loc-agent")
    lead = make_lead(db, agent, email="kunde@example.de")
    make_connection(db, location_id="loc-finance")
    http.add("GET", "/contacts/sf-1", FakeResponse(200, {"contact": {"id": "sf-1", "email": "Kunde@Example.de"}}))

    response = client.post(WEBHOOK, json={
        "type": "AppointmentCreate", "locationId": "loc-finance",
        "appointment": {"id": "a1", "contactId": "sf-1", "title": "Finanzierungsberatung"},
    })

    assert response.json()["beratung_lead_id"] == lead["id"]
    stored = db.get_lead(lead["id"])
    assert stored["sf_pipeline_stage"] == "beratung_gebucht"
    assert stored["sf_reached_beratung"] is True
    assert stored["sf_contact_id"] == "sf-1"


def test_handler_failure_answers_500_and_logs(client, db, services, monkeypatch):
    make_connection(db, location_id="loc-1")

    def broken(connection, payload):
        raise RuntimeError("kaputt")

    monkeypatch.setitem(services.webhooks.handlers, "ContactCreate", broken)
    response = client.post(WEBHOOK, json={"type": "ContactCreate", "locationId": "loc-1", "id": "c1"})

    assert response.status_code == 500
    with db.session_scope() as session:
        assert session.query(SyncLog).one().status == "error"


def test_unhandled_event_type_is_acknowledged(client, db):
    make_connection(db, location_id="loc-1")
    response = client.post(WEBHOOK, json={"type": "NoteCreate", "locationId": "loc-1"})
    assert response.status_code == 200
    assert response.json()["processed"] is False
