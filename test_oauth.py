#!/usr/bin/env python3
"""
Tests for the OAuth install callback.
"""

import uuid
from urllib.parse import quote

import pytest

from api.services.oauth_service import SUCCESS_MESSAGE, WEBHOOK_SUBSCRIPTIONS
from database.models import ApprovedSubaccount, GHLConnection

from conftest import FakeResponse, make_connection

CALLBACK = "/api/v1/oauth/callback"
TOKENS = {
    "access_token": "new-access",
    "refresh_token": "new-refresh",
    "expires_in": 86399,
    "locationId": "loc-new",
    "companyId": "comp-1",
    "scope": "contacts.readonly conversations.write",
}


def _approve(db, location_id="loc-new"):
    with db.session_scope() as session:
        session.add(ApprovedSubaccount(location_id=location_id, name="Testbüro"))


def _callback(client, **params):
    response = client.get(CALLBACK, params=params, follow_redirects=False)
    assert response.status_code == 302
    return response.headers["location"]


@pytest.fixture
def ghl(http):
    http.add("POST", "/oauth/token", FakeResponse(200, TOKENS))
    http.add("GET", "/locations/loc-new", FakeResponse(200, {"location": {"name": "Büro Nord", "timezone": "Europe/Berlin"}}))
    http.add("GET", "/webhooks/", FakeResponse(200, {"webhooks": []}))
    http.add("POST", "/webhooks/", FakeResponse(200, {"id": "wh-1"}))
    return http


def test_successful_install_stores_connection_and_registers_webhooks(client, db, ghl, config):
    _approve(db)
    user_id = str(uuid.uuid4())

    target = _callback(client, code="auth-code", state=user_id)

    assert target == f"{config.APP_SUCCESS_REDIRECT}?message={quote(SUCCESS_MESSAGE)}"
    with db.session_scope() as session:
        connection = session.query(GHLConnection).one()
        assert connection.user_id == user_id
        assert connection.location_id == "loc-new"
        assert connection.location_name == "Büro Nord"
        assert connection.is_active is True
    assert len(ghl.calls_to("POST", "/webhooks/")) == len(WEBHOOK_SUBSCRIPTIONS)
    assert ghl.calls_to("POST", "/oauth/token")[0]["data"]["grant_type"] == "authorization_code"


def test_reinstall_moves_location_to_new_user(client, db, ghl):
    _approve(db)
    previous = make_connection(db, location_id="loc-new")
    ghl.add("GET", "/webhooks/", FakeResponse(200, {"webhooks": [{"id": "wh-old", "url": "https://sync.example.com/api/v1/webhooks/ghl"}]}))

    _callback(client, code="auth-code", state=str(uuid.uuid4()))

    assert db.get_connection(previous["id"])["is_active"] is False
    assert len(db.get_active_connections()) == 1
    assert ghl.calls_to("POST", "/webhooks/") == []


@pytest.mark.parametrize("params, message", [
    ({"error": "access_denied", "error_description": "Abgelehnt"}, "Abgelehnt"),
    ({"state": "x"}, "Kein Autorisierungscode erhalten"),
    ({"code": "abc"}, "Benutzer-ID fehlt"),
    ({"code": "abc", "state": "not-a-uuid"}, "Ungültige Benutzer-ID"),
])
def test_invalid_callbacks_redirect_to_error(client, config, params, message):
    assert _callback(client, **params) == f"{config.APP_ERROR_REDIRECT}?message={quote(message)}"


def test_unapproved_location_is_refused(client, db, ghl, config):
    target = _callback(client, code="auth-code", state=str(uuid.uuid4()))

    assert target == f"{config.APP_ERROR_REDIRECT}?message={quote('Dieser Account ist nicht freigeschaltet')}"
    with db.session_scope() as session:
        assert session.query(GHLConnection).count() == 0


def test_failed_code_exchange(client, http, config):
    http.add("POST", "/oauth/token", FakeResponse(401, {"error": "invalid_grant"}))

    target = _callback(client, code="stale", state=str(uuid.uuid4()))

    assert target.startswith(f"{config.APP_ERROR_REDIRECT}?message=")
    assert quote("Token-Austausch fehlgeschlagen") in target
