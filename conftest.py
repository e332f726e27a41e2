"""
Shared pytest fixtures: in-memory database, scripted HTTP session, fake LLM
provider and a recording self-invoker.
"""

import json
from datetime import timedelta

import pytest

from config import AppConfig
from api.services.llm_adapter import LLMAdapter
from database.models import GHLConnection, Lead, Message, model_to_dict, new_id, utcnow
from database.simple_connection import SimpleDatabase, set_db


class StubConfig(AppConfig):
    SERVICE_ROLE_KEY = "test-service-key"
    FINANCE_LOCATION_ID = "loc-finance"
    GHL_WEBHOOK_URL = "https://sync.example.com/api/v1/webhooks/ghl"
    APP_SUCCESS_REDIRECT = "simpliimmo://oauth/success"
    APP_ERROR_REDIRECT = "simpliimmo://oauth/error"
    BASE_URL = "http://internal.test"
    ANALYSIS_BATCH_SIZE = 3
    ANALYSIS_WORKERS = 2
    TRANSLATE_TASKS = False
    CONTACTS_PAGE_DELAY = 0
    CONVERSATIONS_DELAY = 0
    TASKS_DELAY = 0
    OPPORTUNITY_CONTACT_DELAY = 0


class FakeResponse:
    def __init__(self, status_code=200, json_data=None, text=None):
        self.status_code = status_code
        self._json = json_data
        if text is None:
            text = json.dumps(json_data) if json_data is not None else ""
        self.text = text

    def json(self):
        if self._json is None:
            return json.loads(self.text)
        return self._json


class FakeSession:
    """
    Stand-in for requests.Session. Routes are (method, url fragment) pairs;
    the most recently added matching route answers. A route given a list of
    responses hands them out in order and repeats the last one.
    """

    def __init__(self):
        self.routes = []
        self.calls = []

    def add(self, method, url_fragment, response):
        self.routes.append((method.upper(), url_fragment, response))
        return self

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method.upper(), "url": url, **kwargs})
        for route_method, fragment, response in reversed(self.routes):
            if route_method == method.upper() and fragment in url:
                if callable(response):
                    return response(url, kwargs)
                if isinstance(response, list):
                    return response.pop(0) if len(response) > 1 else response[0]
                return response
        return FakeResponse(404, {"message": f"No fake route for {method} {url}"})

    def calls_to(self, method, url_fragment):
        return [c for c in self.calls if c["method"] == method.upper() and url_fragment in c["url"]]


class FakeProvider:
    name = "fake"

    def __init__(self, replies=None):
        self.replies = replies if callable(replies) else list(replies or [])
        self.prompts = []

    def complete(self, prompt, temperature, max_tokens, system=None):
        self.prompts.append({"prompt": prompt, "system": system, "temperature": temperature})
        if callable(self.replies):
            return self.replies(prompt)
        if not self.replies:
            return "{}"
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        return reply if isinstance(reply, str) else json.dumps(reply)


class RecordingInvoker:
    def __init__(self):
        self.calls = []

    def trigger(self, path, payload):
        self.calls.append((path, payload))

    def paths(self):
        return [path for path, _ in self.calls]


@pytest.fixture
def config():
    return StubConfig


@pytest.fixture
def db():
    database = SimpleDatabase("sqlite:///:memory:")
    set_db(database)
    yield database
    set_db(None)
    database.engine.dispose()


@pytest.fixture
def http():
    return FakeSession()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def llm(provider):
    return LLMAdapter(provider)


@pytest.fixture
def invoker():
    return RecordingInvoker()


@pytest.fixture
def no_sleep():
    return lambda seconds: None


def make_connection(db, **overrides):
    data = {
        "id": new_id(),
        "user_id": new_id(),
        "location_id": f"loc-{new_id()[:8]}",
        "access_token": "access-token",
        "refresh_token": "refresh-token",
        "token_expires_at": utcnow() + timedelta(hours=12),
        "form_type": "sie",
        "is_active": True,
    }
    data.update(overrides)
    with db.session_scope() as session:
        connection = GHLConnection(**data)
        session.add(connection)
        session.flush()
        return model_to_dict(connection)


def make_lead(db, connection, **overrides):
    data = {
        "id": new_id(),
        "ghl_contact_id": f"contact-{new_id()[:8]}",
        "ghl_location_id": connection["location_id"],
        "connection_id": connection["id"],
        "user_id": connection["user_id"],
        "name": "Max Mustermann",
        "status": "neu",
    }
    data.update(overrides)
    with db.session_scope() as session:
        lead = Lead(**data)
        session.add(lead)
        session.flush()
        return model_to_dict(lead)


def make_message(db, lead_id, content="Hallo", type="incoming", sent_at=None, **overrides):
    data = {
        "lead_id": lead_id,
        "ghl_message_id": f"msg-{new_id()[:12]}",
        "type": type,
        "content": content,
        "status": "delivered",
        "sent_at": sent_at or utcnow(),
    }
    data.update(overrides)
    with db.session_scope() as session:
        message = Message(**data)
        session.add(message)
        session.flush()
        return model_to_dict(message)


@pytest.fixture
def services(db, config, http, llm, invoker, no_sleep):
    from api.services.registry import ServiceRegistry
    return ServiceRegistry(db, config, http_session=http, llm=llm, invoker=invoker, sleep=no_sleep)


@pytest.fixture
def client(services, config, monkeypatch):
    """TestClient with the registry swapped in and the service key set"""
    from fastapi.testclient import TestClient
    from api.services.registry import get_services
    from main import app

    monkeypatch.setattr(AppConfig, "SERVICE_ROLE_KEY", config.SERVICE_ROLE_KEY)
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(config):
    return {"Authorization": f"Bearer {config.SERVICE_ROLE_KEY}"}
