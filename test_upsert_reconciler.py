#!/usr/bin/env python3
"""
Tests for keyed upserts: native ON CONFLICT path and the select-then-write fallback.
"""

from api.services.upsert_reconciler import UpsertReconciler
from database.models import Lead, Todo

import pytest


def _lead_record(**overrides):
    record = {
        "ghl_contact_id": "contact-1",
        "ghl_location_id": "loc-1",
        "name": "Max Mustermann",
        "email": "max@example.de",
        "status": "neu",
        "ghl_data": {"id": "contact-1"},
    }
    record.update(overrides)
    return record


def _count(db, model):
    with db.session_scope() as session:
        return session.query(model).count()


def test_upsert_is_idempotent_on_external_id(db):
    reconciler = UpsertReconciler(db)

    first_id = reconciler.upsert(Lead, _lead_record(), "ghl_contact_id")
    second_id = reconciler.upsert(Lead, _lead_record(name="Maximilian Mustermann"), "ghl_contact_id")

    assert first_id == second_id
    assert _count(db, Lead) == 1
    assert db.get_lead(first_id)["name"] == "Maximilian Mustermann"


def test_immutable_columns_keep_their_first_value(db):
    reconciler = UpsertReconciler(db)

    lead_id = reconciler.upsert(Lead, _lead_record(status="neu"), "ghl_contact_id", immutable=("status",))
    reconciler.upsert(Lead, _lead_record(status="gekauft"), "ghl_contact_id", immutable=("status",))

    assert db.get_lead(lead_id)["status"] == "neu"


def test_key_without_unique_constraint_falls_back(db):
    reconciler = UpsertReconciler(db)

    first_id = reconciler.upsert(Lead, _lead_record(), "email")
    second_id = reconciler.upsert(Lead, _lead_record(name="Erika"), "email")

    assert first_id == second_id
    assert ("leads", "email") in reconciler._fallback_keys
    assert _count(db, Lead) == 1
    assert db.get_lead(first_id)["name"] == "Erika"


def test_missing_key_is_rejected(db):
    with pytest.raises(ValueError):
        UpsertReconciler(db).upsert(Lead, _lead_record(ghl_contact_id=None), "ghl_contact_id")


def test_upsert_many_counts_errors(db):
    records = [
        {"ghl_task_id": "t1", "title": "Anruf"},
        {"ghl_task_id": None, "title": "ohne id"},
        {"ghl_task_id": "t1", "title": "Anruf morgen"},
    ]

    stats = UpsertReconciler(db).upsert_many(Todo, records, "ghl_task_id")

    assert stats == {"synced": 2, "errors": 1}
    with db.session_scope() as session:
        assert [t.title for t in session.query(Todo).all()] == ["Anruf morgen"]
