#!/usr/bin/env python3
"""
Tests for conversation analysis and the chunked job driver.
"""

import json
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from api.services.background_jobs import CONTINUE_PATH, JobDriver
from api.services.lead_analysis import (
    LeadAnalysisProcessor,
    STATUS_ABORTED,
    STATUS_DONE,
    STATUS_RUNNING,
    calculate_quality_score,
    format_conversation,
)
from database.models import AnalysisJobItem, utcnow

from conftest import make_connection, make_lead, make_message

GOOD_ANALYSIS = {
    "simpli_platzierung": "erfolg",
    "lead_interesse": "klar",
    "termin_status": "gebucht",
    "gespraechs_status": "qualifiziert",
    "follow_up": ["Unterlagen nachfragen"],
    "verbesserung": "Früher nach dem Budget fragen",
    "zusammenfassung": "Termin steht",
}


def _driver(db, llm, invoker, config):
    processor = LeadAnalysisProcessor(db, llm)
    return JobDriver(db, {processor.kind: processor}, invoker=invoker, config=config)


def test_quality_score_is_clamped():
    assert calculate_quality_score(GOOD_ANALYSIS) == 10
    assert calculate_quality_score({
        "simpli_platzierung": "nicht", "lead_interesse": "kein",
        "termin_status": "kein", "gespraechs_status": "abgebrochen",
    }) == 1
    assert calculate_quality_score({
        "simpli_platzierung": "teilweise", "lead_interesse": "unsicher",
        "termin_status": "interesse", "gespraechs_status": "offen",
    }) == 8


def test_format_conversation_labels_roles():
    text = format_conversation([
        {"type": "incoming", "content": "Ist die Wohnung frei?"},
        {"type": "outgoing", "content": "Ja, gerne."},
    ])
    assert text == "Kunde: Ist die Wohnung frei?\nKI/Makler: Ja, gerne."


def test_analyze_lead_writes_score_and_flags(db, llm, provider):
    connection = make_connection(db)
    lead = make_lead(db, connection)
    make_message(db, lead["id"], "Ist die Wohnung noch frei?")
    make_message(db, lead["id"], "Opportunity created", type="outgoing")
    make_message(db, lead["id"], "Ja, möchten Sie einen Termin?", type="outgoing")
    provider.replies = ["```json\n" + json.dumps(GOOD_ANALYSIS) + "\n```"]

    result = LeadAnalysisProcessor(db, llm).analyze_lead(lead["id"])

    assert result["status"] == "analyzed"
    assert result["quality_score"] == 10
    stored = db.get_lead(lead["id"])
    assert stored["conversation_status"] == STATUS_DONE
    assert stored["has_makler_termin"] is True
    assert stored["simpli_platziert"] is True
    assert json.loads(stored["ai_improvement_suggestion"])["zusammenfassung"] == "Termin steht"
    prompt = provider.prompts[0]["prompt"]
    assert "Kunde: Ist die Wohnung noch frei?" in prompt
    assert "Opportunity created" not in prompt


def test_lead_without_reply_is_skipped_with_lowest_score(db, llm, provider):
    connection = make_connection(db)
    lead = make_lead(db, connection)
    make_message(db, lead["id"], "Guten Tag, Interesse?", type="outgoing")

    result = LeadAnalysisProcessor(db, llm).analyze_lead(lead["id"])

    assert result["status"] == "skipped"
    assert db.get_lead(lead["id"])["quality_score"] == 1
    assert provider.prompts == []


def test_abgebrochen_maps_to_aborted_status(db, llm, provider):
    connection = make_connection(db)
    lead = make_lead(db, connection)
    make_message(db, lead["id"], "Kein Interesse mehr")
    provider.replies = [{"gespraechs_status": "abgebrochen"}]

    LeadAnalysisProcessor(db, llm).analyze_lead(lead["id"])

    assert db.get_lead(lead["id"])["conversation_status"] == STATUS_ABORTED


def test_analyze_unknown_lead_raises(db, llm):
    with pytest.raises(LookupError):
        LeadAnalysisProcessor(db, llm).analyze_lead("missing")


def test_select_leads_skips_analyzed_archived_and_inactive(db, llm):
    connection = make_connection(db)
    inactive = make_connection(db, is_active=False)
    fresh = make_lead(db, connection)
    now = utcnow()
    make_lead(db, connection, last_analyzed_at=now, last_message_at=now - timedelta(hours=1))
    changed = make_lead(db, connection, last_analyzed_at=now - timedelta(hours=1), last_message_at=now)
    make_lead(db, connection, is_archived=True)
    make_lead(db, inactive)

    processor = LeadAnalysisProcessor(db, llm)

    assert set(processor.select_leads()) == {fresh["id"], changed["id"]}
    assert len(processor.select_leads(force_all=True)) == 3
    assert processor.select_leads(user_id=inactive["user_id"]) == []


def test_job_completes_in_ceil_n_over_batch_continuations(db, llm, provider, invoker, config):
    connection = make_connection(db)
    leads = [make_lead(db, connection, name=f"Lead {i}") for i in range(7)]
    for lead in leads[:5]:
        make_message(db, lead["id"], "Hallo, noch verfügbar?")
    provider.replies = lambda prompt: json.dumps(GOOD_ANALYSIS)
    driver = _driver(db, llm, invoker, config)

    started = driver.start("lead_analysis")
    job_id = started["job_id"]

    assert started["total_leads"] == 7
    assert invoker.paths() == [CONTINUE_PATH.format(job_id=job_id)]

    versions = []
    for _ in range(3):
        progress = driver.continue_job(job_id)
        versions.append(progress["version"])

    assert progress["status"] == "completed"
    assert progress["remaining"] == 0
    assert progress["analyzed_count"] == 5
    assert progress["skipped_count"] == 2
    assert progress["analyzed_count"] + progress["skipped_count"] + progress["failed_count"] == 7
    assert versions == sorted(versions) and len(set(versions)) == 3
    # Two follow-up continuations were scheduled; the final one was not
    assert len(invoker.calls) == 3

    again = driver.continue_job(job_id)
    assert again == {"success": True, "job_id": job_id, "status": "completed", "processed": 0}


def test_failed_llm_calls_count_as_failed_items(db, llm, provider, invoker, config):
    connection = make_connection(db)
    lead = make_lead(db, connection)
    make_message(db, lead["id"], "Frage?")
    provider.replies = ["keine JSON Antwort"]
    driver = _driver(db, llm, invoker, config)

    job_id = driver.start("lead_analysis")["job_id"]
    progress = driver.continue_job(job_id)

    assert progress["status"] == "completed"
    assert progress["failed_count"] == 1
    assert db.get_lead(lead["id"])["last_analyzed_at"] is None


def test_start_without_leads_creates_no_job(db, llm, invoker, config):
    result = _driver(db, llm, invoker, config).start("lead_analysis")
    assert result == {"success": True, "job_id": None, "total_leads": 0, "message": "Keine Leads zu verarbeiten"}
    assert invoker.calls == []


def test_items_claimed_by_another_run_are_not_reprocessed(db, llm, provider, invoker, config):
    connection = make_connection(db)
    for _ in range(2):
        make_lead(db, connection)
    driver = _driver(db, llm, invoker, config)
    job_id = driver.start("lead_analysis")["job_id"]

    with db.session_scope() as session:
        item = session.query(AnalysisJobItem).filter(AnalysisJobItem.job_id == job_id).first()
        item.status = "claimed"
        item.claim_token = "other-run"
        item.claimed_at = utcnow()

    progress = driver.continue_job(job_id)

    assert progress["processed"] == 1
    assert progress["status"] == "running"
    assert progress["remaining"] == 1


def test_stale_claims_are_released(db, llm, invoker, config):
    connection = make_connection(db)
    make_lead(db, connection)
    driver = _driver(db, llm, invoker, config)
    job_id = driver.start("lead_analysis")["job_id"]

    with db.session_scope() as session:
        item = session.query(AnalysisJobItem).filter(AnalysisJobItem.job_id == job_id).one()
        item.status = "claimed"
        item.claim_token = "dead-run"
        item.claimed_at = utcnow() - timedelta(minutes=30)

    progress = driver.continue_job(job_id)

    assert progress["processed"] == 1
    assert progress["status"] == "completed"


def test_continue_unknown_job_raises(db, llm, invoker, config):
    with pytest.raises(LookupError):
        _driver(db, llm, invoker, config).continue_job("missing")


def test_database_error_on_one_lead_fails_only_that_item(db, llm, provider, invoker, config, monkeypatch):
    connection = make_connection(db)
    leads = [make_lead(db, connection, name=f"Lead {i}") for i in range(3)]
    for lead in leads:
        make_message(db, lead["id"], "Ist das Objekt noch frei?")
    provider.replies = lambda prompt: json.dumps(GOOD_ANALYSIS)
    processor = LeadAnalysisProcessor(db, llm)
    driver = JobDriver(db, {processor.kind: processor}, invoker=invoker, config=config)
    original_apply = processor.apply

    def apply(outcome):
        if outcome.lead_id == leads[1]["id"]:
            raise OperationalError("UPDATE leads", {}, Exception("database is locked"))
        return original_apply(outcome)

    monkeypatch.setattr(processor, "apply", apply)
    job_id = driver.start("lead_analysis")["job_id"]

    progress = driver.continue_job(job_id)

    assert progress["success"] is True
    assert progress["status"] == "completed"
    assert (progress["analyzed_count"], progress["failed_count"]) == (2, 1)
    with db.session_scope() as session:
        items = {item.lead_id: (item.status, item.error_message)
                 for item in session.query(AnalysisJobItem).filter(AnalysisJobItem.job_id == job_id)}
    assert items[leads[0]["id"]][0] == "analyzed"
    assert items[leads[2]["id"]][0] == "analyzed"
    assert items[leads[1]["id"]][0] == "failed"
    assert "database is locked" in items[leads[1]["id"]][1]
    assert db.get_lead(leads[1]["id"])["last_analyzed_at"] is None
