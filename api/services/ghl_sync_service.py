#!/usr/bin/env python3
"""
GHL Sync Service - polling sync of contacts, conversations, appointments and tasks.

FLOW PER CONNECTION
-------------------
1. Token Manager makes sure the access token is valid (refresh within 5 min
   of expiry). A failed refresh deactivates the connection and ends this
   connection's sync only.
2. Each requested entity type runs fetch -> map -> upsert on its own. An
   API failure aborts that entity type and is recorded as an error; the
   remaining entity types still run.
3. last_sync_at is updated and one ghl_sync_logs row is written.

Connections are isolated from each other: whatever happens to one, the
others in the batch still sync.
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import requests
from sqlalchemy.exc import SQLAlchemyError

from config import AppConfig
from api.services.ghl_api import GoHighLevelAPI, GHLAPIError
from api.services.ghl_entity_mapper import (
    MappingError,
    map_appointment_to_todo,
    map_contact_to_lead,
    map_message,
    map_task_to_todo,
)
from api.services.ghl_token_manager import TokenManager, TokenRefreshError
from api.services.llm_adapter import LLMAdapter
from api.services.objekt_matcher import ObjektMatcher
from api.services.paginated_fetcher import GHLFetcher
from api.services.upsert_reconciler import UpsertReconciler
from database.models import Lead, Message, Todo, model_to_dict, utcnow
from database.simple_connection import SimpleDatabase

logger = logging.getLogger(__name__)

ENTITY_TYPES = ("contacts", "conversations", "appointments", "tasks")
SYNC_TYPES = ("full",) + ENTITY_TYPES

# Only the tail of each conversation is stored
MESSAGES_PER_CONVERSATION = 50
APPOINTMENT_WINDOW_DAYS = 30
# Message content is fixed once stored; only delivery status moves
MESSAGE_IMMUTABLE_FIELDS = ("content", "type", "sent_at", "lead_id")

TRANSLATE_PROMPT = """Du bist ein Übersetzer für eine Immobilien-App. Analysiere diesen Text einer Aufgabe/To-Do:

Text: "{{text}}"

Regeln:
1. Prüfe ob der Text bereits auf Deutsch ist
2. Wenn nicht Deutsch, übersetze SINNGEMÄSS (nicht wörtlich!) ins Deutsche
3. Behalte den geschäftlichen Kontext bei (Immobilien, Kunden, Makler)
4. Kurze, professionelle Formulierungen bevorzugen

Antworte NUR mit diesem JSON (kein anderer Text):
{"isGerman": true/false, "translation": "Deutsche Übersetzung oder Original wenn bereits Deutsch"}"""


def _epoch_ms(moment: datetime) -> int:
    return int((moment - datetime(1970, 1, 1)).total_seconds() * 1000)


class GHLSyncService:
    def __init__(self, db: SimpleDatabase, config=AppConfig,
                 http_session: Optional[requests.Session] = None,
                 llm: Optional[LLMAdapter] = None,
                 objekt_matcher: Optional[ObjektMatcher] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.db = db
        self.config = config
        self.http_session = http_session
        self.llm = llm
        self.sleep = sleep
        self.token_manager = TokenManager(db, config, http_session)
        self.reconciler = UpsertReconciler(db)
        self.objekt_matcher = objekt_matcher or ObjektMatcher(db)

    def _client(self, connection: Dict[str, Any]) -> GoHighLevelAPI:
        return GoHighLevelAPI(
            connection["access_token"], connection["location_id"], self.config, session=self.http_session
        )

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def sync(self, user_id: Optional[str] = None, sync_type: str = "full",
             connection_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Sync one user's connection (or one connection by id) or every active
        connection. Results are keyed by connection id.
        """
        if sync_type not in SYNC_TYPES:
            raise ValueError(f"Unknown sync_type '{sync_type}', expected one of {SYNC_TYPES}")

        start_time = datetime.now()
        if connection_id:
            connection = self.db.get_connection(connection_id)
            connections = [connection] if connection and connection["is_active"] else []
        else:
            connections = self.db.get_active_connections(user_id)

        logger.info(f"🚀 Starting {sync_type} sync for {len(connections)} connection(s)")

        results = {}
        for connection in connections:
            try:
                results[connection["id"]] = self.sync_connection(connection, sync_type)
            except Exception as e:
                logger.error(f"💥 Sync crashed for connection {connection['id']}: {e}", exc_info=True)
                self.db.log_sync(sync_type, "error", user_id=connection.get("user_id"),
                                 connection_id=connection["id"], error_message=str(e), errors=1)
                results[connection["id"]] = {"success": False, "error": str(e), "entities": {}}

        duration = (datetime.now() - start_time).total_seconds()
        logger.info(f"🎉 Sync finished in {duration:.2f}s for {len(connections)} connection(s)")
        return {
            "success": True,
            "synced_connections": len(connections),
            "results": results,
            "duration": duration,
        }

    def sync_connection(self, connection: Dict[str, Any], sync_type: str = "full") -> Dict[str, Any]:
        connection_id = connection["id"]
        try:
            connection = self.token_manager.ensure_valid_token(connection)
        except TokenRefreshError as e:
            self.db.log_sync(sync_type, "error", user_id=connection.get("user_id"),
                             connection_id=connection_id, error_message=str(e), errors=1,
                             details={"token_failure": True})
            return {"success": False, "error": str(e), "token_failure": True, "entities": {}}

        client = self._client(connection)
        fetcher = GHLFetcher(client, self.config, sleep=self.sleep)
        entity_types = ENTITY_TYPES if sync_type == "full" else (sync_type,)

        entities = {}
        for entity in entity_types:
            handler = getattr(self, f"_sync_{entity}")
            logger.info(f"📋 Syncing {entity} for location {connection['location_id']}")
            try:
                entities[entity] = handler(connection, client, fetcher)
            except (GHLAPIError, requests.RequestException, SQLAlchemyError) as e:
                logger.error(f"❌ {entity} sync failed for connection {connection_id}: {e}")
                entities[entity] = {"synced": 0, "errors": 1, "error": str(e)}
            logger.info(f"   {entity}: {entities[entity]}")

        self.db.update_connection(connection_id, {"last_sync_at": utcnow()})

        total_errors = sum(stats.get("errors", 0) for stats in entities.values())
        self.db.log_sync(
            sync_type,
            "partial" if total_errors else "success",
            user_id=connection.get("user_id"),
            connection_id=connection_id,
            contacts_synced=entities.get("contacts", {}).get("synced", 0),
            conversations_synced=entities.get("conversations", {}).get("synced", 0),
            messages_synced=entities.get("conversations", {}).get("messages", 0),
            appointments_synced=entities.get("appointments", {}).get("synced", 0),
            tasks_synced=entities.get("tasks", {}).get("synced", 0),
            errors=total_errors,
            details=entities,
        )
        return {"success": True, "entities": entities}

    # -------------------------------------------------------------------------
    # Entity pipelines
    # -------------------------------------------------------------------------

    def _sync_contacts(self, connection, client: GoHighLevelAPI, fetcher: GHLFetcher) -> Dict[str, int]:
        stats = {"synced": 0, "errors": 0, "objekte_assigned": 0}
        for contact in fetcher.iter_contacts():
            lead_id = self.ingest_contact(contact, connection, stats)
            if lead_id and self.assign_objekt_if_missing(lead_id, contact):
                stats["objekte_assigned"] += 1
        return stats

    def ingest_contact(self, contact: Dict[str, Any], connection: Dict[str, Any],
                       stats: Optional[Dict[str, int]] = None) -> Optional[str]:
        """Map and upsert one contact; returns the lead id or None on error."""
        stats = stats if stats is not None else {"synced": 0, "errors": 0}
        try:
            lead_id = self.reconciler.upsert(Lead, map_contact_to_lead(contact, connection), "ghl_contact_id")
        except (MappingError, SQLAlchemyError, ValueError) as e:
            logger.warning(f"⚠️ Skipping contact {contact.get('id')}: {e}")
            stats["errors"] += 1
            return None
        stats["synced"] += 1
        return lead_id

    def assign_objekt_if_missing(self, lead_id: str, contact: Dict[str, Any]) -> bool:
        lead = self.db.get_lead(lead_id)
        if not lead or lead.get("objekt_id"):
            return False
        try:
            result = self.objekt_matcher.match_contact(lead_id, contact)
        except (SQLAlchemyError, ValueError) as e:
            logger.warning(f"⚠️ Objekt matching failed for lead {lead_id}: {e}")
            return False
        return result["objekt_id"] is not None

    def _sync_conversations(self, connection, client: GoHighLevelAPI, fetcher: GHLFetcher) -> Dict[str, int]:
        stats = {"synced": 0, "messages": 0, "errors": 0}
        leads = self.db.get_leads_for_connection(connection["id"])

        fetches = fetcher.iter_per_parent(
            leads, lambda lead: client.get_conversations(lead["ghl_contact_id"]), self.config.CONVERSATIONS_DELAY
        )
        for fetch in fetches:
            if fetch.error:
                stats["errors"] += 1
                continue
            for conversation in fetch.records:
                try:
                    messages = client.get_conversation_messages(conversation["id"])
                except (GHLAPIError, requests.RequestException, KeyError) as e:
                    logger.warning(f"⚠️ Messages of conversation {conversation.get('id')} failed: {e}")
                    stats["errors"] += 1
                    continue
                stats["synced"] += 1
                counts = self.store_messages(fetch.parent, messages[-MESSAGES_PER_CONVERSATION:], conversation["id"])
                stats["messages"] += counts["synced"]
                stats["errors"] += counts["errors"]
        return stats

    def store_messages(self, lead: Dict[str, Any], messages: List[Dict[str, Any]],
                       conversation_id: Optional[str] = None) -> Dict[str, int]:
        """Upsert messages for a lead and advance lead.last_message_at."""
        stats = {"synced": 0, "errors": 0}
        newest = lead.get("last_message_at")
        for raw in messages:
            try:
                record = map_message(raw, lead["id"], conversation_id)
                self.reconciler.upsert(Message, record, "ghl_message_id", immutable=MESSAGE_IMMUTABLE_FIELDS)
            except (MappingError, SQLAlchemyError, ValueError) as e:
                logger.warning(f"⚠️ Skipping message {raw.get('id')}: {e}")
                stats["errors"] += 1
                continue
            stats["synced"] += 1
            if newest is None or record["sent_at"] > newest:
                newest = record["sent_at"]

        if newest and newest != lead.get("last_message_at"):
            self.db.update_lead(lead["id"], {"last_message_at": newest})
        return stats

    def _sync_appointments(self, connection, client: GoHighLevelAPI, fetcher: GHLFetcher) -> Dict[str, int]:
        stats = {"synced": 0, "skipped": 0, "errors": 0}
        leads_by_contact = {lead["ghl_contact_id"]: lead for lead in self.db.get_leads_for_connection(connection["id"])}

        now = utcnow()
        start_ms = _epoch_ms(now)
        end_ms = _epoch_ms(now + timedelta(days=APPOINTMENT_WINDOW_DAYS))

        calendars = client.get_calendars()
        fetches = fetcher.iter_per_parent(
            calendars, lambda calendar: client.get_calendar_events(calendar["id"], start_ms, end_ms),
            self.config.TASKS_DELAY,
        )
        for fetch in fetches:
            if fetch.error:
                stats["errors"] += 1
                continue
            for event in fetch.records:
                lead = leads_by_contact.get(event.get("contactId"))
                if not lead:
                    stats["skipped"] += 1
                    continue
                try:
                    self.reconciler.upsert(Todo, map_appointment_to_todo(event, lead), "ghl_event_id")
                    stats["synced"] += 1
                except (MappingError, SQLAlchemyError, ValueError) as e:
                    logger.warning(f"⚠️ Skipping appointment {event.get('id')}: {e}")
                    stats["errors"] += 1
        return stats

    def _sync_tasks(self, connection, client: GoHighLevelAPI, fetcher: GHLFetcher) -> Dict[str, int]:
        stats = {"synced": 0, "translated": 0, "errors": 0}
        leads = self.db.get_leads_for_connection(connection["id"])

        fetches = fetcher.iter_per_parent(
            leads, lambda lead: client.get_contact_tasks(lead["ghl_contact_id"]), self.config.TASKS_DELAY
        )
        for fetch in fetches:
            if fetch.error:
                stats["errors"] += 1
                continue
            for task in fetch.records:
                try:
                    record = map_task_to_todo(task, fetch.parent)
                except MappingError as e:
                    logger.warning(f"⚠️ Skipping task without id: {e}")
                    stats["errors"] += 1
                    continue

                if self.config.TRANSLATE_TASKS and self.llm is not None:
                    if self._translate_task(client, fetch.parent, record):
                        stats["translated"] += 1

                try:
                    self.reconciler.upsert(Todo, record, "ghl_task_id")
                    stats["synced"] += 1
                except (SQLAlchemyError, ValueError) as e:
                    logger.warning(f"⚠️ Task {record['ghl_task_id']} upsert failed: {e}")
                    stats["errors"] += 1
        return stats

    # -------------------------------------------------------------------------
    # Task translation and completion
    # -------------------------------------------------------------------------

    def translate_text(self, text: Optional[str]) -> Optional[str]:
        """German translation of text, or None when it is German already or translation failed."""
        if not text or len(text.strip()) < 3 or self.llm is None:
            return None
        result = self.llm.classify(TRANSLATE_PROMPT, {"text": text}, defaults={"isGerman": True, "translation": text},
                                   max_tokens=500)
        if not result.success or result.data.get("isGerman"):
            return None
        translation = (result.data.get("translation") or "").strip()
        return translation if translation and translation != text else None

    def _translate_task(self, client: GoHighLevelAPI, lead: Dict[str, Any], record: Dict[str, Any]) -> bool:
        """Translate title/description in place and write them back to GHL."""
        title = self.translate_text(record["title"])
        description = self.translate_text(record.get("description"))
        if not title and not description:
            return False

        update = {}
        if title:
            record["title"] = update["title"] = title
        if description:
            record["description"] = update["body"] = description

        try:
            client.update_contact_task(lead["ghl_contact_id"], record["ghl_task_id"], update)
        except (GHLAPIError, requests.RequestException) as e:
            logger.warning(f"⚠️ Could not write translation back to GHL task {record['ghl_task_id']}: {e}")
        return True

    def complete_todo(self, todo_id: str, completed: bool = True) -> Dict[str, Any]:
        """Set a todo's completion locally and push it to the GHL task when there is one."""
        with self.db.session_scope() as session:
            todo = session.get(Todo, todo_id)
            if not todo:
                raise LookupError(f"Todo {todo_id} not found")
            todo.completed = completed
            todo_data = model_to_dict(todo)

        if not todo_data.get("ghl_task_id") or not todo_data.get("lead_id"):
            return {"success": True, "synced_to_ghl": False}

        lead = self.db.get_lead(todo_data["lead_id"])
        connection = self.db.get_connection(lead["connection_id"]) if lead and lead.get("connection_id") else None
        if not connection or not connection["is_active"]:
            return {"success": True, "synced_to_ghl": False}

        try:
            connection = self.token_manager.ensure_valid_token(connection)
            self._client(connection).set_task_completed(lead["ghl_contact_id"], todo_data["ghl_task_id"], completed)
        except (TokenRefreshError, GHLAPIError, requests.RequestException) as e:
            logger.error(f"❌ Could not sync completion of todo {todo_id} to GHL: {e}")
            return {"success": True, "synced_to_ghl": False, "error": str(e)}
        return {"success": True, "synced_to_ghl": True}
