# api/services/webhook_ingestor.py
"""
GHL webhook ingestion.

Events are routed by their `type` to one of four handlers and written with
the same mappers and upserts the polling sync uses, so a webhook and a sync
of the same record produce the same row. Side effects on new messages
(re-analysis, follow-up regeneration, learning, automatic answers for
opted-in leads) are fired through the SelfInvoker and never block the
webhook answer.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from config import AppConfig
from api.services.continuation import SelfInvoker
from api.services.followup_service import FollowupService
from api.services.ghl_entity_mapper import (
    MappingError,
    extract_message_body,
    map_appointment_to_todo,
    map_task_to_todo,
)
from api.services.ghl_sync_service import GHLSyncService
from api.services.pipeline_stage_sync import PipelineStageSync
from database.models import Message, Todo, utcnow
from database.simple_connection import SimpleDatabase

logger = logging.getLogger(__name__)

MESSAGE_EVENTS = ("InboundMessage", "OutboundMessage", "MessageStatusUpdate", "ConversationUnreadUpdate")
CONTACT_EVENTS = ("ContactCreate", "ContactUpdate")
APPOINTMENT_EVENTS = ("AppointmentCreate", "AppointmentUpdate")
TASK_EVENTS = ("TaskCreate", "TaskUpdate", "TaskComplete", "TaskDelete")

ANALYZE_PATH = "/api/v1/leads/{lead_id}/analyze"
FOLLOWUP_PATH = "/api/v1/followups/generate"
LEARN_PATH = "/api/v1/knowledge/learn"
AUTO_RESPOND_PATH = "/api/v1/messages/auto-respond"


def _contact_id(payload: Dict[str, Any]) -> Optional[str]:
    return payload.get("contactId") or payload.get("contact_id") or (payload.get("contact") or {}).get("id")


class WebhookIngestor:
    def __init__(self, db: SimpleDatabase, sync_service: GHLSyncService,
                 pipeline_sync: Optional[PipelineStageSync] = None,
                 followups: Optional[FollowupService] = None,
                 invoker: Optional[SelfInvoker] = None, config=AppConfig):
        self.db = db
        self.sync_service = sync_service
        self.pipeline_sync = pipeline_sync
        self.followups = followups
        self.invoker = invoker
        self.config = config
        self.handlers = {}
        for events, handler in (
            (MESSAGE_EVENTS, self.handle_message),
            (CONTACT_EVENTS, self.handle_contact),
            (APPOINTMENT_EVENTS, self.handle_appointment),
            (TASK_EVENTS, self.handle_task),
        ):
            for event in events:
                self.handlers[event] = handler

    def _trigger(self, path: str, payload: Dict[str, Any]):
        if self.invoker is not None:
            self.invoker.trigger(path, payload)

    def handle(self, payload: Dict[str, Any]) -> Tuple[int, Dict[str, Any]]:
        """Process one webhook body; returns (http_status, response_body)."""
        event_type = payload.get("type")
        location_id = payload.get("locationId")
        logger.info(f"📥 GHL webhook {event_type} for location {location_id}")

        if not location_id:
            logger.warning("⚠️ Webhook without locationId, acknowledging without processing")
            return 200, {"success": True, "message": "Webhook received"}

        connection = self.db.get_active_connection_by_location(location_id)
        if not connection:
            logger.warning(f"⚠️ No active connection for location {location_id}")
            return 404, {"success": False, "error": "Connection not found"}

        handler = self.handlers.get(event_type)
        if handler is None:
            logger.info(f"ℹ️ Unhandled webhook event type: {event_type}")
            return 200, {"success": True, "event_type": event_type, "processed": False}

        try:
            result = handler(connection, payload)
        except Exception as e:
            logger.error(f"❌ Webhook {event_type} failed: {e}")
            self.db.log_sync("webhook", "error", user_id=connection.get("user_id"),
                             connection_id=connection["id"], error_message=str(e), errors=1,
                             details={"event_type": event_type})
            return 500, {"success": False, "error": str(e)}

        self.db.log_sync("webhook", "success", user_id=connection.get("user_id"),
                         connection_id=connection["id"], details={"event_type": event_type, **result})
        return 200, {"success": True, "event_type": event_type, **result}

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def handle_message(self, connection: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
        message = payload.get("message") if isinstance(payload.get("message"), dict) else {}
        contact_id = _contact_id(payload)
        body = extract_message_body(payload) or extract_message_body(message) or payload.get("messageBody") or ""
        status = payload.get("status") or payload.get("messageStatus") or payload.get("deliveryStatus")

        if not contact_id:
            logger.warning(f"⚠️ Message webhook without contactId, keys: {list(payload.keys())}")
            return {"processed": False, "reason": "missing contactId"}
        if not body and not status:
            return {"processed": False, "reason": "missing body and status"}

        lead = self.db.get_lead_by_ghl_contact_id(contact_id)
        if not lead:
            logger.info(f"ℹ️ No lead for contact {contact_id}")
            return {"processed": False, "reason": "lead not found"}

        inbound = (payload.get("direction") in ("inbound", "incoming")
                   or payload.get("type") == "InboundMessage")
        message_id = (payload.get("messageId") or payload.get("message_id") or payload.get("id")
                      or message.get("id") or f"webhook_{int(utcnow().timestamp() * 1000)}")
        raw = {
            "id": message_id,
            "direction": "inbound" if inbound else "outbound",
            "body": body,
            # Inbound messages are delivered by definition
            "status": "delivered" if inbound else status,
            "error": payload.get("error") or payload.get("errorMessage") or payload.get("failureReason")
            or message.get("error"),
            "meta": payload.get("meta") or {},
            "dateAdded": payload.get("dateAdded") or payload.get("createdAt") or payload.get("timestamp"),
        }

        with self.db.session_scope() as session:
            is_new = session.query(Message.id).filter(Message.ghl_message_id == str(message_id)).first() is None

        counts = self.sync_service.store_messages(lead, [raw], payload.get("conversationId"))
        if counts["errors"]:
            return {"processed": False, "reason": "message could not be stored"}
        if not is_new:
            return {"processed": True, "lead_id": lead["id"], "new_message": False}

        if inbound and self.followups is not None:
            discarded = self.followups.discard_pending(lead["id"])
            if discarded:
                logger.info(f"🗑️ Discarded {discarded} pending follow-ups of lead {lead['id']}")

        self._trigger(ANALYZE_PATH.format(lead_id=lead["id"]), {"lead_id": lead["id"]})
        self._trigger(FOLLOWUP_PATH, {"lead_id": lead["id"]})
        if inbound and body and lead.get("auto_respond_enabled"):
            self._trigger(AUTO_RESPOND_PATH, {"lead_id": lead["id"], "message_content": body})
        if not inbound and body:
            self._trigger(LEARN_PATH, {
                "lead_id": lead["id"],
                "user_id": connection.get("user_id"),
                "response_content": body,
            })
        return {"processed": True, "lead_id": lead["id"], "new_message": True}

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    def handle_contact(self, connection: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
        contact = dict(payload.get("contact") or payload)
        contact["id"] = contact.get("id") or payload.get("contactId")
        contact.setdefault("locationId", payload.get("locationId"))
        contact.pop("type", None)

        lead_id = self.sync_service.ingest_contact(contact, connection)
        if not lead_id:
            return {"processed": False, "reason": "contact could not be stored"}
        objekt_assigned = self.sync_service.assign_objekt_if_missing(lead_id, contact)
        return {"processed": True, "lead_id": lead_id, "objekt_assigned": objekt_assigned}

    # ------------------------------------------------------------------
    # Appointments
    # ------------------------------------------------------------------

    def handle_appointment(self, connection: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
        event = payload.get("appointment") or payload
        contact_id = event.get("contactId")
        lead = self.db.get_lead_by_ghl_contact_id(contact_id) if contact_id else None

        try:
            record = map_appointment_to_todo(event, lead or {"user_id": connection.get("user_id")})
        except MappingError as e:
            logger.warning(f"⚠️ Appointment webhook without id: {e}")
            return {"processed": False, "reason": "missing appointment id"}
        todo_id = self.sync_service.reconciler.upsert(Todo, record, "ghl_event_id")

        result = {"processed": True, "todo_id": todo_id}
        if payload.get("locationId") == self.config.FINANCE_LOCATION_ID and contact_id and self.pipeline_sync:
            result["beratung_lead_id"] = self.pipeline_sync.record_finance_appointment(contact_id)
        return result

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def handle_task(self, connection: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
        task = dict(payload.get("task") or payload)
        task_id = task.get("id") or payload.get("taskId")
        if not task_id:
            return {"processed": False, "reason": "missing task id"}
        task["id"] = task_id

        if payload.get("type") == "TaskDelete":
            with self.db.session_scope() as session:
                deleted = session.query(Todo).filter(Todo.ghl_task_id == str(task_id)).delete()
            return {"processed": True, "deleted": deleted}

        contact_id = task.get("contactId") or task.get("contact_id") or payload.get("contactId")
        lead = self.db.get_lead_by_ghl_contact_id(contact_id) if contact_id else None
        record = map_task_to_todo(task, lead or {"user_id": connection.get("user_id")})
        if payload.get("type") == "TaskComplete":
            record["completed"] = True

        with self.db.session_scope() as session:
            exists = session.query(Todo.id).filter(Todo.ghl_task_id == record["ghl_task_id"]).first() is not None
        if not exists and record["completed"]:
            # Tasks that arrive already done are not worth a new todo
            return {"processed": False, "reason": "completed task not stored"}

        todo_id = self.sync_service.reconciler.upsert(Todo, record, "ghl_task_id")
        return {"processed": True, "todo_id": todo_id}
