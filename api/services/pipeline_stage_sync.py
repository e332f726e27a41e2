# api/services/pipeline_stage_sync.py
"""
Simpli Finance pipeline tracking.

Opportunities live in the finance sub-account; the leads they belong to live
in the agents' locations. Opportunities are matched to leads by email, then
by the last 10 phone digits, and the lead's sf_* fields are updated. The
sf_reached_* flags are high-water marks and never go back to false.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

import requests

from config import AppConfig
from api.services.ghl_api import GoHighLevelAPI, GHLAPIError
from api.services.ghl_entity_mapper import map_stage, merge_stage_flags, stage_rank
from api.services.ghl_token_manager import TokenManager, TokenRefreshError
from api.services.paginated_fetcher import GHLFetcher
from database.simple_connection import SimpleDatabase

logger = logging.getLogger(__name__)

BERATUNG_STAGE = "beratung_gebucht"


def build_stage_update(lead: Dict[str, Any], stage: Optional[str], sf_contact_id: Optional[str] = None,
                       opportunity_id: Optional[str] = None, keep_later_stage: bool = False) -> Dict[str, Any]:
    """
    Column updates that move a lead to `stage`. With keep_later_stage the
    stored stage is only replaced when the new one is not earlier.
    """
    update = merge_stage_flags(lead, stage)

    current = lead.get("sf_pipeline_stage")
    if stage is not None and (not keep_later_stage or current is None or stage_rank(stage) >= stage_rank(current)):
        update["sf_pipeline_stage"] = stage
    if sf_contact_id:
        update["sf_contact_id"] = sf_contact_id
    if opportunity_id:
        update["sf_opportunity_id"] = opportunity_id
    return {key: value for key, value in update.items() if lead.get(key) != value}


class PipelineStageSync:
    def __init__(self, db: SimpleDatabase, config=AppConfig,
                 http_session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.db = db
        self.config = config
        self.http_session = http_session
        self.sleep = sleep
        self.token_manager = TokenManager(db, config, http_session)

    def _finance_client(self) -> Tuple[Optional[Dict[str, Any]], Optional[GoHighLevelAPI]]:
        connection = self.db.get_active_connection_by_location(self.config.FINANCE_LOCATION_ID)
        if not connection:
            return None, None
        connection = self.token_manager.ensure_valid_token(connection)
        client = GoHighLevelAPI(connection["access_token"], connection["location_id"], self.config,
                                session=self.http_session)
        return connection, client

    def sync(self) -> Dict[str, Any]:
        stats = {"total_opportunities": 0, "matched": 0, "updated": 0, "unmatched": 0, "errors": 0}

        try:
            connection, client = self._finance_client()
        except TokenRefreshError as e:
            return {"success": False, "error": str(e), "stats": stats}
        if client is None:
            logger.warning("⚠️ No active connection for the finance location")
            return {"success": False, "error": "Keine aktive Simpli Finance Verbindung", "stats": stats}

        stage_names: Dict[str, Optional[str]] = {}
        try:
            for pipeline in client.get_pipelines():
                for stage in pipeline.get("stages", []):
                    stage_names[stage.get("id")] = stage.get("name")
            self._match_opportunities(client, stage_names, stats)
        except (GHLAPIError, requests.RequestException) as e:
            logger.error(f"❌ Pipeline stage sync aborted: {e}")
            self.db.log_sync(
                "pipeline_stages",
                "error",
                user_id=connection.get("user_id"),
                connection_id=connection["id"],
                errors=stats["errors"] + 1,
                error_message=str(e),
                details=stats,
            )
            return {"success": False, "error": str(e), "stats": stats}

        logger.info(f"✅ Pipeline stage sync: {stats}")
        self.db.log_sync(
            "pipeline_stages",
            "partial" if stats["errors"] else "success",
            user_id=connection.get("user_id"),
            connection_id=connection["id"],
            errors=stats["errors"],
            details={**stats, "pipelines": len(stage_names)},
        )
        return {"success": True, "stats": stats}

    def _match_opportunities(self, client: GoHighLevelAPI, stage_names: Dict[str, Optional[str]],
                             stats: Dict[str, int]):
        contacts: Dict[str, Optional[Dict]] = {}
        fetcher = GHLFetcher(client, self.config, sleep=self.sleep)
        for opportunity in fetcher.iter_opportunities():
            stats["total_opportunities"] += 1
            contact_id = opportunity.get("contactId") or (opportunity.get("contact") or {}).get("id")
            if not contact_id:
                stats["unmatched"] += 1
                continue

            if contact_id not in contacts:
                try:
                    contacts[contact_id] = client.get_contact(contact_id)
                except (GHLAPIError, requests.RequestException) as e:
                    logger.warning(f"⚠️ Contact {contact_id} of opportunity {opportunity.get('id')} failed: {e}")
                    contacts[contact_id] = None
                    stats["errors"] += 1
                self.sleep(self.config.OPPORTUNITY_CONTACT_DELAY)

            contact = contacts[contact_id]
            if not contact:
                stats["unmatched"] += 1
                continue

            lead = self.db.find_lead_by_email_or_phone(
                contact.get("email"), contact.get("phone"), exclude_location_id=self.config.FINANCE_LOCATION_ID
            )
            if not lead:
                stats["unmatched"] += 1
                continue
            stats["matched"] += 1

            stage = map_stage(stage_names.get(opportunity.get("pipelineStageId")))
            update = build_stage_update(lead, stage, sf_contact_id=contact_id, opportunity_id=opportunity.get("id"))
            if update:
                self.db.update_lead(lead["id"], update)
                stats["updated"] += 1

    def mark_beratung_booked(self, contact: Dict[str, Any], sf_contact_id: str) -> Optional[str]:
        """
        A consultation was booked in the finance calendar: find the agent's lead
        for this contact and record the beratung stage. Returns the lead id.
        """
        lead = self.db.find_lead_by_email_or_phone(
            contact.get("email"), contact.get("phone"), exclude_location_id=self.config.FINANCE_LOCATION_ID
        )
        if not lead:
            logger.info(f"ℹ️ No lead found for finance contact {sf_contact_id}")
            return None

        update = build_stage_update(lead, BERATUNG_STAGE, sf_contact_id=sf_contact_id, keep_later_stage=True)
        if update:
            self.db.update_lead(lead["id"], update)
        logger.info(f"💰 Beratung recorded for lead {lead['id']}")
        return lead["id"]

    def record_finance_appointment(self, sf_contact_id: str) -> Optional[str]:
        """Appointment webhook from the finance location: look up the contact there and mark its lead."""
        try:
            _, client = self._finance_client()
            contact = client.get_contact(sf_contact_id) if client else None
        except (TokenRefreshError, GHLAPIError, requests.RequestException) as e:
            logger.error(f"❌ Could not fetch finance contact {sf_contact_id}: {e}")
            return None
        if not contact:
            return None
        return self.mark_beratung_booked(contact, sf_contact_id)
