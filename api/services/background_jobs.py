# api/services/background_jobs.py
"""
Chunked background jobs (lead analysis, follow-up generation).

A job is an analysis_jobs row plus one analysis_job_items row per lead.
Every continuation claims up to ANALYSIS_BATCH_SIZE pending items with a
compare-and-set update, processes them, recomputes the job counters from
the item statuses and either completes the job or schedules the next
continuation through the SelfInvoker. Two overlapping invocations can
never claim the same item.
"""

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError

from config import AppConfig
from api.services.continuation import SelfInvoker
from api.services.lead_analysis import ItemOutcome
from database.models import AnalysisJob, AnalysisJobItem, model_to_dict, utcnow
from database.simple_connection import SimpleDatabase

logger = logging.getLogger(__name__)

CONTINUE_PATH = "/api/v1/jobs/{job_id}/continue"
STALE_CLAIM_MINUTES = 10


class JobDriver:
    def __init__(self, db: SimpleDatabase, processors: Dict[str, Any],
                 invoker: Optional[SelfInvoker] = None, config=AppConfig):
        self.db = db
        self.processors = processors
        self.invoker = invoker
        self.batch_size = max(1, int(config.ANALYSIS_BATCH_SIZE))
        self.workers = max(1, int(config.ANALYSIS_WORKERS))

    def _processor(self, kind: str):
        processor = self.processors.get(kind)
        if processor is None:
            raise ValueError(f"Unknown job kind: {kind}")
        return processor

    def _schedule(self, job_id: str):
        if self.invoker is None:
            logger.warning(f"⚠️ No invoker configured, job {job_id} waits for a manual continuation")
            return
        self.invoker.trigger(CONTINUE_PATH.format(job_id=job_id), {"job_id": job_id})

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, kind: str, user_id: Optional[str] = None, force_all: bool = False,
              custom_prompt: Optional[str] = None) -> Dict[str, Any]:
        processor = self._processor(kind)
        lead_ids = processor.select_leads(user_id=user_id, force_all=force_all)

        if not lead_ids:
            logger.info(f"ℹ️ No leads to process for {kind}")
            return {"success": True, "job_id": None, "total_leads": 0, "message": "Keine Leads zu verarbeiten"}

        with self.db.session_scope() as session:
            job = AnalysisJob(
                kind=kind,
                user_id=user_id,
                status="running",
                total_leads=len(lead_ids),
                force_all=force_all,
                custom_prompt=custom_prompt,
                started_at=utcnow(),
            )
            session.add(job)
            session.flush()
            session.add_all([AnalysisJobItem(job_id=job.id, lead_id=lead_id) for lead_id in lead_ids])
            job_id = job.id

        logger.info(f"🚀 Started {kind} job {job_id} for {len(lead_ids)} leads")
        self._schedule(job_id)
        return {"success": True, "job_id": job_id, "total_leads": len(lead_ids), "message": "Job gestartet"}

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self.db.session_scope() as session:
            return model_to_dict(session.get(AnalysisJob, job_id))

    def continue_job(self, job_id: str) -> Dict[str, Any]:
        job = self.get_job(job_id)
        if job is None:
            raise LookupError(f"Job {job_id} not found")
        if job["status"] != "running":
            return {"success": True, "job_id": job_id, "status": job["status"], "processed": 0}

        processor = self._processor(job["kind"])
        try:
            self._release_stale_claims(job_id)
            claim_token = str(uuid.uuid4())
            claimed = self._claim_batch(job_id, claim_token)

            for outcome in self._process(processor, job, claimed):
                self._finish_item(job_id, self._apply(processor, outcome), claim_token)

            progress = self._refresh_counters(job_id)
        except SQLAlchemyError as e:
            logger.error(f"❌ Job {job_id} failed: {e}")
            self._fail(job_id, str(e))
            return {"success": False, "job_id": job_id, "status": "failed", "error": str(e)}

        if progress["status"] == "running":
            self._schedule(job_id)
        else:
            logger.info(f"🏁 Job {job_id} completed: {progress}")

        return {"success": True, "job_id": job_id, "processed": len(claimed), **progress}

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    def _release_stale_claims(self, job_id: str):
        """Claims of an invocation that died are handed back to the queue"""
        cutoff = utcnow() - timedelta(minutes=STALE_CLAIM_MINUTES)
        with self.db.session_scope() as session:
            released = session.execute(
                update(AnalysisJobItem)
                .where(
                    AnalysisJobItem.job_id == job_id,
                    AnalysisJobItem.status == "claimed",
                    AnalysisJobItem.claimed_at < cutoff,
                )
                .values(status="pending", claim_token=None, claimed_at=None)
            ).rowcount
        if released:
            logger.warning(f"🔄 Released {released} stale claims of job {job_id}")

    def _claim_batch(self, job_id: str, claim_token: str) -> List[str]:
        with self.db.session_scope() as session:
            candidates = [
                row.id for row in session.query(AnalysisJobItem.id)
                .filter(AnalysisJobItem.job_id == job_id, AnalysisJobItem.status == "pending")
                .limit(self.batch_size)
                .all()
            ]
            if not candidates:
                return []
            session.execute(
                update(AnalysisJobItem)
                .where(AnalysisJobItem.id.in_(candidates), AnalysisJobItem.status == "pending")
                .values(status="claimed", claim_token=claim_token, claimed_at=utcnow())
            )

        with self.db.session_scope() as session:
            rows = (
                session.query(AnalysisJobItem.lead_id)
                .filter(AnalysisJobItem.job_id == job_id, AnalysisJobItem.claim_token == claim_token)
                .all()
            )
            return [row.lead_id for row in rows]

    def _process(self, processor, job: Dict[str, Any], lead_ids: List[str]) -> List[ItemOutcome]:
        if not lead_ids:
            return []
        contexts = [(lead_id, processor.load(lead_id, job)) for lead_id in lead_ids]

        def evaluate(entry):
            lead_id, context = entry
            try:
                return processor.evaluate(context, lead_id)
            except Exception as e:
                logger.error(f"❌ Processing lead {lead_id} failed: {e}")
                return ItemOutcome(lead_id, "failed", {}, str(e))

        # Only the LLM calls run in parallel; database writes stay on this thread
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            return list(executor.map(evaluate, contexts))

    def _apply(self, processor, outcome: ItemOutcome) -> ItemOutcome:
        """A failed write counts against this lead only; the batch goes on."""
        if outcome.status == "failed":
            return outcome
        try:
            processor.apply(outcome)
        except SQLAlchemyError as e:
            logger.error(f"❌ Saving result for lead {outcome.lead_id} failed: {e}")
            return ItemOutcome(outcome.lead_id, "failed", {}, str(e))
        return outcome

    def _finish_item(self, job_id: str, outcome: ItemOutcome, claim_token: str):
        with self.db.session_scope() as session:
            session.execute(
                update(AnalysisJobItem)
                .where(
                    AnalysisJobItem.job_id == job_id,
                    AnalysisJobItem.lead_id == outcome.lead_id,
                    AnalysisJobItem.claim_token == claim_token,
                )
                .values(status=outcome.status, processed_at=utcnow(), error_message=outcome.error)
            )

    def _refresh_counters(self, job_id: str) -> Dict[str, Any]:
        """Counters are derived from the items, so a retried batch can never double count."""
        with self.db.session_scope() as session:
            counts = dict(
                session.query(AnalysisJobItem.status, func.count(AnalysisJobItem.id))
                .filter(AnalysisJobItem.job_id == job_id)
                .group_by(AnalysisJobItem.status)
                .all()
            )
            job = session.get(AnalysisJob, job_id)
            job.analyzed_count = counts.get("analyzed", 0)
            job.skipped_count = counts.get("skipped", 0)
            job.failed_count = counts.get("failed", 0)
            job.version = (job.version or 0) + 1

            open_items = counts.get("pending", 0) + counts.get("claimed", 0)
            if open_items == 0 and job.status == "running":
                job.status = "completed"
                job.completed_at = utcnow()

            return {
                "status": job.status,
                "total_leads": job.total_leads,
                "analyzed_count": job.analyzed_count,
                "skipped_count": job.skipped_count,
                "failed_count": job.failed_count,
                "remaining": open_items,
                "version": job.version,
            }

    def _fail(self, job_id: str, error: str):
        try:
            with self.db.session_scope() as session:
                job = session.get(AnalysisJob, job_id)
                if job:
                    job.status = "failed"
                    job.error_message = error
                    job.completed_at = utcnow()
        except SQLAlchemyError as e:
            logger.error(f"❌ Could not mark job {job_id} failed: {e}")
