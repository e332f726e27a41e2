# api/services/registry.py
"""
Wiring of the service objects the routes use. Built once per process on
first use; tests replace it through FastAPI's dependency_overrides.
"""

import logging
import threading
from typing import Optional

import requests

from config import AppConfig
from api.services.auto_responder import AutoResponder
from api.services.background_jobs import JobDriver
from api.services.continuation import SelfInvoker
from api.services.followup_service import FollowupBatchProcessor, FollowupService
from api.services.ghl_sync_service import GHLSyncService
from api.services.knowledge_service import KnowledgeService
from api.services.lead_analysis import LeadAnalysisProcessor
from api.services.llm_adapter import LLMAdapter, build_llm_adapter
from api.services.oauth_service import OAuthService
from api.services.objekt_matcher import ObjektMatcher
from api.services.pipeline_stage_sync import PipelineStageSync
from api.services.webhook_ingestor import WebhookIngestor
from database.simple_connection import SimpleDatabase, get_db

logger = logging.getLogger(__name__)


class ServiceRegistry:
    def __init__(self, db: SimpleDatabase, config=AppConfig,
                 http_session: Optional[requests.Session] = None,
                 llm: Optional[LLMAdapter] = None,
                 invoker: Optional[SelfInvoker] = None,
                 sleep=None):
        self.db = db
        self.config = config
        self.http_session = http_session or requests.Session()
        self.llm = llm
        self.invoker = invoker or SelfInvoker(config, self.http_session)

        extra = {"sleep": sleep} if sleep is not None else {}
        self.objekt_matcher = ObjektMatcher(db)
        self.sync_service = GHLSyncService(db, config, self.http_session, llm, self.objekt_matcher, **extra)
        self.pipeline_sync = PipelineStageSync(db, config, self.http_session, **extra)
        self.followups = FollowupService(db, llm, config, self.http_session)
        self.knowledge = KnowledgeService(db, llm)
        self.auto_responder = AutoResponder(db, llm, config, self.http_session)
        self.lead_analysis = LeadAnalysisProcessor(db, llm)
        self.jobs = JobDriver(db, {
            LeadAnalysisProcessor.kind: self.lead_analysis,
            FollowupBatchProcessor.kind: FollowupBatchProcessor(self.followups),
        }, self.invoker, config)
        self.webhooks = WebhookIngestor(db, self.sync_service, self.pipeline_sync, self.followups,
                                        self.invoker, config)
        self.oauth = OAuthService(db, config, self.http_session)


_registry: Optional[ServiceRegistry] = None
_registry_lock = threading.Lock()


def get_services() -> ServiceRegistry:
    """FastAPI dependency returning the process-wide registry"""
    global _registry
    with _registry_lock:
        if _registry is None:
            _registry = ServiceRegistry(get_db(), AppConfig, llm=build_llm_adapter(AppConfig))
            logger.info("✅ Service registry initialized")
        return _registry
