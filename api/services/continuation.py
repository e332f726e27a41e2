# api/services/continuation.py

import logging
import threading
from typing import Any, Dict, Optional

import requests

from config import AppConfig

logger = logging.getLogger(__name__)


class SelfInvoker:
    """
    Fire-and-forget POSTs to this service's own internal routes (job
    continuation, lead re-analysis, follow-up regeneration, learning).
    Each call runs in a daemon thread; failures are logged, never raised.
    """

    def __init__(self, config=AppConfig, session: Optional[requests.Session] = None):
        self.base_url = config.BASE_URL.rstrip("/")
        self.service_key = config.SERVICE_ROLE_KEY
        self.timeout = config.HTTP_TIMEOUT
        self.session = session or requests.Session()

    def _post(self, path: str, payload: Dict[str, Any]):
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                "POST",
                url,
                headers={
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {self.service_key}",
                },
                json=payload,
                timeout=self.timeout,
            )
            if not 200 <= response.status_code < 300:
                logger.error(f"❌ Background call {path} answered {response.status_code}: {response.text[:200]}")
            else:
                logger.info(f"✅ Background call {path} accepted")
        except requests.RequestException as e:
            logger.error(f"❌ Background call {path} failed: {e}")

    def trigger(self, path: str, payload: Dict[str, Any]) -> threading.Thread:
        thread = threading.Thread(
            target=self._post,
            args=(path, payload),
            daemon=True,
            name=f"invoke-{path.strip('/').replace('/', '-')}",
        )
        thread.start()
        logger.info(f"📤 Triggered {path} in thread {thread.name}")
        return thread
