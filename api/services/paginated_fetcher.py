# api/services/paginated_fetcher.py
"""
Page and per-parent walkers over the GHL API with fixed inter-request delays.

Cursor pagination (contacts) raises on the first failed page so the caller
aborts that entity type only. Per-parent fetches (conversations, tasks)
report each parent's failure alongside its records instead of raising.
Deduplication of records is left to the upsert layer.
"""

import logging
import time
from typing import Any, Callable, Dict, Iterable, Iterator, List, NamedTuple, Optional

import requests

from api.services.ghl_api import GoHighLevelAPI, GHLAPIError
from config import AppConfig

logger = logging.getLogger(__name__)

MAX_CONTACT_PAGES = 1000


class ParentFetch(NamedTuple):
    parent: Dict[str, Any]
    records: List[Dict[str, Any]]
    error: Optional[Exception]


class GHLFetcher:
    def __init__(self, client: GoHighLevelAPI, config=AppConfig, sleep: Callable[[float], None] = time.sleep):
        self.client = client
        self.config = config
        self.sleep = sleep

    def iter_contacts(self, page_size: int = 100) -> Iterator[Dict[str, Any]]:
        """All contacts of the location, following meta.nextPageUrl until exhausted."""
        page = self.client.get_contacts_page(limit=page_size)
        seen_urls = set()
        pages = 1

        while True:
            logger.info(f"📄 Contacts page {pages}: {len(page['contacts'])} contacts")
            for contact in page["contacts"]:
                yield contact

            next_url = page["next_page_url"]
            if not next_url or not page["contacts"] or next_url in seen_urls:
                break
            if pages >= MAX_CONTACT_PAGES:
                logger.warning(f"⚠️ Stopping contact pagination after {pages} pages")
                break
            seen_urls.add(next_url)

            self.sleep(self.config.CONTACTS_PAGE_DELAY)
            page = self.client.get_contacts_page(page_url=next_url)
            pages += 1

    def iter_per_parent(self, parents: Iterable[Dict[str, Any]],
                        fetch: Callable[[Dict[str, Any]], List[Dict[str, Any]]],
                        delay: float) -> Iterator[ParentFetch]:
        """Call fetch(parent) for each parent, sleeping `delay` seconds between calls."""
        first = True
        for parent in parents:
            if not first:
                self.sleep(delay)
            first = False
            try:
                records = fetch(parent) or []
            except (GHLAPIError, requests.RequestException, ValueError) as e:
                logger.warning(f"⚠️ Fetch failed for {parent.get('id')}: {e}")
                yield ParentFetch(parent, [], e)
                continue
            yield ParentFetch(parent, records, None)

    def iter_opportunities(self, page_size: int = 100) -> Iterator[Dict[str, Any]]:
        """All opportunities of the location, page by page until a short page or meta.total."""
        page_number = 1
        fetched = 0
        while True:
            page = self.client.search_opportunities(page=page_number, limit=page_size)
            opportunities = page["opportunities"]
            for opportunity in opportunities:
                yield opportunity
            fetched += len(opportunities)
            total = page["total"]
            if len(opportunities) < page_size or (total is not None and fetched >= total):
                break
            page_number += 1
            self.sleep(self.config.CONTACTS_PAGE_DELAY)
