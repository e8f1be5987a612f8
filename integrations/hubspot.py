"""
HubSpot CRM Read Client
========================

Read-only access to HubSpot API v3/v4 via a Private App token:
- CRM search with filters (leads, deals) and cursor paging
- Batch reads of objects by ID
- Batch association reads (lead->contact, deal->contact)
- Owners, pipeline definitions, forms and form submissions

Transient failures (timeouts, 429, 5xx) are retried with exponential
backoff per request; anything else surfaces as an APIError so the caller
can skip that page or batch and carry on.
"""
from __future__ import annotations

import threading
import time
from typing import Any, Dict, Iterator, List, Optional, Tuple

import requests
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from etl.lib.errors import (
    TRANSIENT_API_ERRORS,
    APIAuthError,
    APIError,
    APIRateLimitError,
    APIServerError,
    APITimeoutError,
)
from etl.lib.logger import setup_logger

logger = setup_logger("hubspot")

HUBSPOT_BASE_URL = "https://api.hubapi.com"
HUBSPOT_PAGE_LIMIT = 100
HUBSPOT_RATE_LIMIT = 100
HUBSPOT_RATE_WINDOW = 10  # seconds
REQUEST_TIMEOUT = 30
MAX_RETRY_AFTER = 30
DEFAULT_RETRY_AFTER = 10


def _retry_after_seconds(value) -> int:
    """Retry-After as whole seconds; HTTP-date or junk values fall back to the default."""
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER


class HubSpotClient:
    """HubSpot API client with rate limiting, retries and paging."""

    def __init__(self, token: str, base_url: str = HUBSPOT_BASE_URL,
                 session: requests.Session = None):
        self.token = token
        self.base_url = base_url
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        })
        self._request_timestamps: List[float] = []
        self._rate_lock = threading.Lock()

    def _rate_limit_wait(self):
        # Shared by the concurrent ingest threads
        with self._rate_lock:
            now = time.time()
            self._request_timestamps = [
                t for t in self._request_timestamps if now - t < HUBSPOT_RATE_WINDOW
            ]
            if len(self._request_timestamps) >= HUBSPOT_RATE_LIMIT:
                sleep_time = HUBSPOT_RATE_WINDOW - (now - self._request_timestamps[0]) + 0.1
                logger.debug("Rate limit approaching, sleeping %.1fs", sleep_time)
                time.sleep(sleep_time)
            self._request_timestamps.append(time.time())

    @retry(
        stop=stop_after_attempt(4),
        wait=wait_exponential(multiplier=1, min=1, max=20),
        retry=retry_if_exception_type(TRANSIENT_API_ERRORS),
        reraise=True,
    )
    def _request(self, method: str, path: str, params: dict = None,
                 body: dict = None) -> Dict[str, Any]:
        """Make an authenticated request; raises APIError subclasses on failure."""
        self._rate_limit_wait()
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(
                method, url, params=params, json=body, timeout=REQUEST_TIMEOUT,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            logger.warning("%s %s failed: %s", method, path, e)
            raise APITimeoutError(url, REQUEST_TIMEOUT) from e
        except requests.RequestException as e:
            raise APIError(f"{method} {path} failed: {e}", url=url) from e

        if resp.status_code in (401, 403):
            raise APIAuthError(url, resp.status_code)
        if resp.status_code == 429:
            retry_after = _retry_after_seconds(resp.headers.get("Retry-After"))
            logger.warning("Rate limited (429) on %s. Waiting %ds", path, retry_after)
            time.sleep(min(retry_after, MAX_RETRY_AFTER))
            raise APIRateLimitError(url, retry_after)
        if resp.status_code >= 500:
            raise APIServerError(url, resp.status_code, resp.text)
        if not resp.ok:
            raise APIError(
                f"{method} {path} returned {resp.status_code}: {resp.text[:500]}",
                status_code=resp.status_code, url=url,
            )
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise APIError(f"{method} {path} returned non-JSON body", url=url) from e

    def _get(self, path: str, params: dict = None) -> Dict[str, Any]:
        return self._request("GET", path, params=params)

    def _post(self, path: str, body: dict) -> Dict[str, Any]:
        return self._request("POST", path, body=body)

    @staticmethod
    def _next_after(data: dict) -> Optional[str]:
        return ((data.get("paging") or {}).get("next") or {}).get("after")

    def _paginate_all(self, path: str, params: dict = None,
                      results_key: str = "results") -> List[dict]:
        """GET every page of a cursor-paged collection."""
        all_results = []
        params = dict(params or {})
        params.setdefault("limit", HUBSPOT_PAGE_LIMIT)
        page = 0
        while True:
            page += 1
            data = self._get(path, params)
            results = data.get(results_key, [])
            all_results.extend(results)
            logger.debug("Page %d of %s: %d records (total: %d)",
                         page, path, len(results), len(all_results))
            after = self._next_after(data)
            if not after:
                break
            params["after"] = after
        return all_results

    # --- CRM objects ---

    def search(
        self,
        object_type: str,
        filters: List[dict],
        properties: List[str],
        after: Optional[str] = None,
        sorts: List[dict] = None,
        limit: int = HUBSPOT_PAGE_LIMIT,
    ) -> Tuple[List[dict], Optional[str]]:
        """
        One page of a CRM search.

        Returns:
            (records, next_page_token); the token is None on the last page.
        """
        body: Dict[str, Any] = {
            "filterGroups": [{"filters": filters}],
            "properties": properties,
            "limit": limit,
        }
        if sorts:
            body["sorts"] = sorts
        if after:
            body["after"] = after
        data = self._post(f"/crm/v3/objects/{object_type}/search", body)
        return data.get("results", []), self._next_after(data)

    def search_pages(self, object_type: str, filters: List[dict],
                     properties: List[str], sorts: List[dict] = None) -> Iterator[List[dict]]:
        """Yield search result pages until the cursor runs out."""
        after = None
        while True:
            records, after = self.search(object_type, filters, properties,
                                         after=after, sorts=sorts)
            yield records
            if not after:
                return

    def batch_read(self, object_type: str, ids: List[str],
                   properties: List[str]) -> List[dict]:
        """Read up to HUBSPOT_PAGE_LIMIT objects by ID in one call."""
        if not ids:
            return []
        body = {
            "properties": properties,
            "inputs": [{"id": str(i)} for i in ids],
        }
        data = self._post(f"/crm/v3/objects/{object_type}/batch/read", body)
        return data.get("results", [])

    def associations(self, from_type: str, to_type: str,
                     ids: List[str]) -> Dict[str, List[str]]:
        """
        Batch association read (v4) for one chunk of IDs.

        Returns:
            from_id -> [to_id, ...] in the order HubSpot returns them.
        """
        if not ids:
            return {}
        body = {"inputs": [{"id": str(i)} for i in ids]}
        data = self._post(f"/crm/v4/associations/{from_type}/{to_type}/batch/read", body)
        mapping: Dict[str, List[str]] = {}
        for result in data.get("results", []):
            from_id = (result.get("from") or {}).get("id")
            if not from_id:
                continue
            to_ids = []
            for t in result.get("to", []):
                to_id = t.get("toObjectId", t.get("id"))
                if to_id is not None:
                    to_ids.append(str(to_id))
            mapping[str(from_id)] = to_ids
        return mapping

    # --- metadata ---

    def fetch_owners(self) -> List[dict]:
        logger.info("Fetching owners...")
        owners = self._paginate_all("/crm/v3/owners/", params={"archived": "false"})
        logger.info("Fetched %d owners", len(owners))
        return owners

    def fetch_pipelines(self, object_type: str = "leads") -> List[dict]:
        data = self._get(f"/crm/v3/pipelines/{object_type}")
        pipelines = data.get("results", [])
        logger.info("Fetched %d %s pipelines", len(pipelines), object_type)
        return pipelines

    def fetch_forms(self) -> List[dict]:
        forms = self._paginate_all("/marketing/v3/forms")
        logger.info("Found %d forms", len(forms))
        return forms

    def form_submission_pages(self, form_guid: str) -> Iterator[List[dict]]:
        """Yield pages of submissions for one form, newest first."""
        path = f"/form-integrations/v1/submissions/forms/{form_guid}"
        params: Dict[str, Any] = {"limit": 50}
        while True:
            data = self._get(path, params)
            yield data.get("results", [])
            after = self._next_after(data)
            if not after:
                return
            params["after"] = after
