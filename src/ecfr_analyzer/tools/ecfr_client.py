"""
eCFR versioner API client used by the version_history worker.
GET {ECFR_VERSIONS_URL}/title-{n}.json -> content_versions[]
"""
import logging
import httpx
from tenacity import Retrying, stop_after_attempt, wait_exponential, retry_if_exception_type
from ecfr_analyzer.config import settings

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class EcfrUnavailable(Exception):
    """The versioner answered with a status worth retrying."""


class EcfrClient:
    def __init__(self, base_url: str | None = None, client: httpx.Client | None = None,
                 max_attempts: int | None = None, backoff_seconds: float = 1.0):
        self.base_url = (base_url or settings.ecfr_versions_url).rstrip("/")
        self._client = client or httpx.Client(
            timeout=settings.ecfr_timeout_seconds,
            headers={"Accept": "application/json"},
            follow_redirects=True,
        )
        self._max_attempts = max_attempts or settings.ecfr_max_attempts
        self._backoff = backoff_seconds

    def close(self):
        self._client.close()

    def _get_json(self, url: str) -> dict:
        response = self._client.get(url)
        if response.status_code in RETRYABLE_STATUS:
            raise EcfrUnavailable(f"eCFR returned {response.status_code} for {url}")
        response.raise_for_status()
        return response.json()

    def fetch_title_versions(self, title_number: int) -> list[dict]:
        """Current (non-removed, dated) content versions of one title."""
        url = f"{self.base_url}/title-{title_number}.json"
        retrying = Retrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._backoff, min=self._backoff, max=30),
            retry=retry_if_exception_type((httpx.TransportError, EcfrUnavailable)),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning("Retrying eCFR versions for title %s (attempt %d)",
                                   title_number, attempt.retry_state.attempt_number)
                payload = self._get_json(url)
        return extract_versions(payload)


def extract_versions(payload: dict) -> list[dict]:
    versions = []
    for v in payload.get("content_versions") or []:
        if v.get("removed") or not v.get("amendment_date"):
            continue
        versions.append({
            "date"      : v.get("amendment_date"),
            "identifier": v.get("identifier"),
            "name"      : v.get("name"),
            "part"      : v.get("part"),
            "type"      : v.get("type"),
        })
    return versions
