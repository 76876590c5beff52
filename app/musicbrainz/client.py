import logging
import os
from typing import Any
from urllib.parse import urljoin

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from app.musicbrainz.cache import MusicBrainzCache
from engine.limiter import RateLimiter

logger = logging.getLogger(__name__)

MUSICBRAINZ_BASE_URL = os.getenv("MUSICBRAINZ_BASE_URL", "https://musicbrainz.org")
CLIENT_NAME = "myousync"
CLIENT_VERSION = "0.1.0"


def build_user_agent(contact=None):
    """MusicBrainz asks for ``app/version ( contact )``; the contact is the operator's."""
    agent = f"{CLIENT_NAME}/{CLIENT_VERSION}"
    contact = (contact or "").strip()
    return f"{agent} ( {contact} )" if contact else agent


MUSICBRAINZ_USER_AGENT = os.getenv("MUSICBRAINZ_USER_AGENT") or build_user_agent(os.getenv("MUSICBRAINZ_CONTACT"))

RECORDING_ENDPOINT = "/ws/2/recording"
SEARCH_TTL_SECONDS = 24 * 60 * 60


class MusicBrainzError(Exception):
    """The MusicBrainz web service could not answer a request."""


class MusicBrainzClient:
    def __init__(
        self,
        *,
        cache: MusicBrainzCache | None = None,
        timeout_seconds: float = 10,
        min_interval_seconds: float = 1.5,
        cache_ttl_seconds: int = SEARCH_TTL_SECONDS,
        base_url: str = MUSICBRAINZ_BASE_URL,
        user_agent: str | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") + "/"
        self.timeout_seconds = timeout_seconds
        self.user_agent = user_agent or MUSICBRAINZ_USER_AGENT
        self.cache_ttl_seconds = cache_ttl_seconds
        self._cache = cache
        self._limiter = RateLimiter(min_interval_seconds)
        self._session = requests.Session()
        retry = Retry(
            total=3,
            backoff_factor=2.0,
            status_forcelist=(429, 500, 502, 503, 504),
            allowed_methods=frozenset({"GET"}),
            respect_retry_after_header=True,
        )
        adapter = HTTPAdapter(max_retries=retry)
        self._session.mount("https://", adapter)
        self._session.mount("http://", adapter)

    def get_json(self, endpoint: str, *, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """GET ``endpoint`` as JSON; successful responses are cached by URL and params."""
        params = dict(params or {})
        params.setdefault("fmt", "json")
        url = urljoin(self.base_url, endpoint.lstrip("/"))
        cache_key = requests.Request("GET", url, params=sorted(params.items())).prepare().url
        if self._cache is not None:
            cached = self._cache.get(cache_key)
            if isinstance(cached, dict):
                logger.info(f"[MUSICBRAINZ] request={endpoint} status=200 cache=hit")
                return cached

        self._limiter.wait()
        try:
            resp = self._session.get(
                url,
                params=params,
                headers={"User-Agent": self.user_agent, "Accept": "application/json"},
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            logger.info(f"[MUSICBRAINZ] request={endpoint} status=error cache=miss")
            raise MusicBrainzError(f"MusicBrainz request failed: {exc}") from exc
        status = int(resp.status_code)
        logger.info(f"[MUSICBRAINZ] request={endpoint} status={status} cache=miss")
        if status != 200:
            raise MusicBrainzError(f"MusicBrainz returned HTTP {status}")
        try:
            payload = resp.json() if resp.content else {}
        except ValueError as exc:
            raise MusicBrainzError("Failed to parse MusicBrainz response") from exc
        if not isinstance(payload, dict):
            raise MusicBrainzError("Unexpected MusicBrainz response shape")
        if self._cache is not None:
            self._cache.set(cache_key, payload, self.cache_ttl_seconds)
        return payload

    def search_recordings(self, query: str, *, limit: int = 3) -> list[dict[str, Any]]:
        payload = self.get_json(RECORDING_ENDPOINT, params={"query": query, "limit": limit})
        recordings = payload.get("recordings")
        return recordings if isinstance(recordings, list) else []
