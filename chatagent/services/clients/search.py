from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from ...errors import ProviderErrorKind, SearchProviderError
from .base import SearchHit

logger = logging.getLogger(__name__)


class SerpApiSearchClient:
    """Web search through SerpAPI's JSON endpoint."""

    def __init__(
        self,
        api_key: str,
        *,
        endpoint: str = "https://serpapi.com/search.json",
        engine: str = "google",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_key = (api_key or "").strip()
        self._endpoint = endpoint
        self._engine = engine
        self._timeout = max(1.0, float(timeout))
        self._transport = transport

    async def search(self, query: str, limit: int) -> List[SearchHit]:
        if not self._api_key:
            raise SearchProviderError(ProviderErrorKind.INVALID_KEY, "SEARCH_SERP_API_KEY is not set")
        params = {
            "engine": self._engine,
            "q": query,
            "num": max(1, int(limit)),
            "api_key": self._api_key,
        }
        timeout = httpx.Timeout(self._timeout, connect=min(5.0, self._timeout))
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            try:
                resp = await client.get(self._endpoint, params=params)
            except httpx.TimeoutException as exc:
                raise SearchProviderError(ProviderErrorKind.TIMEOUT, str(exc)) from exc
            except httpx.RequestError as exc:
                raise SearchProviderError(ProviderErrorKind.UNAVAILABLE, str(exc)) from exc

        if resp.status_code >= 400:
            raise _status_error(resp)
        try:
            payload = resp.json()
        except ValueError as exc:
            raise SearchProviderError(ProviderErrorKind.UNAVAILABLE, "search returned invalid JSON") from exc
        if isinstance(payload, dict) and payload.get("error") and not payload.get("organic_results"):
            message = str(payload["error"])
            # SerpAPI reports empty result pages through the error field.
            if "hasn't returned any results" in message:
                return []
            raise SearchProviderError(_kind_from_message(message), message)
        return parse_organic_results(payload, limit)


def parse_organic_results(payload: Dict[str, Any], limit: int) -> List[SearchHit]:
    hits: List[SearchHit] = []
    results = payload.get("organic_results") or []
    for index, item in enumerate(results, start=1):
        if not isinstance(item, dict):
            continue
        url = (item.get("link") or "").strip()
        if not url:
            continue
        position = item.get("position") or index
        try:
            position = max(1, int(position))
        except (TypeError, ValueError):
            position = index
        hits.append(
            SearchHit(
                title=(item.get("title") or "").strip(),
                url=url,
                snippet=(item.get("snippet") or "").strip(),
                score=round(1.0 / position, 6),
            )
        )
    hits.sort(key=lambda hit: hit.score, reverse=True)
    return hits[: max(0, int(limit))]


def _status_error(resp: httpx.Response) -> SearchProviderError:
    detail = resp.text[:250]
    status = resp.status_code
    if status in (401, 403):
        kind = ProviderErrorKind.INVALID_KEY
    elif status == 429:
        kind = ProviderErrorKind.RATE_LIMITED
    elif status in (408, 504):
        kind = ProviderErrorKind.TIMEOUT
    else:
        kind = ProviderErrorKind.UNAVAILABLE
    logger.debug("Search provider returned %s: %s", status, detail)
    return SearchProviderError(kind, f"HTTP {status}: {detail}")


def _kind_from_message(message: str) -> ProviderErrorKind:
    lowered = message.lower()
    if "api key" in lowered or "api_key" in lowered:
        return ProviderErrorKind.INVALID_KEY
    if "run out of searches" in lowered or "rate" in lowered:
        return ProviderErrorKind.RATE_LIMITED
    return ProviderErrorKind.UNAVAILABLE
