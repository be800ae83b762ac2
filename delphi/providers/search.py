"""Perplexity search client via the openai SDK (OpenAI-compatible API).

Retries only timeouts and 5xx responses, with exponential backoff; every
other failure is raised immediately as ``SearchError``.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any

from openai import APIStatusError, APITimeoutError, AsyncOpenAI

from config.config_loader import SearchConfig, resolve_api_key
from delphi.citations import sanitize_citations
from delphi.models import SearchResponse, SearchResult
from delphi.providers.base import SearchError, ServiceClient

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = (
    "You are a research assistant. Provide detailed, well-sourced information with proper "
    "citations. Be objective and comprehensive in your analysis."
)
_HEALTH_QUERY = "test query for API health check"

SEARCH_MODES = ("web", "academic", "sec")
CONTEXT_SIZES = ("low", "medium", "high")


@dataclass
class DateFilter:
    after: str | date | None = None
    before: str | date | None = None


def format_search_date(value: str | date) -> str:
    """Normalize a date (or ISO / MM/DD/YYYY string) to ``MM/DD/YYYY``."""
    if isinstance(value, datetime):
        parsed = value.date()
    elif isinstance(value, date):
        parsed = value
    else:
        text = value.strip()
        try:
            parsed = datetime.fromisoformat(text).date()
        except ValueError:
            try:
                parsed = datetime.strptime(text, "%m/%d/%Y").date()
            except ValueError as exc:
                raise ValueError(f"Unrecognized date: {value!r}") from exc
    return parsed.strftime("%m/%d/%Y")


def _build_search_results(data: dict[str, Any], content: str, citations: list) -> list[SearchResult]:
    results = []
    for raw in data.get("search_results") or []:
        if not isinstance(raw, dict):
            continue
        raw_date = raw.get("date")
        results.append(
            SearchResult(
                title=raw.get("title") or "Untitled",
                url=raw.get("url") or "",
                summary=raw.get("summary") or content[:200] + "...",
                date=raw_date if isinstance(raw_date, str) else None,
                relevance_score=0.8,
            )
        )
    if not results and citations:
        results = [
            SearchResult(
                title=citation.title,
                url=citation.url,
                summary=f"Reference material {i + 1}",
                relevance_score=0.7,
            )
            for i, citation in enumerate(citations)
        ]
    return results


class SearchClient(ServiceClient):
    """Web / academic search with citations."""

    def __init__(self, config: SearchConfig, client: AsyncOpenAI | None = None) -> None:
        self._config = config
        if client is None:
            api_key = resolve_api_key(config.api_key_env)
            client = AsyncOpenAI(api_key=api_key, base_url=config.base_url, max_retries=0)
        self._client = client

    def name(self) -> str:
        return "perplexity"

    def model_string(self) -> str:
        return self._config.model

    def _build_payload(
        self,
        query: str,
        mode: str,
        context_size: str,
        domain_filter: list[str] | None,
        date_filter: DateFilter | None,
    ) -> dict[str, Any]:
        extra_body: dict[str, Any] = {
            "search_mode": mode,
            "web_search_options": {"search_context_size": context_size},
            "return_citations": True,
        }
        if domain_filter:
            extra_body["search_domain_filter"] = list(domain_filter)
        if date_filter is not None:
            if date_filter.after:
                extra_body["search_after_date_filter"] = format_search_date(date_filter.after)
            if date_filter.before:
                extra_body["search_before_date_filter"] = format_search_date(date_filter.before)
        return {
            "model": self._config.model,
            "messages": [
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": query},
            ],
            "extra_body": extra_body,
        }

    async def _create_with_retry(self, payload: dict[str, Any]) -> Any:
        max_attempts = self._config.max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                return await asyncio.wait_for(
                    self._client.chat.completions.create(**payload),
                    timeout=self._config.timeout_sec,
                )
            except (TimeoutError, APITimeoutError) as exc:
                reason = f"timed out after {self._config.timeout_sec}s"
                last_exc: Exception = exc
            except APIStatusError as exc:
                if exc.status_code < 500:
                    raise SearchError(self.name(), f"Search request rejected ({exc.status_code}): {exc}") from exc
                reason = f"server error {exc.status_code}"
                last_exc = exc
            except Exception as exc:
                raise SearchError(self.name(), f"Search failed: {exc}") from exc

            if attempt == max_attempts:
                raise SearchError(
                    self.name(), f"Search failed after {max_attempts} attempts: {reason}"
                ) from last_exc
            delay = self._config.backoff_base_sec * (2 ** (attempt - 1))
            logger.warning(
                "Search attempt %d/%d %s; retrying in %.1fs",
                attempt, max_attempts, reason, delay,
            )
            await asyncio.sleep(delay)

        raise SearchError(self.name(), "Search failed: no attempts configured")

    async def search(
        self,
        query: str,
        mode: str = "web",
        context_size: str | None = None,
        domain_filter: list[str] | None = None,
        date_filter: DateFilter | None = None,
    ) -> SearchResponse:
        """Run one search and return its text, sanitized citations and result list.

        Raises:
            SearchError: On a non-retriable error or after exhausting retries.
        """
        payload = self._build_payload(
            query, mode, context_size or self._config.context_size, domain_filter, date_filter
        )
        logger.debug("Searching (%s): %s", mode, query)
        response = await self._create_with_retry(payload)

        data = response.model_dump() if hasattr(response, "model_dump") else dict(response)
        choices = data.get("choices") or []
        message = (choices[0].get("message") if choices else None) or {}
        content = message.get("content") or ""

        citations = sanitize_citations(data.get("citations"))
        search_results = _build_search_results(data, content, citations)
        return SearchResponse(content=content, citations=citations, search_results=search_results)

    async def search_academic(self, query: str) -> SearchResponse:
        return await self.search(query, mode="academic", context_size="high")

    async def search_recent(self, query: str, days_back: int = 30) -> SearchResponse:
        after = date.today() - timedelta(days=days_back)
        return await self.search(query, context_size="medium", date_filter=DateFilter(after=after))

    async def search_domains(self, query: str, domains: list[str]) -> SearchResponse:
        return await self.search(query, context_size="medium", domain_filter=domains)

    async def ping(self) -> None:
        result = await self.search(_HEALTH_QUERY, context_size="low")
        if not result.content:
            raise SearchError(self.name(), "Empty search response content")
