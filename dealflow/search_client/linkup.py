from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

import httpx

from dealflow.utils.retry import RetryOptions, RetryPolicy

logger = logging.getLogger(__name__)

SearchDepth = Literal["standard", "deep"]

_MAX_SOURCES = 10


@dataclass(frozen=True, slots=True)
class SearchSource:
    name: str
    url: str
    snippet: str = ""


@dataclass(frozen=True, slots=True)
class SearchResult:
    query: str
    depth: SearchDepth
    answer: str = ""
    sources: list[SearchSource] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_tool_payload(self) -> dict[str, Any]:
        if self.error is not None:
            return {"error": self.error}
        return {
            "answer": self.answer,
            "sources": [
                {"name": source.name, "url": source.url, "snippet": source.snippet}
                for source in self.sources
            ],
        }


class SearchClient(Protocol):
    def search(
        self,
        *,
        query: str,
        depth: SearchDepth,
        cancelled: threading.Event | None = None,
    ) -> SearchResult: ...


def build_client(*, api_key: str, base_url: str, timeout_seconds: float) -> httpx.Client:
    return httpx.Client(
        base_url=base_url,
        headers={
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        },
        timeout=timeout_seconds,
    )


class LinkupSearchClient:
    """Web search through the Linkup sourced-answer endpoint.

    Failures are returned as SearchResult.error, never raised: a failed
    search is information for the model, not a pipeline failure.
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str = "https://api.linkup.so/v1",
        timeout_seconds: float = 60.0,
        retry_policy: RetryPolicy | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        if http_client is None and not api_key:
            raise ValueError("Linkup API key is required when client is not injected")
        self._http_client = http_client or build_client(
            api_key=api_key or "",
            base_url=base_url,
            timeout_seconds=timeout_seconds,
        )
        self._retry_policy = retry_policy or RetryPolicy(
            RetryOptions(max_retries=2, base_delay_seconds=1.0, max_delay_seconds=5.0)
        )

    def search(
        self,
        *,
        query: str,
        depth: SearchDepth = "standard",
        cancelled: threading.Event | None = None,
    ) -> SearchResult:
        try:
            payload = self._retry_policy.execute(
                lambda: self._post_search(query=query, depth=depth),
                label="linkup_search",
                cancelled=cancelled,
            )
        except httpx.HTTPStatusError as error:
            logger.warning(
                "Linkup search failed with HTTP %s", error.response.status_code
            )
            return SearchResult(
                query=query,
                depth=depth,
                error=f"Search API error: HTTP {error.response.status_code}",
            )
        except (httpx.HTTPError, ValueError) as error:
            logger.warning("Linkup search failed: %s", error)
            return SearchResult(query=query, depth=depth, error=f"Search failed: {error}")

        return SearchResult(
            query=query,
            depth=depth,
            answer=str(payload.get("answer") or ""),
            sources=_parse_sources(payload.get("sources")),
        )

    def close(self) -> None:
        self._http_client.close()

    def _post_search(self, *, query: str, depth: SearchDepth) -> dict[str, Any]:
        response = self._http_client.post(
            "/search",
            json={"q": query, "depth": depth, "outputType": "sourcedAnswer"},
        )
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError("Search response must be a JSON object")
        return payload


def _parse_sources(raw: Any) -> list[SearchSource]:
    if not isinstance(raw, list):
        return []

    sources: list[SearchSource] = []
    for item in raw[:_MAX_SOURCES]:
        if not isinstance(item, dict):
            continue
        url = str(item.get("url") or "")
        if not url:
            continue
        sources.append(
            SearchSource(
                name=str(item.get("name") or url),
                url=url,
                snippet=str(item.get("snippet") or item.get("content") or ""),
            )
        )
    return sources
