"""
Web search client backed by the Tavily search API.

Never raises on ordinary failures: missing credentials, transport errors
and non-2xx responses all come back as a structured error dict.
"""

import logging
from typing import Any, Dict, Optional

import httpx
from httpx import AsyncClient, HTTPStatusError, TimeoutException

from src.perplex.config import get_settings

logger = logging.getLogger(__name__)

MAX_CONTENT_CHARS = 500


class TavilySearchClient:
    """Client for the Tavily web search API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.tavily_api_key
        self.api_url = api_url or settings.tavily_api_url
        self.timeout = httpx.Timeout(timeout_seconds or settings.search_timeout_seconds, connect=5.0)

    async def search(self, query: str, max_results: int = 5) -> Dict[str, Any]:
        """
        Search the web.

        Args:
            query: Search query
            max_results: Maximum results to return

        Returns:
            {answer?, results: [{title, url, content}]} or {error, message, query}
        """
        if not self.api_key:
            logger.warning("TAVILY_API_KEY not configured, web search unavailable")
            return {
                "error": "search_unavailable",
                "message": "Web search is not configured on this server",
                "query": query,
            }

        body = {
            "api_key": self.api_key,
            "query": query,
            "max_results": max_results,
            "include_answer": True,
            "search_depth": "basic",
        }

        try:
            async with AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.api_url, json=body)
                response.raise_for_status()
                data = response.json()

        except TimeoutException as e:
            logger.error(f"Web search timed out for query '{query}': {e}")
            return {"error": "search_timeout", "message": "Web search timed out", "query": query}

        except HTTPStatusError as e:
            logger.error(f"Web search returned {e.response.status_code}: {e.response.text}")
            return {
                "error": "search_failed",
                "message": f"Web search returned status {e.response.status_code}",
                "query": query,
            }

        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Web search failed for query '{query}': {e}")
            return {"error": "search_failed", "message": str(e), "query": query}

        return self._normalize(data, max_results)

    def _normalize(self, data: Dict[str, Any], max_results: int) -> Dict[str, Any]:
        results = []
        for item in (data.get("results") or [])[:max_results]:
            results.append({
                "title": item.get("title") or "",
                "url": item.get("url") or "",
                "content": (item.get("content") or "")[:MAX_CONTENT_CHARS],
            })

        normalized: Dict[str, Any] = {"results": results}
        if data.get("answer"):
            normalized["answer"] = data["answer"]

        logger.info(f"Web search returned {len(results)} results")
        return normalized
