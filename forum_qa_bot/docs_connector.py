"""
External Documentation Connector

Searches a Confluence-style documentation site (REST search API with CQL)
so answers can point at official docs alongside forum threads.

Disabled unless DOCS_BASE_URL is set.
"""

import os
import re
import logging
from dataclasses import dataclass
from typing import Optional, List, Dict, Any

import httpx

logger = logging.getLogger(__name__)

DOCS_BASE_URL = os.getenv("DOCS_BASE_URL", "")
DOCS_USERNAME = os.getenv("DOCS_USERNAME", "")
DOCS_API_TOKEN = os.getenv("DOCS_API_TOKEN", "")
DOCS_SPACE_KEY = os.getenv("DOCS_SPACE_KEY", "")

_HIGHLIGHT_RE = re.compile(r"@@@(?:end)?hl@@@")


class DocsConnectorError(Exception):
    """Raised when the documentation API fails."""


@dataclass
class DocResult:
    """A documentation search result."""
    title: str
    url: str
    excerpt: str = ""
    space: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "permalink": self.url,
            "excerpt": self.excerpt,
            "space": self.space,
        }


def build_cql(query: str, space_key: Optional[str] = None) -> str:
    """Build a CQL full-text query, escaping quotes and backslashes."""
    escaped = query.replace("\\", "\\\\").replace('"', '\\"')
    cql = f'text ~ "{escaped}"'
    if space_key:
        cql += f' AND space = "{space_key}"'
    return cql


def clean_excerpt(text: Optional[str]) -> str:
    """Remove search highlight markers and collapse whitespace."""
    if not text:
        return ""
    return " ".join(_HIGHLIGHT_RE.sub("", text).split())


class DocsConnector:
    """
    Client for the documentation search API.

    Usage:
        docs = DocsConnector()
        if docs.enabled:
            results = await docs.search("vpn setup")
        await docs.close()
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        username: Optional[str] = None,
        api_token: Optional[str] = None,
        space_key: Optional[str] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url if base_url is not None else DOCS_BASE_URL).rstrip("/")
        self.username = username if username is not None else DOCS_USERNAME
        self.api_token = api_token if api_token is not None else DOCS_API_TOKEN
        self.space_key = space_key if space_key is not None else DOCS_SPACE_KEY
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            auth = None
            if self.username and self.api_token:
                auth = httpx.BasicAuth(self.username, self.api_token)
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                auth=auth,
                timeout=self.timeout,
                transport=self._transport,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def search(self, query: str, limit: int = 5) -> List[DocResult]:
        """
        Search documentation pages.

        Returns:
            DocResults (empty when the connector is disabled)

        Raises:
            ValueError: on a blank query
            DocsConnectorError: on HTTP or payload errors
        """
        if not query or not query.strip():
            raise ValueError("query must not be empty")
        if not self.enabled:
            return []

        params = {"cql": build_cql(query.strip(), self.space_key), "limit": limit}
        try:
            response = await self._get_client().get("/rest/api/search", params=params)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            raise DocsConnectorError(
                f"Docs search failed with HTTP {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise DocsConnectorError(f"Docs search failed: {e}") from e

        results = []
        for item in payload.get("results", [])[:limit]:
            content = item.get("content") or {}
            title = item.get("title") or content.get("title") or "Untitled"
            url = item.get("url") or (content.get("_links") or {}).get("webui") or ""
            if url and not url.startswith("http"):
                url = f"{self.base_url}{url}"
            space = ((item.get("resultGlobalContainer") or {}).get("title")
                     or (content.get("space") or {}).get("key") or "")
            results.append(DocResult(
                title=clean_excerpt(title),
                url=url,
                excerpt=clean_excerpt(item.get("excerpt")),
                space=space,
            ))

        logger.info(f"Docs search '{query[:50]}': {len(results)} results")
        return results
