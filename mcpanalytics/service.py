"""Storage and retrieval of server records in the search index."""

from __future__ import annotations

import logging
from typing import Any, Mapping
from urllib.parse import quote

import requests

from mcpanalytics.model import ServerDetail, determine_server_source
from mcpanalytics.query import SearchQuery, SearchResult, build_es_query, parse_facets

logger = logging.getLogger(__name__)

SERVER_INDEX_NAME = "mcp_servers"

_TIMEOUT = 30.0
_MIGRATION_BATCH = 1000

_KEYWORD = {"type": "keyword"}
_TEXT = {"type": "text"}
_CAPABILITY = {
    "type": "nested",
    "properties": {"name": _KEYWORD, "description": _TEXT},
}

SERVER_MAPPING: dict[str, Any] = {
    "mappings": {
        "properties": {
            "id": _KEYWORD,
            "name": {
                "type": "text",
                "fields": {"keyword": _KEYWORD, "suggest": {"type": "completion"}},
            },
            "description": _TEXT,
            "author": {"type": "text", "fields": {"keyword": _KEYWORD}},
            "homepage": _KEYWORD,
            "source": _KEYWORD,
            "repository": _KEYWORD,
            "license": _KEYWORD,
            "categories": _KEYWORD,
            "packages": {
                "type": "nested",
                "properties": {"type": _KEYWORD, "name": _KEYWORD, "version": _KEYWORD},
            },
            "version_detail": {
                "properties": {
                    "version": _KEYWORD,
                    "sdk_version": _KEYWORD,
                    "protocol_version": _KEYWORD,
                }
            },
            "remotes": {
                "type": "nested",
                "properties": {
                    "type": _KEYWORD,
                    "transport": _KEYWORD,
                    "command": _TEXT,
                    "args": _TEXT,
                    "url": _KEYWORD,
                    "headers": {"type": "object"},
                },
            },
            "tools": _CAPABILITY,
            "prompts": _CAPABILITY,
            "templates": _CAPABILITY,
            "indexed_at": {"type": "date"},
            "last_updated": {"type": "date"},
            "install_count": {"type": "long"},
            "rating_average": {"type": "float"},
            "rating_count": {"type": "long"},
            "popularity_score": {"type": "float"},
            "trending_score": {"type": "float"},
            "quality_score": {"type": "float"},
        }
    }
}

_MISSING_SOURCE_QUERY: dict[str, Any] = {
    "query": {
        "bool": {
            "should": [
                {"bool": {"must_not": {"exists": {"field": "source"}}}},
                {"term": {"source": ""}},
            ]
        }
    },
    "size": _MIGRATION_BATCH,
}


class SearchError(Exception):
    """The search index could not be reached or reported an error."""


class ServerNotFoundError(SearchError, LookupError):
    """No server with the requested identifier is indexed."""


def _describe(response: requests.Response) -> str:
    return f"[{response.status_code}] {response.text}"


def _is_error(response: requests.Response) -> bool:
    return response.status_code > 299


def _json(response: requests.Response) -> Mapping[str, Any]:
    try:
        data = response.json()
    except ValueError as exc:
        raise SearchError(f"failed to decode response: {exc}") from exc
    if not isinstance(data, Mapping):
        raise SearchError("failed to decode response: expected an object")
    return data


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key)
    return value if isinstance(value, Mapping) else {}


def _hits(data: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    hits = _section(data, "hits").get("hits")
    if hits is None:
        return []
    if not isinstance(hits, list):
        raise SearchError("failed to decode response: hits must be a list")
    return [hit for hit in hits if isinstance(hit, Mapping)]


def _server_from_hit(hit: Mapping[str, Any]) -> ServerDetail:
    try:
        return ServerDetail.from_dict(hit.get("_source"))
    except ValueError as exc:
        raise SearchError(f"failed to decode response: {exc}") from exc


class SearchService:
    """Keeps server records in the search index and queries them."""

    def __init__(self, es_url: str, session: requests.Session | None = None) -> None:
        self._base_url = es_url.rstrip("/")
        self._session = session if session is not None else requests.Session()

        response = self._request("GET", "/", "failed to connect to Elasticsearch")
        if _is_error(response):
            raise SearchError(f"Elasticsearch error: {_describe(response)}")
        logger.info("Connected to Elasticsearch")

        try:
            self.initialize_index()
        except SearchError as exc:
            raise SearchError(f"failed to initialize index: {exc}") from exc

    def _request(
        self,
        method: str,
        path: str,
        failure: str,
        *,
        params: Mapping[str, str] | None = None,
        body: Any = None,
    ) -> requests.Response:
        try:
            return self._session.request(
                method,
                self._base_url + path,
                params=params,
                json=body,
                timeout=_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise SearchError(f"{failure}: {exc}") from exc

    @staticmethod
    def _doc_path(server_id: str) -> str:
        return f"/{SERVER_INDEX_NAME}/_doc/{quote(server_id, safe='')}"

    def initialize_index(self) -> bool:
        """Create the server index with its mapping unless it exists; True if created."""
        response = self._request(
            "HEAD", f"/{SERVER_INDEX_NAME}", "failed to check index existence"
        )
        if response.status_code != 404:
            logger.info("Index already exists: %s", SERVER_INDEX_NAME)
            return False

        response = self._request(
            "PUT", f"/{SERVER_INDEX_NAME}", "failed to create index", body=SERVER_MAPPING
        )
        if _is_error(response):
            raise SearchError(f"failed to create index: {_describe(response)}")
        logger.info("Created index: %s", SERVER_INDEX_NAME)
        return True

    def index_server(self, server: ServerDetail) -> None:
        """Store a server document, replacing any with the same identifier."""
        body = server.to_dict()
        if server.id:
            method, path = "PUT", self._doc_path(server.id)
        else:
            method, path = "POST", f"/{SERVER_INDEX_NAME}/_doc"
        response = self._request(
            method, path, "failed to index document", params={"refresh": "true"}, body=body
        )
        if _is_error(response):
            raise SearchError(f"failed to index document: {_describe(response)}")

    def get_server(self, server_id: str) -> ServerDetail:
        """Fetch one server by identifier."""
        response = self._request("GET", self._doc_path(server_id), "failed to get document")
        if _is_error(response):
            if response.status_code == 404:
                raise ServerNotFoundError(f"server not found: {server_id}")
            raise SearchError(f"failed to get document: {_describe(response)}")
        return _server_from_hit(_json(response))

    def delete_server(self, server_id: str) -> None:
        """Remove a server; removing one that is already gone is not an error."""
        response = self._request(
            "DELETE",
            self._doc_path(server_id),
            "failed to delete document",
            params={"refresh": "true"},
        )
        if _is_error(response) and response.status_code != 404:
            raise SearchError(f"failed to delete document: {_describe(response)}")

    def search(self, query: SearchQuery) -> SearchResult:
        """Run a search and return the matching page with totals and facets."""
        response = self._request(
            "POST",
            f"/{SERVER_INDEX_NAME}/_search",
            "failed to execute search",
            params={
                "from": str(query.offset),
                "size": str(query.limit),
                "track_total_hits": "true",
            },
            body=build_es_query(query),
        )
        if _is_error(response):
            raise SearchError(f"search error: {_describe(response)}")

        data = _json(response)
        total = _section(_section(data, "hits"), "total").get("value", 0)
        if isinstance(total, bool) or not isinstance(total, (int, float)):
            raise SearchError("failed to decode response: total must be a number")

        servers = []
        for hit in _hits(data):
            server = _server_from_hit(hit)
            score = hit.get("_score")
            server.score = float(score) if isinstance(score, (int, float)) else 0.0
            servers.append(server)

        try:
            facets = parse_facets(data.get("aggregations"))
        except ValueError as exc:
            raise SearchError(f"failed to decode response: {exc}") from exc

        return SearchResult(total=int(total), servers=servers, facets=facets)

    def migrate_server_sources(self) -> int:
        """Fill in the source of servers indexed without one; returns how many were updated."""
        response = self._request(
            "POST",
            f"/{SERVER_INDEX_NAME}/_search",
            "failed to search servers",
            body=_MISSING_SOURCE_QUERY,
        )
        if _is_error(response):
            raise SearchError(f"search error: {_describe(response)}")

        updated = 0
        for hit in _hits(_json(response)):
            server = _server_from_hit(hit)
            server.source = determine_server_source(server.id, server.name)
            try:
                self.index_server(server)
            except SearchError as exc:
                logger.warning("Failed to update server %s: %s", server.id, exc)
                continue
            logger.info("Updated server %s with source: %s", server.id, server.source)
            updated += 1
        return updated