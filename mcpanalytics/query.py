"""Search parameters, search results and the index query built from them."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from mcpanalytics.model import ServerDetail

_TEXT_FIELDS = ["name^3", "description^2", "author", "categories"]

_SORT_FIELDS = {
    "popularity": "popularity_score",
    "trending": "trending_score",
    "rating": "rating_average",
    "recent": "last_updated",
}

_NESTED_FILTERS = {
    "package_type": ("packages", "packages.type"),
    "transport": ("remotes", "remotes.transport"),
}

# (aggregation name, facet field, whether the buckets sit under a nested "types")
_FACET_AGGREGATIONS = (
    ("categories", "categories", False),
    ("package_types", "package_type", True),
    ("transports", "transport", True),
)


@dataclass
class SearchQuery:
    """What a caller is searching for."""

    query: str = ""
    filters: dict[str, Any] = field(default_factory=dict)
    sort: str = "relevance"
    offset: int = 0
    limit: int = 20


@dataclass
class FacetValue:
    """One value of a facet and the number of matching servers."""

    value: str
    count: int

    def to_dict(self) -> dict[str, Any]:
        return {"value": self.value, "count": self.count}


@dataclass
class Facet:
    """Value counts for one field across the matching servers."""

    field: str
    values: list[FacetValue] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "values": [value.to_dict() for value in self.values]}


@dataclass
class SearchResult:
    """A page of matching servers with the total and the facets."""

    total: int = 0
    servers: list[ServerDetail] = field(default_factory=list)
    facets: list[Facet] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "servers": [server.to_dict() for server in self.servers],
            "facets": [facet.to_dict() for facet in self.facets],
        }


def _filter_clause(name: str, value: Any) -> dict[str, Any]:
    nested = _NESTED_FILTERS.get(name)
    if nested is None:
        return {"term": {name: value}}
    path, term_field = nested
    return {"nested": {"path": path, "query": {"term": {term_field: value}}}}


def _terms(field_name: str, size: int) -> dict[str, Any]:
    return {"terms": {"field": field_name, "size": size}}


def _aggregations() -> dict[str, Any]:
    return {
        "categories": _terms("categories", 20),
        "package_types": {
            "nested": {"path": "packages"},
            "aggs": {"types": _terms("packages.type", 10)},
        },
        "transports": {
            "nested": {"path": "remotes"},
            "aggs": {"types": _terms("remotes.transport", 10)},
        },
    }


def build_es_query(query: SearchQuery) -> dict[str, Any]:
    """Build the search request body for the given parameters."""
    must: list[dict[str, Any]] = []
    if query.query:
        must.append(
            {
                "multi_match": {
                    "query": query.query,
                    "fields": list(_TEXT_FIELDS),
                    "type": "best_fields",
                }
            }
        )
    filters = [_filter_clause(name, value) for name, value in query.filters.items()]

    if must or filters:
        es_query: dict[str, Any] = {"bool": {"must": must, "filter": filters}}
    else:
        es_query = {"match_all": {}}

    sort_field = _SORT_FIELDS.get(query.sort)
    sort = [{sort_field: {"order": "desc"}}] if sort_field else []

    return {"query": es_query, "aggs": _aggregations(), "sort": sort}


def _bucket_value(bucket: Mapping[str, Any]) -> FacetValue:
    key = bucket.get("key")
    count = bucket.get("doc_count")
    if not isinstance(key, str):
        raise ValueError("facet bucket key must be a string")
    if isinstance(count, bool) or not isinstance(count, (int, float)):
        raise ValueError("facet bucket doc_count must be a number")
    return FacetValue(value=key, count=int(count))


def parse_facets(aggs: Mapping[str, Any] | None) -> list[Facet]:
    """Turn the aggregations of a search response into facets."""
    facets: list[Facet] = []
    if not isinstance(aggs, Mapping):
        return facets
    for agg_name, field_name, nested in _FACET_AGGREGATIONS:
        agg = aggs.get(agg_name)
        if nested and isinstance(agg, Mapping):
            agg = agg.get("types")
        if not isinstance(agg, Mapping):
            continue
        buckets = agg.get("buckets")
        if not isinstance(buckets, list):
            continue
        values = [_bucket_value(bucket) for bucket in buckets if isinstance(bucket, Mapping)]
        if values:
            facets.append(Facet(field=field_name, values=values))
    return facets