import json
from urllib.parse import parse_qs, urlparse

import pytest
import responses

from mcpanalytics.model import ServerDetail
from mcpanalytics.query import SearchQuery, build_es_query
from mcpanalytics.service import (
    SERVER_INDEX_NAME,
    SERVER_MAPPING,
    SearchError,
    SearchService,
    ServerNotFoundError,
)

BASE = "http://localhost:9200"
INDEX_URL = f"{BASE}/{SERVER_INDEX_NAME}"
DOC_URL = f"{INDEX_URL}/_doc"
SEARCH_URL = f"{INDEX_URL}/_search"


@pytest.fixture
def rsps():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as mock:
        yield mock


def _connect(rsps, exists=True):
    rsps.add(responses.GET, f"{BASE}/", json={"version": {"number": "8"}})
    rsps.add(responses.HEAD, INDEX_URL, status=200 if exists else 404)


@pytest.fixture
def service(rsps):
    _connect(rsps)
    svc = SearchService(BASE + "/")
    rsps.calls.reset()
    return svc


def _query_params(call):
    return parse_qs(urlparse(call.request.url).query)


def test_creates_index_with_mapping_when_missing(rsps):
    _connect(rsps, exists=False)
    rsps.add(responses.PUT, INDEX_URL, json={"acknowledged": True})
    svc = SearchService(BASE)
    put_calls = [c for c in rsps.calls if c.request.method == "PUT"]
    assert len(put_calls) == 1
    assert json.loads(put_calls[0].request.body) == SERVER_MAPPING
    assert svc.initialize_index() is True


def test_existing_index_is_not_recreated(rsps):
    _connect(rsps, exists=True)
    svc = SearchService(BASE)
    assert [c.request.method for c in rsps.calls] == ["GET", "HEAD"]
    assert svc.initialize_index() is False
    assert [c.request.method for c in rsps.calls] == ["GET", "HEAD", "HEAD"]


def test_initialize_index_reports_whether_created(service, rsps):
    assert service.initialize_index() is False


def test_index_creation_failure_raises(rsps):
    _connect(rsps, exists=False)
    rsps.add(responses.PUT, INDEX_URL, status=400, body="bad mapping")
    with pytest.raises(SearchError, match="failed to initialize index"):
        SearchService(BASE)


def test_info_error_raises(rsps):
    rsps.add(responses.GET, f"{BASE}/", status=503, body="unavailable")
    with pytest.raises(SearchError, match="Elasticsearch error"):
        SearchService(BASE)


def test_unreachable_server_raises(rsps):
    with pytest.raises(SearchError, match="failed to connect"):
        SearchService(BASE)


def test_index_server_puts_document(service, rsps):
    rsps.add(responses.PUT, f"{DOC_URL}/srv-1", json={"result": "created"})
    server = ServerDetail(id="srv-1", name="io.github.demo", source="github")
    service.index_server(server)
    call = rsps.calls[0]
    assert json.loads(call.request.body) == server.to_dict()
    assert _query_params(call)["refresh"] == ["true"]


def test_index_server_error_raises(service, rsps):
    rsps.add(responses.PUT, f"{DOC_URL}/srv-1", status=500, body="boom")
    with pytest.raises(SearchError, match="failed to index document"):
        service.index_server(ServerDetail(id="srv-1"))


def test_get_server_returns_source(service, rsps):
    stored = ServerDetail(id="srv-2", name="demo", description="A demo", install_count=7)
    rsps.add(
        responses.GET,
        f"{DOC_URL}/srv-2",
        json={"_id": "srv-2", "found": True, "_source": stored.to_dict()},
    )
    assert service.get_server("srv-2") == stored


def test_get_missing_server_raises_not_found(service, rsps):
    rsps.add(responses.GET, f"{DOC_URL}/nope", status=404, json={"found": False})
    with pytest.raises(ServerNotFoundError, match="server not found: nope"):
        service.get_server("nope")


def test_get_server_other_error_raises(service, rsps):
    rsps.add(responses.GET, f"{DOC_URL}/srv-3", status=500, body="boom")
    with pytest.raises(SearchError, match="failed to get document"):
        service.get_server("srv-3")


def test_delete_server_sends_refresh(service, rsps):
    rsps.add(responses.DELETE, f"{DOC_URL}/srv-4", json={"result": "deleted"})
    result = service.delete_server("srv-4")
    assert result is None
    assert rsps.calls[0].request.method == "DELETE"
    assert _query_params(rsps.calls[0])["refresh"] == ["true"]


def test_delete_missing_server_is_ignored(service, rsps):
    rsps.add(responses.DELETE, f"{DOC_URL}/gone", status=404, json={"result": "not_found"})
    result = service.delete_server("gone")
    assert result is None
    assert len(rsps.calls) == 1
    assert rsps.calls[0].response.status_code == 404


def test_delete_server_error_raises(service, rsps):
    rsps.add(responses.DELETE, f"{DOC_URL}/srv-5", status=500, body="boom")
    with pytest.raises(SearchError, match="failed to delete document"):
        service.delete_server("srv-5")


def test_search_sends_query_and_parses_result(service, rsps):
    first = ServerDetail(id="a", name="alpha", categories=["ai"])
    second = ServerDetail(id="b", name="beta")
    rsps.add(
        responses.POST,
        SEARCH_URL,
        json={
            "hits": {
                "total": {"value": 42},
                "hits": [
                    {"_source": first.to_dict(), "_score": 1.5},
                    {"_source": second.to_dict(), "_score": None},
                ],
            },
            "aggregations": {
                "categories": {"buckets": [{"key": "ai", "doc_count": 3}]},
            },
        },
    )
    query = SearchQuery(query="alpha", filters={"source": "github"}, offset=5, limit=10)
    result = service.search(query)

    call = rsps.calls[0]
    assert json.loads(call.request.body) == build_es_query(query)
    params = _query_params(call)
    assert params["from"] == ["5"]
    assert params["size"] == ["10"]
    assert params["track_total_hits"] == ["true"]

    assert result.total == 42
    assert [s.id for s in result.servers] == ["a", "b"]
    assert result.servers[0].score == 1.5
    assert result.servers[1].score == 0.0
    assert [f.field for f in result.facets] == ["categories"]
    assert result.facets[0].values[0].value == "ai"
    assert result.facets[0].values[0].count == 3


def test_search_error_raises(service, rsps):
    rsps.add(responses.POST, SEARCH_URL, status=400, body="bad query")
    with pytest.raises(SearchError, match="search error"):
        service.search(SearchQuery())


def test_search_undecodable_response_raises(service, rsps):
    rsps.add(responses.POST, SEARCH_URL, body="not json")
    with pytest.raises(SearchError, match="failed to decode response"):
        service.search(SearchQuery())


def _migration_hits(*servers):
    return {"hits": {"hits": [{"_id": s.id, "_source": s.to_dict()} for s in servers]}}


def test_migrate_server_sources_fills_in_source(service, rsps):
    servers = [
        ServerDetail(id="one", name="io.github.someone/tool"),
        ServerDetail(id="community-two", name="two"),
        ServerDetail(id="three", name="private-three"),
    ]
    rsps.add(responses.POST, SEARCH_URL, json=_migration_hits(*servers))
    for server in servers:
        rsps.add(responses.PUT, f"{DOC_URL}/{server.id}", json={"result": "updated"})

    assert service.migrate_server_sources() == 3

    search_body = json.loads(rsps.calls[0].request.body)
    assert search_body["size"] == 1000
    sources = {
        json.loads(c.request.body)["id"]: json.loads(c.request.body)["source"]
        for c in rsps.calls
        if c.request.method == "PUT"
    }
    assert sources == {"one": "github", "community-two": "community", "three": "private"}


def test_migrate_continues_after_failed_update(service, rsps):
    servers = [ServerDetail(id="x1", name="a"), ServerDetail(id="x2", name="b")]
    rsps.add(responses.POST, SEARCH_URL, json=_migration_hits(*servers))
    rsps.add(responses.PUT, f"{DOC_URL}/x1", status=500, body="boom")
    rsps.add(responses.PUT, f"{DOC_URL}/x2", json={"result": "updated"})

    assert service.migrate_server_sources() == 1
    assert [c.request.method for c in rsps.calls] == ["POST", "PUT", "PUT"]


def test_migrate_search_error_raises(service, rsps):
    rsps.add(responses.POST, SEARCH_URL, status=500, body="boom")
    with pytest.raises(SearchError, match="search error"):
        service.migrate_server_sources()