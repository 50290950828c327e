# mcpanalytics

A small search service for MCP server listings. Server documents are kept in
an Elasticsearch index named `mcp_servers`, reached over plain HTTP. The
package offers full-text search with filters, sorting and facets, and takes
change notifications (server added, updated or deleted) through an internal,
key-protected endpoint, applying them to the index from a background queue.

## Installing

```
pip install .
pip install ".[test]"   # with pytest and responses, to run the tests
```

## Modules

- `mcpanalytics.model`: the server document `ServerDetail` (with `Package`,
  `VersionDetail`, `Remote` and `Capability`) and `ServerStats`. Each has
  `from_dict` and `to_dict`; `from_dict` raises `ValueError` on fields of the
  wrong type, and timestamps are read and written as RFC 3339 strings.
  `determine_server_source(server_id, name)` derives the `source` field:
  `github` for names starting with `io.github.`, then `community` or
  `private` when either word appears in the name or id, otherwise `github`.
- `mcpanalytics.query`: `SearchQuery` (`query`, `filters`, `sort`, `offset`,
  `limit`), `build_es_query(query)` which turns it into an Elasticsearch
  request body, and `parse_facets(aggs)` which turns aggregation results into
  `Facet` / `FacetValue` objects. `SearchResult` holds `total`, `servers` and
  `facets`; every result class has `to_dict`.
- `mcpanalytics.service`: `SearchService(es_url, session=None)`. Creating it
  checks the connection and creates the index with its mapping if it is
  missing. Its methods are `initialize_index()` (returns `True` if it created
  the index), `index_server(server)`, `get_server(server_id)`,
  `delete_server(server_id)` (deleting a missing document is not an error),
  `search(query)` and `migrate_server_sources()`, which fills in `source` for
  up to 1000 documents that lack it and returns how many were updated.
  Failures raise `SearchError`; a missing document raises
  `ServerNotFoundError`, a subclass of both `SearchError` and `LookupError`.
- `mcpanalytics.events`: `EventType`, `Event` and `EventHandler(search_service,
  queue_size=1000)`. `submit(payload)` validates an event and queues it,
  raising `InvalidEventError` for a malformed event or one without a type or
  server id, and `QueueFullError` when the queue is full. `start()` runs a
  background worker; `stop()` lets it finish what is queued, then ends it.
  `process_event(event)` applies one event directly and returns whether it was
  applied. `event_data_to_server_detail(data)` and `apply_updates(server,
  updates)` turn event data into server records.
- `mcpanalytics.app`: `create_app(search_service, event_handler,
  internal_api_key, cors_origins, search_max_results)` builds the Flask
  application. A `*` among the CORS origins raises `ValueError`, because
  credentials are allowed for the listed origins.

## Running the service

```python
import requests

from mcpanalytics.app import create_app
from mcpanalytics.events import EventHandler
from mcpanalytics.service import SearchService

search_service = SearchService("http://localhost:9200", requests.Session())
search_service.migrate_server_sources()

event_handler = EventHandler(search_service, 1000)
event_handler.start()

app = create_app(
    search_service,
    event_handler,
    internal_api_key="placeholder",
    cors_origins=["http://localhost:3000"],
    search_max_results=100,
)
app.run(port=8081)
```

## HTTP endpoints

| Method | Path               | Purpose                                                   |
|--------|--------------------|-----------------------------------------------------------|
| GET    | `/health`          | Liveness, with version and current UTC time               |
| GET    | `/ready`           | Readiness                                                 |
| POST   | `/internal/events` | Change notifications; needs the `X-Internal-Key` header   |
| GET    | `/v1/search`       | Search servers                                            |

Every response carries an `X-Request-ID` header, taken from the request or
newly generated. CORS preflight requests are answered with `204`.

`/v1/search` takes these query parameters:

- `q`: free text, matched against name, description, author and categories
- `sort`: `relevance` (default), `popularity`, `trending`, `rating` or
  `recent`; any other value gives relevance order
- `offset` (default 0) and `limit` (default 20, capped at `search_max_results`)
- filters: `package_type`, `transport`, `category`, `source`

The response holds `total`, `servers` (each with its search `score`) and
`facets` for categories, package types and transports. A failed search
answers 500 with `{"error": "Search failed"}`.

An event posted to `/internal/events` looks like this:

```json
{
  "type": "server_added",
  "server_id": "io.github.example/weather",
  "timestamp": "2024-01-01T00:00:00Z",
  "data": {"name": "io.github.example/weather", "description": "Weather tools"}
}
```

A wrong or missing key answers 401. Accepted events answer
`{"status": "accepted"}`; a body that is not a valid event, or lacks a type or
server id, answers 400; a full queue answers 503. Events of an unknown type
are accepted and then skipped by the worker.

## Using the query builder on its own

```python
from mcpanalytics.query import SearchQuery, build_es_query

body = build_es_query(
    SearchQuery(query="weather", filters={"package_type": "npm"}, sort="popularity")
)
```

## What the package does not do

- There is no command to start the service and no configuration loading
  (from the environment or a file): the Elasticsearch address, port, internal
  key, CORS origins and result cap are passed in by the code that starts it,
  as in the example above.
- `/ready` always answers ready; it does not check the index.
- `ServerStats` is a data record only; nothing in the package collects or
  stores usage statistics.