"""HTTP interface: health checks, internal event intake and public search."""

from __future__ import annotations

import hmac
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable

from flask import Blueprint, Flask, Response, g, jsonify, make_response, request

from mcpanalytics.events import EventHandler, InvalidEventError, QueueFullError
from mcpanalytics.model import _format_time
from mcpanalytics.query import SearchQuery
from mcpanalytics.service import SearchError

logger = logging.getLogger(__name__)

VERSION = "dev"

_ALLOW_METHODS = "GET,POST,PUT,DELETE,OPTIONS"
_ALLOW_HEADERS = "Origin,Content-Type,Accept,Authorization,X-API-Key,X-Internal-Key"
_CORS_MAX_AGE = "300"
_REQUEST_ID_HEADER = "X-Request-ID"

_SEARCH_FILTERS = (
    ("package_type", "package_type"),
    ("transport", "transport"),
    ("category", "categories"),
    ("source", "source"),
)


def _normalize_origin(origin: str) -> str:
    return origin.strip().rstrip("/").lower()


def _error(message: str, status: int) -> tuple[Response, int]:
    return jsonify({"error": message}), status


def create_app(
    search_service: Any,
    event_handler: EventHandler,
    internal_api_key: str,
    cors_origins: Iterable[str],
    search_max_results: int,
) -> Flask:
    """Build the web application around a search service and an event handler."""
    allowed_origins = {_normalize_origin(origin) for origin in cors_origins if origin.strip()}
    if "*" in allowed_origins:
        raise ValueError("credentials cannot be allowed for a wildcard CORS origin")

    app = Flask("mcpanalytics")

    def allowed(origin: str | None) -> bool:
        return bool(origin) and _normalize_origin(origin) in allowed_origins

    @app.before_request
    def assign_request_id() -> None:
        g.request_id = request.headers.get(_REQUEST_ID_HEADER) or str(uuid.uuid4())

    @app.before_request
    def answer_preflight() -> Response | None:
        if request.method != "OPTIONS" or not request.headers.get(
            "Access-Control-Request-Method"
        ):
            return None
        response = make_response("", 204)
        response.headers["Access-Control-Allow-Methods"] = _ALLOW_METHODS
        response.headers["Access-Control-Allow-Headers"] = _ALLOW_HEADERS
        response.headers["Access-Control-Max-Age"] = _CORS_MAX_AGE
        return response

    @app.after_request
    def decorate(response: Response) -> Response:
        origin = request.headers.get("Origin")
        response.vary.add("Origin")
        if allowed(origin):
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Access-Control-Allow-Credentials"] = "true"
        request_id = getattr(g, "request_id", None)
        if request_id:
            response.headers[_REQUEST_ID_HEADER] = request_id
        return response

    @app.get("/health")
    def health() -> Response:
        return jsonify(
            {
                "status": "healthy",
                "version": VERSION,
                "time": _format_time(datetime.now(timezone.utc)),
            }
        )

    @app.get("/ready")
    def ready() -> Response:
        return jsonify({"status": "ready"})

    internal = Blueprint("internal", "mcpanalytics.internal", url_prefix="/internal")

    @internal.before_request
    def require_internal_key() -> tuple[Response, int] | None:
        key = request.headers.get("X-Internal-Key", "")
        if not key or not hmac.compare_digest(key.encode(), internal_api_key.encode()):
            return _error("Unauthorized", 401)
        return None

    @internal.post("/events")
    def receive_event() -> Any:
        payload = request.get_json(silent=True)
        if payload is None:
            return _error("Invalid event format", 400)
        try:
            event_handler.submit(payload)
        except InvalidEventError as exc:
            return _error(str(exc), 400)
        except QueueFullError:
            return _error("Event queue full", 503)
        return jsonify({"status": "accepted"})

    app.register_blueprint(internal)

    @app.get("/v1/search")
    def search() -> Any:
        args = request.args
        query = SearchQuery(
            query=args.get("q", ""),
            sort=args.get("sort") or "relevance",
            offset=args.get("offset", 0, type=int),
            limit=args.get("limit", 20, type=int),
        )
        for param, filter_name in _SEARCH_FILTERS:
            value = args.get(param)
            if value:
                query.filters[filter_name] = value
        query.limit = min(query.limit, search_max_results)

        try:
            result = search_service.search(query)
        except SearchError as exc:
            logger.warning("Search error: %s", exc)
            return _error("Search failed", 500)
        return jsonify(result.to_dict())

    return app