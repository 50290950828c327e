"""Change notifications about servers and how they are applied to the search index."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping

from mcpanalytics.model import ZERO_TIME, ServerDetail, _parse_time, determine_server_source
from mcpanalytics.service import SearchError

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000

_INVALID_FORMAT = "Invalid event format"
_MISSING_FIELDS = "Missing required fields"


class EventType(str, Enum):
    """Kinds of change the registry reports."""

    SERVER_ADDED = "server_added"
    SERVER_UPDATED = "server_updated"
    SERVER_DELETED = "server_deleted"


class InvalidEventError(ValueError):
    """An event payload is malformed or lacks required fields."""


class QueueFullError(RuntimeError):
    """The event queue has no room for another event."""


def _event_string(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise InvalidEventError(_INVALID_FORMAT)
    return value


@dataclass
class Event:
    """A notification that a server was added, updated or deleted."""

    type: str
    server_id: str
    timestamp: datetime = ZERO_TIME
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> Event:
        if not isinstance(data, Mapping):
            raise InvalidEventError(_INVALID_FORMAT)
        raw_time = data.get("timestamp")
        if raw_time is None:
            timestamp = ZERO_TIME
        elif isinstance(raw_time, str):
            try:
                timestamp = _parse_time(raw_time)
            except ValueError as exc:
                raise InvalidEventError(_INVALID_FORMAT) from exc
        else:
            raise InvalidEventError(_INVALID_FORMAT)
        payload = data.get("data")
        if payload is None:
            payload = {}
        elif not isinstance(payload, Mapping):
            raise InvalidEventError(_INVALID_FORMAT)
        return cls(
            type=_event_string(data, "type"),
            server_id=_event_string(data, "server_id"),
            timestamp=timestamp,
            data=dict(payload),
        )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def event_data_to_server_detail(data: Mapping[str, Any] | None) -> ServerDetail:
    """Build a server record from the data carried by an event."""
    data = data or {}
    server = ServerDetail.from_dict(data)

    server_id = data.get("server_id")
    if isinstance(server_id, str) and not server.id:
        server.id = server_id

    total_installs = data.get("total_installs")
    if _is_number(total_installs):
        server.install_count = int(total_installs)

    rating = data.get("rating")
    if _is_number(rating):
        server.rating_average = float(rating)

    if not server.source:
        server.source = determine_server_source(server.id, server.name)

    now = datetime.now(timezone.utc)
    server.indexed_at = now
    server.last_updated = now
    return server


def apply_updates(server: ServerDetail, updates: Mapping[str, Any] | None) -> None:
    """Replace the contents of ``server`` with ``updates``, keeping its identity."""
    updated = event_data_to_server_detail(updates)
    updated.id = server.id
    updated.indexed_at = server.indexed_at
    updated.last_updated = datetime.now(timezone.utc)
    if not updated.source:
        updated.source = server.source
    for item in fields(ServerDetail):
        setattr(server, item.name, getattr(updated, item.name))


class EventHandler:
    """Queues incoming events and applies them to the search index in the background."""

    def __init__(self, search_service: Any, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._search = search_service
        self._queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self._worker: threading.Thread | None = None
        self._handlers: dict[EventType, Callable[[Event], bool]] = {
            EventType.SERVER_ADDED: self._handle_server_added,
            EventType.SERVER_UPDATED: self._handle_server_updated,
            EventType.SERVER_DELETED: self._handle_server_deleted,
        }

    def start(self) -> None:
        """Start the background worker if it is not running."""
        if self._worker is not None and self._worker.is_alive():
            return
        self._worker = threading.Thread(
            target=self._run, name="event-processor", daemon=True
        )
        self._worker.start()

    def stop(self) -> None:
        """Process what is queued, then stop the background worker."""
        worker = self._worker
        if worker is None:
            return
        self._queue.put(None)
        worker.join()
        self._worker = None

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            if event is None:
                return
            try:
                self.process_event(event)
            except Exception:
                logger.exception("Unexpected failure processing event for %s", event.server_id)

    def submit(self, payload: Any) -> Event:
        """Validate a payload and queue it for processing."""
        event = Event.from_dict(payload)
        if not event.type or not event.server_id:
            raise InvalidEventError(_MISSING_FIELDS)
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            logger.warning(
                "Event queue full, dropping event: %s for server %s",
                event.type,
                event.server_id,
            )
            raise QueueFullError("Event queue full") from None
        logger.info("Event queued: %s for server %s", event.type, event.server_id)
        return event

    def process_event(self, event: Event) -> bool:
        """Apply one event to the index; True if it was applied."""
        try:
            kind = EventType(event.type)
        except ValueError:
            logger.warning("Unknown event type: %s", event.type)
            return False
        return self._handlers[kind](event)

    def _handle_server_added(self, event: Event) -> bool:
        logger.info("Processing server added: %s", event.server_id)
        try:
            server = event_data_to_server_detail(event.data)
        except ValueError as exc:
            logger.warning("Failed to parse server data: %s", exc)
            return False
        try:
            self._search.index_server(server)
        except SearchError as exc:
            logger.warning("Failed to index server %s: %s", event.server_id, exc)
            return False
        logger.info("Successfully indexed server: %s", event.server_id)
        return True

    def _handle_server_updated(self, event: Event) -> bool:
        logger.info("Processing server updated: %s", event.server_id)
        try:
            server = self._search.get_server(event.server_id)
        except SearchError as exc:
            logger.warning("Failed to get existing server %s: %s", event.server_id, exc)
            return False
        try:
            apply_updates(server, event.data)
        except ValueError as exc:
            logger.warning("Failed to apply updates: %s", exc)
            return False
        try:
            self._search.index_server(server)
        except SearchError as exc:
            logger.warning("Failed to update server %s: %s", event.server_id, exc)
            return False
        logger.info("Successfully updated server: %s", event.server_id)
        return True

    def _handle_server_deleted(self, event: Event) -> bool:
        logger.info("Processing server deleted: %s", event.server_id)
        try:
            self._search.delete_server(event.server_id)
        except SearchError as exc:
            logger.warning("Failed to delete server %s: %s", event.server_id, exc)
            return False
        logger.info("Successfully deleted server: %s", event.server_id)
        return True