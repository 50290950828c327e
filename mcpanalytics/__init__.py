"""Search and indexing service for MCP server listings kept in Elasticsearch."""

__version__ = "0.1.0"

__all__ = ["app", "events", "model", "query", "service"]