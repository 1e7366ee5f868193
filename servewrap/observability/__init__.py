"""Observability helpers.

Request IDs + structlog contextvars, line-formatted log sinks, and in-memory
label counters with a snapshot for the debug endpoint.
"""

from __future__ import annotations
