"""Ingestion layer.

This package contains adapters that turn backend records (refetch) and
push payloads into validated entities and normalized ingestion events.
"""

__all__: list[str] = []
