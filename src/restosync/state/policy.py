"""Deterministic merge policy.

This module intentionally contains *no* payload parsing. The ingestion
boundary is responsible for producing validated entities with versions.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from restosync.state.events import IngestionSource

# Local writes that bypass the version rule.
_ALWAYS_ACCEPTED: frozenset[IngestionSource] = frozenset({IngestionSource.OPTIMISTIC, IngestionSource.TRANSITION})


def should_accept_update(
    *,
    cached_version: int | None,
    cached_terminal: bool,
    incoming_version: int,
    incoming_source: IngestionSource,
) -> bool:
    """Decide whether an incoming entity should replace the cached one.

    Policy:
    - Nothing cached: accept.
    - Local override application or validated explicit transition: accept.
    - Derived (elapsed-time) commit: accept at an equal-or-newer version
      unless the cached status is terminal.
    - Server data: accept only a strictly newer version. Terminal states
      are therefore sticky against equal-or-lower versions.
    """
    if cached_version is None:
        return True
    if incoming_source in _ALWAYS_ACCEPTED:
        return True
    if incoming_source == IngestionSource.DERIVED:
        return not cached_terminal and incoming_version >= cached_version
    return incoming_version > cached_version


def is_expired(now: datetime, last_seen: datetime, retention: timedelta) -> bool:
    return now - last_seen > retention
