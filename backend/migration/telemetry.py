"""
In-memory counters for the history import.

Intent:
    Keep instrumentation simple while giving tests and operators a view of
    what an import did: users by outcome, events skipped by reason and rows
    created per entity. Values live for the process lifetime.
"""
from __future__ import annotations

from collections import defaultdict
from threading import Lock
from typing import Dict, Tuple

LabelKey = Tuple[Tuple[str, str], ...]
_counters: Dict[str, Dict[LabelKey, int]] = defaultdict(dict)
_lock = Lock()

USERS_TOTAL = "migration_users_total"
EVENTS_SKIPPED_TOTAL = "migration_events_skipped_total"
ROWS_CREATED_TOTAL = "migration_rows_created_total"


def _label_key(labels: dict[str, str] | None) -> LabelKey:
    if not labels:
        return tuple()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def increment_counter(name: str, *, amount: int = 1, **labels: str) -> None:
    """Increase a named counter by `amount` (defaults to 1)."""
    if amount == 0:
        return
    key = _label_key(labels)
    with _lock:
        current = _counters[name].get(key, 0)
        _counters[name][key] = current + amount


def record_user_outcome(outcome: str) -> None:
    increment_counter(USERS_TOTAL, outcome=outcome)


def record_event_skipped(reason: str) -> None:
    increment_counter(EVENTS_SKIPPED_TOTAL, reason=reason)


def record_row_created(entity: str) -> None:
    increment_counter(ROWS_CREATED_TOTAL, entity=entity)


def counter_value(name: str, **labels: str) -> int:
    with _lock:
        return _counters.get(name, {}).get(_label_key(labels), 0)


def reset_for_tests() -> None:
    """Clear all counters. Intended for pytest fixtures."""
    with _lock:
        _counters.clear()
