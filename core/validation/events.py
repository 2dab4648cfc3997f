"""
Invalidation events — tell caches and views that a subject changed.

Listeners receive {'entity_type', 'subject_id'} after the change is
committed. A failing listener is logged and skipped; it never affects the
operation that emitted the event or the other listeners.
"""
from __future__ import annotations

import logging
from typing import Callable

logger = logging.getLogger(__name__)

Listener = Callable[[dict], None]

_LISTENERS: list[Listener] = []


def register_invalidation_listener(listener: Listener) -> Listener:
    """Subscribe to invalidation events. Returns the listener (usable as a decorator)."""
    if listener not in _LISTENERS:
        _LISTENERS.append(listener)
    return listener


def unregister_invalidation_listener(listener: Listener) -> None:
    if listener in _LISTENERS:
        _LISTENERS.remove(listener)


def emit_invalidation(entity_type: str, subject_id: int) -> None:
    event = {'entity_type': entity_type, 'subject_id': subject_id}
    for listener in list(_LISTENERS):
        try:
            listener(event)
        except Exception:
            logger.exception('invalidation listener %r failed for %s', listener, event)
