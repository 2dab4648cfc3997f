"""
Count aggregator — per-status counters for the validation dashboard cards.

Counters are stored as one snapshot row per entity type. get_counts serves
the snapshot while it is younger than max_age_seconds and no invalidation
event has touched that entity type since; otherwise it recomputes from the
subject table. Writers are never blocked: a count may lag a concurrent
decision until the next recompute.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import db, ValidationCountSnapshot, ValidationSubject
from core.validation.constants import (
    COUNTS_MAX_AGE_SECONDS, NOTIFIED, OBSERVED, PENDING_VALIDATION, REJECTED, VALIDATED,
    VALID_ENTITY_TYPES,
)
from core.validation.errors import AggregationStoreUnavailable, InvalidEntityType
from core.validation.events import register_invalidation_listener

logger = logging.getLogger(__name__)

_dirty_lock = threading.Lock()
_dirty: set[str] = set()

# Snapshot column -> subject status it counts.
_STATUS_COLUMNS = {
    'notified': NOTIFIED,
    'not_notified': PENDING_VALIDATION,
    'validated': VALIDATED,
    'observed': OBSERVED,
    'rejected': REJECTED,
}


@register_invalidation_listener
def _mark_dirty(event: dict) -> None:
    with _dirty_lock:
        _dirty.add(event['entity_type'])


def is_dirty(entity_type: str) -> bool:
    with _dirty_lock:
        return entity_type in _dirty


def get_counts(entity_type: str, max_age_seconds: int = COUNTS_MAX_AGE_SECONDS) -> dict:
    """Return {notified, not_notified, validated, observed, rejected, total, computed_at}.

    Raises:
        InvalidEntityType: unknown entity type.
        AggregationStoreUnavailable: the database could not be read.
    """
    _check_entity_type(entity_type)
    try:
        snapshot = ValidationCountSnapshot.query.filter_by(entity_type=entity_type).first()
        if snapshot is not None and not is_dirty(entity_type):
            age = (datetime.utcnow() - snapshot.computed_at).total_seconds()
            if age <= max_age_seconds:
                return snapshot.to_dict()
        return _recompute(entity_type)
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error('count aggregation for %s failed: %s', entity_type, e)
        raise AggregationStoreUnavailable(f'Counts for {entity_type} are unavailable: {e}')


def recompute(entity_type: str) -> dict:
    """Force a fresh pass over the subject table for one entity type."""
    _check_entity_type(entity_type)
    try:
        return _recompute(entity_type)
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error('count recompute for %s failed: %s', entity_type, e)
        raise AggregationStoreUnavailable(f'Counts for {entity_type} are unavailable: {e}')


def get_all_counts(max_age_seconds: int = COUNTS_MAX_AGE_SECONDS) -> dict:
    """Summary for every entity type, keyed by entity type."""
    return {
        entity_type: get_counts(entity_type, max_age_seconds=max_age_seconds)
        for entity_type in VALID_ENTITY_TYPES
    }


def recompute_all() -> int:
    """Recompute every entity type (worker entry point). Returns types refreshed."""
    for entity_type in VALID_ENTITY_TYPES:
        recompute(entity_type)
    return len(VALID_ENTITY_TYPES)


# ---- internal helpers ----

def _check_entity_type(entity_type):
    if entity_type not in VALID_ENTITY_TYPES:
        raise InvalidEntityType(f'Unknown entity type: {entity_type}')


def _recompute(entity_type):
    # Clear first: a write landing during the pass marks the type dirty again.
    with _dirty_lock:
        _dirty.discard(entity_type)

    rows = db.session.query(
        ValidationSubject.status, func.count(ValidationSubject.id)
    ).filter(
        ValidationSubject.entity_type == entity_type,
    ).group_by(ValidationSubject.status).all()
    by_status = {status: count for status, count in rows}

    values = {column: by_status.get(status, 0) for column, status in _STATUS_COLUMNS.items()}
    values['total'] = sum(by_status.values())

    try:
        snapshot = _upsert(entity_type, values)
    except IntegrityError:
        # Another process inserted the row first; update theirs.
        db.session.rollback()
        snapshot = _upsert(entity_type, values)
    return snapshot.to_dict()


def _upsert(entity_type, values):
    snapshot = ValidationCountSnapshot.query.filter_by(entity_type=entity_type).first()
    if snapshot is None:
        snapshot = ValidationCountSnapshot(entity_type=entity_type)
        db.session.add(snapshot)

    for column, value in values.items():
        setattr(snapshot, column, value)
    snapshot.computed_at = datetime.utcnow()

    db.session.commit()
    return snapshot
