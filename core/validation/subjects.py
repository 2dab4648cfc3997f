"""
Subject store — authoritative record of approval status per reviewable item.

Subjects are keyed by (entity_type, entity_id). They are registered when the
referenced risk-process link, control or action plan enters review scope and
are never deleted; status only moves through the notification and decision
modules.

Bulk selections ("these ids" or "everything matching this filter") are
resolved here at execution time, never from a client-side snapshot.
"""
from __future__ import annotations

import logging
from typing import Any, Callable

from models import db, ValidationSubject
from core.validation.constants import VALID_ENTITY_TYPES, VALID_STATUSES
from core.validation.errors import InvalidEntityType, NotFound
from core.validation.events import emit_invalidation

logger = logging.getLogger(__name__)

# Optional external query layer: filter descriptor -> matching subject ids.
FilterResolver = Callable[[dict], list[int]]

_filter_resolver: FilterResolver | None = None


def set_filter_resolver(resolver: FilterResolver | None) -> None:
    """Install (or clear with None) the external filter resolver."""
    global _filter_resolver
    _filter_resolver = resolver


def register_subject(entity_type: str, entity_id: str, responsible_user_id: str,
                     responsible_email: str | None = None,
                     process_context: dict | None = None) -> ValidationSubject:
    """Get or create the subject for (entity_type, entity_id).

    An existing subject keeps its status and history; only the responsible
    party and routing context are refreshed.
    """
    if entity_type not in VALID_ENTITY_TYPES:
        raise InvalidEntityType(f'Unknown entity type: {entity_type}')

    subject = find_subject(entity_type, entity_id)
    if subject is not None:
        subject.responsible_user_id = str(responsible_user_id)
        if responsible_email:
            subject.responsible_email = responsible_email.strip()
        if process_context is not None:
            subject.process_context = dict(process_context)
        db.session.commit()
        return subject

    subject = ValidationSubject(
        entity_type=entity_type,
        entity_id=str(entity_id),
        status='pending_validation',
        responsible_user_id=str(responsible_user_id),
        responsible_email=responsible_email.strip() if responsible_email else None,
        process_context=dict(process_context or {}),
    )
    db.session.add(subject)
    db.session.commit()
    logger.info('registered subject %s for %s:%s', subject.id, entity_type, entity_id)
    emit_invalidation(entity_type, subject.id)
    return subject


def get_subject(subject_id: int, refresh: bool = False) -> ValidationSubject:
    """Load a subject or raise NotFound.

    refresh=True re-reads the row even when the session already holds it.
    """
    subject = db.session.get(ValidationSubject, subject_id, populate_existing=refresh)
    if subject is None:
        raise NotFound(f'Subject {subject_id} not found', subject_id=subject_id)
    return subject


def find_subject(entity_type: str, entity_id: str) -> ValidationSubject | None:
    return ValidationSubject.query.filter_by(
        entity_type=entity_type, entity_id=str(entity_id),
    ).first()


def list_subjects(entity_type: str, status: str | list[str] | None = None,
                  filters: dict | None = None, limit: int | None = 50) -> list[ValidationSubject]:
    """List subjects of one entity type, newest first.

    Args:
        entity_type: Required scope.
        status: Optional status or list of statuses.
        filters: Optional extra filter keys (see resolve_filter).
        limit: Max rows (None for all).
    """
    descriptor = dict(filters or {})
    descriptor['entity_type'] = entity_type
    if status is not None:
        descriptor['status'] = status

    q = _filter_query(descriptor).order_by(ValidationSubject.created_at.desc(),
                                           ValidationSubject.id.desc())
    context_match = descriptor.get('process_context')
    if not context_match:
        if limit is not None:
            q = q.limit(limit)
        return q.all()

    # process_context is JSON; match in Python for portability across backends.
    matched = [s for s in q.all() if _context_matches(s.process_context, context_match)]
    return matched[:limit] if limit is not None else matched


def resolve_filter(descriptor: dict) -> list[int]:
    """Return ids of all subjects currently matching descriptor.

    Keys: entity_type (required), status (str or list), responsible_user_id,
    entity_ids (list), process_context (dict, subset match).
    """
    if _filter_resolver is not None:
        return list(_filter_resolver(dict(descriptor)))

    q = _filter_query(descriptor).order_by(ValidationSubject.id.asc())
    context_match = descriptor.get('process_context')
    if not context_match:
        return [row.id for row in q.with_entities(ValidationSubject.id).all()]
    return [s.id for s in q.all() if _context_matches(s.process_context, context_match)]


def resolve_selection(selection: dict[str, Any]) -> list[int]:
    """Turn a selection into the de-duplicated list of subject ids to act on.

    selection is either {'ids': [...]} or {'filter': {...}}.
    """
    if not isinstance(selection, dict):
        raise ValueError('selection must be a dict with "ids" or "filter"')

    if 'filter' in selection:
        ids = resolve_filter(selection['filter'] or {})
    elif 'ids' in selection:
        ids = selection['ids'] or []
    else:
        raise ValueError('selection must contain "ids" or "filter"')

    seen = set()
    ordered = []
    for subject_id in ids:
        subject_id = int(subject_id)
        if subject_id not in seen:
            seen.add(subject_id)
            ordered.append(subject_id)
    return ordered


# ---- internal helpers ----

def _filter_query(descriptor: dict):
    entity_type = descriptor.get('entity_type')
    if entity_type not in VALID_ENTITY_TYPES:
        raise InvalidEntityType(f'Unknown entity type: {entity_type}')

    q = ValidationSubject.query.filter(ValidationSubject.entity_type == entity_type)

    status = descriptor.get('status')
    if status is not None:
        statuses = [status] if isinstance(status, str) else list(status)
        unknown = [s for s in statuses if s not in VALID_STATUSES]
        if unknown:
            raise ValueError(f'Unknown status filter: {", ".join(unknown)}')
        q = q.filter(ValidationSubject.status.in_(statuses))

    responsible = descriptor.get('responsible_user_id')
    if responsible is not None:
        q = q.filter(ValidationSubject.responsible_user_id == str(responsible))

    entity_ids = descriptor.get('entity_ids')
    if entity_ids:
        q = q.filter(ValidationSubject.entity_id.in_([str(e) for e in entity_ids]))

    return q


def _context_matches(context: dict | None, expected: dict) -> bool:
    context = context or {}
    return all(context.get(key) == value for key, value in expected.items())
