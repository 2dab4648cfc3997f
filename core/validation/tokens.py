"""
Token registry — single-use, time-limited links for external responsibles.

At most one token per subject is active (unconsumed, not superseded,
unexpired). Issuing a token invalidates the previous active one at issuance
time, so a stale e-mail link fails as soon as it is used instead of racing
the newer one.

Batch links cover several subjects of one entity type for one responsible
and are used once, for the whole submission.

Functions here add to the session but never commit; the caller commits the
token change together with the subject mutation.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from models import db, BatchValidationToken, NotificationToken, ValidationSubject
from core.validation.constants import TOKEN_TTL_DAYS, TOKEN_RETENTION_DAYS
from core.validation.errors import (
    InvalidEntityType, NoRecipientEmail, NotFound, TokenAlreadyConsumed, TokenExpired,
    TokenSuperseded,
)
from core.validation.state_machine import TERMINAL_STATUSES

logger = logging.getLogger(__name__)


def issue_token(subject_id: int, recipient_email: str, ttl_days: int = TOKEN_TTL_DAYS,
                resend_count: int = 0, now: datetime | None = None) -> NotificationToken:
    """Invalidate any active token for the subject and add a fresh one."""
    now = now or datetime.utcnow()
    invalidate_active_tokens(subject_id, now=now)

    token = NotificationToken(
        subject_id=subject_id,
        token=NotificationToken.generate_token(),
        recipient_email=recipient_email,
        issued_at=now,
        expires_at=now + timedelta(days=ttl_days),
        resend_count=resend_count,
    )
    db.session.add(token)
    return token


def get_active_token(subject_id: int, now: datetime | None = None) -> NotificationToken | None:
    now = now or datetime.utcnow()
    return NotificationToken.query.filter(
        NotificationToken.subject_id == subject_id,
        NotificationToken.consumed_at.is_(None),
        NotificationToken.invalidated_at.is_(None),
        NotificationToken.expires_at >= now,
    ).order_by(NotificationToken.issued_at.desc(), NotificationToken.id.desc()).first()


def get_latest_token(subject_id: int) -> NotificationToken | None:
    """Most recently issued token, whatever its state."""
    return NotificationToken.query.filter_by(subject_id=subject_id).order_by(
        NotificationToken.issued_at.desc(), NotificationToken.id.desc(),
    ).first()


def invalidate_active_tokens(subject_id: int, now: datetime | None = None) -> int:
    """Mark every unconsumed, un-superseded token of the subject as invalidated."""
    now = now or datetime.utcnow()
    open_tokens = NotificationToken.query.filter(
        NotificationToken.subject_id == subject_id,
        NotificationToken.consumed_at.is_(None),
        NotificationToken.invalidated_at.is_(None),
    ).all()
    for token in open_tokens:
        token.invalidated_at = now
    return len(open_tokens)


def consume_active_token(subject_id: int, now: datetime | None = None) -> NotificationToken | None:
    """Consume the subject's active token, if it has one."""
    now = now or datetime.utcnow()
    token = get_active_token(subject_id, now=now)
    if token is not None:
        token.consumed_at = now
    return token


def verify_token(token_value: str, now: datetime | None = None) -> NotificationToken:
    """Return the token if it can still be honoured.

    Raises:
        NotFound: unknown token.
        TokenAlreadyConsumed: a decision was already recorded with it.
        TokenSuperseded: a newer token was issued for the same subject.
        TokenExpired: past expires_at.
    """
    now = now or datetime.utcnow()
    value = (token_value or '').strip().split('?')[0]
    token = NotificationToken.query.filter_by(token=value).populate_existing().first() if value else None
    if token is None:
        raise NotFound('Validation token not found')

    if token.consumed_at is not None:
        raise TokenAlreadyConsumed('This validation link was already used',
                                   subject_id=token.subject_id)
    if token.invalidated_at is not None:
        raise TokenSuperseded('This validation link was replaced by a newer one',
                              subject_id=token.subject_id)
    if now > token.expires_at:
        raise TokenExpired('This validation link has expired', subject_id=token.subject_id)
    return token


def get_token_details(token_value: str) -> dict:
    """What the public validation page shows before the responsible decides."""
    token = verify_token(token_value)
    subject = db.session.get(ValidationSubject, token.subject_id)
    return {
        'entity_type': subject.entity_type,
        'entity_id': subject.entity_id,
        'subject': subject.to_dict(),
        'responsible_email': token.recipient_email,
        'expires_at': token.expires_at.isoformat(),
        'resend_count': token.resend_count,
    }


def sweep_expired_tokens(retention_days: int = TOKEN_RETENTION_DAYS,
                         batch_size: int = 500) -> int:
    """Delete single and batch tokens that expired more than retention_days ago.

    Returns:
        int: Count of tokens deleted.
    """
    cutoff = datetime.utcnow() - timedelta(days=retention_days)
    deleted = _sweep(NotificationToken, cutoff, batch_size)
    deleted += _sweep(BatchValidationToken, cutoff, batch_size)

    if deleted:
        logger.info('swept %d expired validation tokens', deleted)
    return deleted


# ---------------------------------------------------------------------------
# Batch tokens
# ---------------------------------------------------------------------------

def issue_batch_token(subject_ids, recipient_email: str, ttl_days: int = TOKEN_TTL_DAYS,
                      now: datetime | None = None) -> BatchValidationToken:
    """Add one link covering several subjects of the same entity type.

    Batch links do not touch the subjects' own tokens or statuses; a
    decision made through either path consumes the subject's active token.

    Raises:
        NoRecipientEmail, NotFound, InvalidEntityType (mixed entity types).
    """
    recipient = (recipient_email or '').strip()
    if not recipient:
        raise NoRecipientEmail('A recipient e-mail is required for a batch link')

    ids = []
    for subject_id in subject_ids or []:
        subject_id = int(subject_id)
        if subject_id not in ids:
            ids.append(subject_id)
    if not ids:
        raise NotFound('A batch link needs at least one subject')

    subjects = ValidationSubject.query.filter(ValidationSubject.id.in_(ids)).all()
    missing = set(ids) - {s.id for s in subjects}
    if missing:
        raise NotFound(f'Subjects not found: {sorted(missing)}', subject_id=min(missing))
    entity_types = {s.entity_type for s in subjects}
    if len(entity_types) > 1:
        raise InvalidEntityType(f'A batch link covers one entity type, got {sorted(entity_types)}')

    now = now or datetime.utcnow()
    token = BatchValidationToken(
        token=BatchValidationToken.generate_token(),
        entity_type=entity_types.pop(),
        subject_ids=ids,
        recipient_email=recipient,
        issued_at=now,
        expires_at=now + timedelta(days=ttl_days),
    )
    db.session.add(token)
    return token


def verify_batch_token(token_value: str, now: datetime | None = None) -> BatchValidationToken:
    """Return the batch token if it can still be honoured.

    Raises:
        NotFound, TokenAlreadyConsumed, TokenExpired.
    """
    now = now or datetime.utcnow()
    value = (token_value or '').strip().split('?')[0]
    token = (BatchValidationToken.query.filter_by(token=value).populate_existing().first()
             if value else None)
    if token is None:
        raise NotFound('Batch validation token not found')
    if token.consumed_at is not None:
        raise TokenAlreadyConsumed('This batch validation link was already used')
    if now > token.expires_at:
        raise TokenExpired('This batch validation link has expired')
    return token


def get_batch_token_details(token_value: str) -> dict:
    """What the public batch page lists: every subject and whether it can still be decided."""
    token = verify_batch_token(token_value)
    subjects = {
        s.id: s for s in ValidationSubject.query.filter(
            ValidationSubject.id.in_(token.subject_ids)
        ).all()
    }
    items = []
    for subject_id in token.subject_ids:
        subject = subjects.get(subject_id)
        if subject is None:
            continue
        item = subject.to_dict()
        item['decidable'] = subject.status not in TERMINAL_STATUSES
        items.append(item)

    return {
        'entity_type': token.entity_type,
        'responsible_email': token.recipient_email,
        'expires_at': token.expires_at.isoformat(),
        'subjects': items,
    }


def claim_batch_token(token: BatchValidationToken, now: datetime | None = None) -> None:
    """Mark the batch token used, unless someone else already did.

    Conditional update, so two submissions of one link cannot both proceed.
    Caller commits.

    Raises:
        TokenAlreadyConsumed
    """
    now = now or datetime.utcnow()
    claimed = BatchValidationToken.query.filter(
        BatchValidationToken.id == token.id,
        BatchValidationToken.consumed_at.is_(None),
    ).update({'consumed_at': now}, synchronize_session=False)
    if not claimed:
        raise TokenAlreadyConsumed('This batch validation link was already used')
    token.consumed_at = now


def release_batch_token(token: BatchValidationToken) -> None:
    """Give the link back after a submission in which nothing was recorded. Caller commits."""
    BatchValidationToken.query.filter_by(id=token.id).update(
        {'consumed_at': None}, synchronize_session=False)
    token.consumed_at = None


def _sweep(model, cutoff, batch_size):
    deleted = 0
    while True:
        batch_ids = [
            row.id for row in db.session.query(model.id)
            .filter(model.expires_at < cutoff)
            .limit(batch_size)
            .all()
        ]
        if not batch_ids:
            break
        model.query.filter(model.id.in_(batch_ids)).delete(synchronize_session=False)
        db.session.commit()
        deleted += len(batch_ids)
    return deleted
