"""
Decision history — append-only trail of every status change on a subject.

Every notify, resend, decision and re-open writes exactly one row here in
the same transaction as the subject update, so the newest row's new_status
always equals the subject's current status. Rows are never updated or
deleted.
"""
from datetime import datetime

from models import db, ValidationDecision, ValidationNote
from core.validation.subjects import get_subject


def log_decision(subject, action, previous_status, actor, comments=None,
                 consumed_token=None, timestamp=None):
    """Write a history row for a change already applied to subject.

    Args:
        subject: The ValidationSubject after mutation (status is the new status).
        action: One of: notify, resend, decide, reopen.
        previous_status: Status before the change.
        actor: Who acted (caller-supplied identity, token recipient, or 'system').
        comments: Optional reviewer comments.
        consumed_token: NotificationToken consumed by this change, if any.

    Returns:
        ValidationDecision instance.
    """
    entry = ValidationDecision(
        subject_id=subject.id,
        action=action,
        previous_status=previous_status,
        new_status=subject.status,
        actor=actor,
        comments=comments,
        timestamp=timestamp or datetime.utcnow(),
        notification_consumed=consumed_token is not None,
        consumed_token_id=consumed_token.id if consumed_token is not None else None,
    )
    db.session.add(entry)
    # Caller is responsible for commit (batched with the subject update).
    return entry


def get_history(subject_id):
    """Ordered, immutable decision history for a subject, oldest first.

    Raises:
        NotFound: unknown subject.
    """
    get_subject(subject_id)
    return ValidationDecision.query.filter_by(subject_id=subject_id).order_by(
        ValidationDecision.timestamp.asc(), ValidationDecision.id.asc(),
    ).all()


def get_notes(subject_id):
    """Delivery notes attached to a subject, oldest first."""
    get_subject(subject_id)
    return ValidationNote.query.filter_by(subject_id=subject_id).order_by(
        ValidationNote.created_at.asc(), ValidationNote.id.asc(),
    ).all()
