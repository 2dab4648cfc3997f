"""
Decision recorder — the only path from a reviewable state to a verdict.

record_decision applies validated / observed / rejected to one subject.
The subject update, the token consumption and the history row are written
in a single commit; nobody can observe one without the others.
submit_batch_decisions applies the items of a batch validation link one by
one through the same path.

Critical constraints:
    - observed and rejected require a non-empty comment.
    - validated and rejected subjects are closed; reopen_subject is the
      explicit way back to pending_validation.
    - One writer per subject: the guard is taken before the subject is read
      and held until the call returns; a concurrent writer fails
      ConcurrentModification.
    - Invalidation events fire only after the commit.
"""
from __future__ import annotations

import logging
from datetime import datetime

from models import db
from core.validation import delivery
from core.validation.constants import (
    COMMENT_REQUIRED_DECISIONS, DECISIONS, OUTCOME_TEMPLATE_ID, PENDING_VALIDATION,
)
from core.validation.errors import (
    AlreadyTerminal, InvalidDecision, InvalidTransition, MissingRequiredComment,
    NotFound, ValidationEngineError,
)
from core.validation.events import emit_invalidation
from core.validation.history import log_decision
from core.validation.locks import check_version, commit_unit, subject_guard
from core.validation.state_machine import check_transition, is_terminal
from core.validation.subjects import get_subject
from core.validation.tokens import (
    claim_batch_token, consume_active_token, invalidate_active_tokens, release_batch_token,
    verify_batch_token, verify_token,
)

logger = logging.getLogger(__name__)


def record_decision(subject_id: int, decision: str, actor: str, comments: str | None = None,
                    notify: bool = False, expected_version: int | None = None) -> dict:
    """Record a reviewer's verdict on a subject.

    Args:
        subject_id: The subject to decide.
        decision: 'validated', 'observed' or 'rejected'.
        actor: Caller-supplied identity (authorization happens upstream).
        comments: Required for observed / rejected.
        notify: Also queue an outcome e-mail to the responsible.
        expected_version: Version the caller last read; stale -> ConcurrentModification.

    Returns:
        dict: the history row plus the subject's new version.

    Raises:
        InvalidDecision, MissingRequiredComment, NotFound, AlreadyTerminal,
        InvalidTransition, ConcurrentModification.
    """
    comments = _check_decision_input(decision, comments, subject_id)

    with subject_guard(subject_id):
        subject = _load_open_subject(subject_id)
        check_version(subject, expected_version)

        entry, consumed = _apply(subject, decision, actor, comments, token=None)

        logger.info('subject %s %s by %s (%s)', subject_id, decision, actor,
                    'token consumed' if consumed is not None else 'no token')
        emit_invalidation(subject.entity_type, subject_id)

        if notify:
            _queue_outcome_email(subject)

        result = entry.to_dict()
        result['subject_version'] = subject.version
        return result


def submit_token_decision(token_value: str, decision: str, comments: str | None = None) -> dict:
    """Token-holder path: the e-mailed responsible decides through their link.

    The token is checked before anything else so an expired, superseded or
    used link fails fast, and checked again once the subject's guard is held.
    The token's recipient is recorded as the actor.

    Raises:
        NotFound, TokenExpired, TokenSuperseded, TokenAlreadyConsumed, plus
        everything record_decision raises.
    """
    token = verify_token(token_value)
    subject_id = token.subject_id
    comments = _check_decision_input(decision, comments, subject_id)

    with subject_guard(subject_id):
        token = verify_token(token_value)
        subject = _load_open_subject(subject_id)

        entry, _ = _apply(subject, decision, token.recipient_email, comments, token=token)

        logger.info('subject %s %s via e-mailed link (%s)', subject_id, decision, token.recipient_email)
        emit_invalidation(subject.entity_type, subject_id)

        result = entry.to_dict()
        result['subject_version'] = subject.version
        return result


def submit_token_decisions(items) -> dict:
    """Several token-holder decisions in one submission (batch validation page).

    Args:
        items: list of dicts with token, decision, comments (optional).

    Returns:
        dict: {'results': [{token, success, subject_id?, new_status?, error?}],
               'total_processed': n, 'total_requested': n}
    """
    results = []
    for item in items:
        token_value = item.get('token')
        try:
            entry = submit_token_decision(token_value, item.get('decision'), item.get('comments'))
            results.append({
                'token': token_value,
                'success': True,
                'subject_id': entry['subject_id'],
                'new_status': entry['new_status'],
            })
        except ValidationEngineError as e:
            db.session.rollback()
            results.append({'token': token_value, 'success': False, 'error': e.code,
                            'message': e.message})

    return {
        'results': results,
        'total_processed': len([r for r in results if r['success']]),
        'total_requested': len(results),
    }


def submit_batch_decisions(token_value: str, validations, general_comments: str | None = None) -> dict:
    """Decisions submitted from a batch validation link.

    The link is claimed before any item is processed, so a second submission
    of the same link fails TokenAlreadyConsumed. Each item goes through the
    normal guarded decision path with the link's recipient as actor; one
    item's failure never affects the others. When nothing at all could be
    recorded the link is handed back so the responsible can try again.

    Args:
        validations: list of dicts with subject_id, decision, comments (optional).
        general_comments: Used for every item without its own comment.

    Returns:
        dict: {'results': [{subject_id, success, decision, new_status?, error?, message?}],
               'total_processed': n, 'total_requested': n}

    Raises:
        NotFound, TokenExpired, TokenAlreadyConsumed.
    """
    batch = verify_batch_token(token_value)
    general_comments = (general_comments or '').strip() or None
    try:
        claim_batch_token(batch)
        batch.general_comments = general_comments
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    allowed = set(batch.subject_ids)
    results = []
    for item in validations or []:
        subject_id = item.get('subject_id')
        decision = item.get('decision')
        try:
            subject_id = int(subject_id)
            if subject_id not in allowed:
                raise NotFound('Subject is not part of this batch link', subject_id=subject_id)
            entry = record_decision(subject_id, decision, batch.recipient_email,
                                    comments=item.get('comments') or general_comments)
            results.append({'subject_id': subject_id, 'success': True, 'decision': decision,
                            'new_status': entry['new_status']})
        except ValidationEngineError as e:
            db.session.rollback()
            results.append({'subject_id': subject_id, 'success': False, 'decision': decision,
                            'error': e.code, 'message': e.message})
        except (TypeError, ValueError):
            results.append({'subject_id': subject_id, 'success': False, 'decision': decision,
                            'error': NotFound.code, 'message': 'Invalid subject id'})
        except Exception as e:
            db.session.rollback()
            logger.exception('batch decision failed for subject %s', subject_id)
            results.append({'subject_id': subject_id, 'success': False, 'decision': decision,
                            'error': 'internal_error', 'message': str(e)})

    processed = len([r for r in results if r['success']])
    if not processed:
        release_batch_token(batch)
        db.session.commit()

    logger.info('batch link for %s: %d of %d decisions recorded', batch.recipient_email,
                processed, len(results))
    return {
        'results': results,
        'total_processed': processed,
        'total_requested': len(results),
    }


def reopen_subject(subject_id: int, actor: str, comments: str,
                   expected_version: int | None = None) -> dict:
    """Explicitly return a decided subject to pending_validation.

    Clears the verdict fields and kills any active token; the history keeps
    the earlier verdict.

    Raises:
        MissingRequiredComment, NotFound, InvalidTransition, ConcurrentModification.
    """
    comments = (comments or '').strip()
    if not comments:
        raise MissingRequiredComment('A reason is required to reopen a subject', subject_id=subject_id)

    with subject_guard(subject_id):
        subject = get_subject(subject_id, refresh=True)
        check_version(subject, expected_version)

        with commit_unit(subject_id):
            now = datetime.utcnow()
            previous_status = subject.status
            check_transition(previous_status, PENDING_VALIDATION, reopen=True, subject_id=subject_id)

            invalidate_active_tokens(subject_id, now=now)
            subject.status = PENDING_VALIDATION
            subject.validated_at = None
            subject.validated_by = None
            subject.validation_comments = None
            db.session.flush()

            entry = log_decision(subject, 'reopen', previous_status, actor, comments=comments,
                                 timestamp=now)

        logger.info('subject %s reopened by %s (%s -> pending_validation)', subject_id, actor,
                    previous_status)
        emit_invalidation(subject.entity_type, subject_id)

        result = entry.to_dict()
        result['subject_version'] = subject.version
        return result


# ---------------------------------------------------------------------------
# Internal
# ---------------------------------------------------------------------------

def _check_decision_input(decision, comments, subject_id):
    if decision not in DECISIONS:
        raise InvalidDecision(f'Invalid decision: {decision}', subject_id=subject_id)
    comments = (comments or '').strip() or None
    if decision in COMMENT_REQUIRED_DECISIONS and not comments:
        raise MissingRequiredComment(
            f'Comments are required when the decision is {decision}',
            subject_id=subject_id,
        )
    return comments


def _load_open_subject(subject_id):
    """Re-read the subject under its guard and refuse closed ones."""
    subject = get_subject(subject_id, refresh=True)
    if is_terminal(subject.status):
        raise AlreadyTerminal(
            f'Subject is already {subject.status}; reopen it explicitly to decide again',
            subject_id=subject_id,
        )
    return subject


def _apply(subject, decision, actor, comments, token=None):
    """Write status, token consumption and history in one commit. Caller holds the guard."""
    with commit_unit(subject.id):
        now = datetime.utcnow()
        previous_status = subject.status
        check_transition(previous_status, decision, subject_id=subject.id)

        if token is not None:
            if token.subject_id != subject.id:
                raise InvalidTransition('Token does not belong to this subject', subject_id=subject.id)
            token.consumed_at = now
            consumed = token
        else:
            consumed = consume_active_token(subject.id, now=now)

        subject.status = decision
        subject.validated_at = now
        subject.validated_by = actor
        subject.validation_comments = comments
        db.session.flush()

        entry = log_decision(subject, 'decide', previous_status, actor,
                             comments=comments, consumed_token=consumed, timestamp=now)
    return entry, consumed


def _queue_outcome_email(subject):
    """Tell the responsible about the verdict. A missing address is only noted."""
    recipient = (subject.responsible_email or '').strip()
    if not recipient:
        delivery.add_note(
            subject.id,
            kind='delivery_warning',
            message='Outcome e-mail skipped: no responsible e-mail on file',
            details={'status': subject.status},
        )
        db.session.commit()
        return None

    outbox = delivery.enqueue_delivery(subject.id, recipient, OUTCOME_TEMPLATE_ID)
    db.session.commit()
    delivery.dispatch(outbox.id)
    return outbox
