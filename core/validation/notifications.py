"""
Notification dispatcher — ask an external responsible to validate.

send_notification moves a subject to 'notified', issues its token and queues
the e-mail in one commit. resend_notification re-issues the token without
changing status. send_batch_notification e-mails one link covering several
subjects. Delivery happens after the commit and can never undo it:
transport failures only leave notes on the subject.
"""
from __future__ import annotations

import logging
from datetime import datetime

from models import db
from core.validation import delivery
from core.validation.constants import (
    BATCH_TEMPLATE_ID, DEFAULT_TEMPLATE_ID, NOTIFIED, SYSTEM_ACTOR, TOKEN_TTL_DAYS,
)
from core.validation.errors import (
    AlreadyTerminal, InvalidStateForResend, InvalidTransition, NoRecipientEmail,
    ValidationEngineError,
)
from core.validation.events import emit_invalidation
from core.validation.history import log_decision
from core.validation.locks import check_version, commit_unit, subject_guard
from core.validation.state_machine import check_transition, is_terminal
from core.validation.subjects import get_subject
from core.validation.tokens import get_latest_token, issue_batch_token, issue_token

logger = logging.getLogger(__name__)


def send_notification(subject_id: int, recipient_email: str | None, actor: str = SYSTEM_ACTOR,
                      template_id: str = DEFAULT_TEMPLATE_ID,
                      expected_version: int | None = None) -> dict:
    """Issue a validation token for a subject and request its e-mail.

    Returns:
        dict with subject_id, status, token, expires_at, resend_count,
        delivery_id, email_sent.

    Raises:
        NoRecipientEmail, NotFound, AlreadyTerminal, InvalidTransition,
        ConcurrentModification.
    """
    recipient = (recipient_email or '').strip()
    if not recipient:
        raise NoRecipientEmail('A recipient e-mail is required to notify', subject_id=subject_id)

    with subject_guard(subject_id):
        subject = get_subject(subject_id, refresh=True)
        if is_terminal(subject.status):
            raise AlreadyTerminal(f'Subject is already {subject.status}', subject_id=subject_id)
        if subject.status == NOTIFIED:
            raise InvalidTransition('Subject is already notified; use resend', subject_id=subject_id)
        check_version(subject, expected_version)

        with commit_unit(subject_id):
            now = datetime.utcnow()
            previous_status = subject.status
            check_transition(previous_status, NOTIFIED, subject_id=subject_id)

            token = issue_token(subject_id, recipient, ttl_days=TOKEN_TTL_DAYS, now=now)
            subject.status = NOTIFIED
            subject.notified_at = now
            subject.resend_count = 0
            db.session.flush()

            log_decision(subject, 'notify', previous_status, actor, timestamp=now)
            outbox = delivery.enqueue_delivery(subject_id, recipient, template_id, token_id=token.id)

        logger.info('subject %s notified (%s -> notified), token expires %s',
                    subject_id, previous_status, token.expires_at.isoformat())
        emit_invalidation(subject.entity_type, subject_id)

        email_sent = delivery.dispatch(outbox.id)
        return _result(subject, token, outbox, email_sent)


def resend_notification(subject_id: int, actor: str = SYSTEM_ACTOR,
                        template_id: str = DEFAULT_TEMPLATE_ID) -> dict:
    """Replace the subject's token with a fresh one and e-mail it again.

    Status stays 'notified'. The previous token is invalidated before the new
    one exists, so the old link fails immediately. The resend counter lives
    on the subject and keeps counting after old tokens are swept.

    Raises:
        NotFound, InvalidStateForResend, NoRecipientEmail, ConcurrentModification.
    """
    with subject_guard(subject_id):
        subject = get_subject(subject_id, refresh=True)
        if subject.status != NOTIFIED:
            raise InvalidStateForResend(
                f'Only notified subjects can be re-sent (current: {subject.status})',
                subject_id=subject_id,
            )

        previous = get_latest_token(subject_id)
        recipient = (previous.recipient_email if previous else None) or subject.responsible_email
        if not recipient:
            raise NoRecipientEmail('No recipient known for this subject', subject_id=subject_id)

        with commit_unit(subject_id):
            now = datetime.utcnow()
            check_transition(NOTIFIED, NOTIFIED, subject_id=subject_id)

            resend_count = (subject.resend_count or 0) + 1
            token = issue_token(subject_id, recipient, ttl_days=TOKEN_TTL_DAYS,
                                resend_count=resend_count, now=now)
            subject.resend_count = resend_count
            subject.updated_at = now
            db.session.flush()

            log_decision(subject, 'resend', NOTIFIED, actor, timestamp=now)
            outbox = delivery.enqueue_delivery(subject_id, recipient, template_id, token_id=token.id)

        logger.info('subject %s notification re-sent (resend #%d)', subject_id, resend_count)
        emit_invalidation(subject.entity_type, subject_id)

        email_sent = delivery.dispatch(outbox.id)
        return _result(subject, token, outbox, email_sent)


def send_batch_notification(subject_ids, recipient_email: str | None,
                            template_id: str = BATCH_TEMPLATE_ID) -> dict:
    """E-mail one responsible a single link covering several subjects.

    Statuses are not changed; each decision made through the link goes
    through the normal decision path.

    Returns:
        dict with token, entity_type, subject_ids, expires_at, delivery_id, email_sent.

    Raises:
        NoRecipientEmail, NotFound, InvalidEntityType.
    """
    try:
        batch = issue_batch_token(subject_ids, recipient_email, ttl_days=TOKEN_TTL_DAYS)
        db.session.flush()
        outbox = delivery.enqueue_delivery(batch.subject_ids[0], batch.recipient_email, template_id,
                                           batch_token_id=batch.id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info('batch link for %d %s subjects sent to %s', len(batch.subject_ids),
                batch.entity_type, batch.recipient_email)

    email_sent = delivery.dispatch(outbox.id)
    return {
        'token': batch.token,
        'entity_type': batch.entity_type,
        'subject_ids': list(batch.subject_ids),
        'expires_at': batch.expires_at.isoformat(),
        'delivery_id': outbox.id,
        'email_sent': email_sent,
    }


def send_bulk_notifications(subject_ids, recipient_resolver=None, actor: str = SYSTEM_ACTOR,
                            template_id: str = DEFAULT_TEMPLATE_ID) -> dict:
    """Notify many subjects; one subject's problem never stops the batch.

    Args:
        subject_ids: Subjects to notify (duplicates are ignored).
        recipient_resolver: Optional callable(subject) -> e-mail; defaults to
            the subject's responsible_email.

    Returns:
        dict: {'sent': [result...], 'warnings': [{subject_id, reason, message}],
               'failed': [{subject_id, reason, message}]}
    """
    sent, warnings, failed = [], [], []
    seen = set()

    for subject_id in subject_ids:
        if subject_id in seen:
            continue
        seen.add(subject_id)

        try:
            subject = get_subject(subject_id)
            recipient = recipient_resolver(subject) if recipient_resolver else subject.responsible_email
            if not (recipient or '').strip():
                warnings.append({
                    'subject_id': subject_id,
                    'reason': NoRecipientEmail.code,
                    'message': 'No recipient e-mail for this subject; skipped',
                })
                continue
            sent.append(send_notification(subject_id, recipient, actor=actor, template_id=template_id))
        except ValidationEngineError as e:
            db.session.rollback()
            failed.append({'subject_id': subject_id, 'reason': e.code, 'message': e.message})
        except Exception as e:
            db.session.rollback()
            logger.exception('bulk notification failed for subject %s', subject_id)
            failed.append({'subject_id': subject_id, 'reason': 'internal_error', 'message': str(e)})

    logger.info('bulk notification: %d sent, %d warnings, %d failed',
                len(sent), len(warnings), len(failed))
    return {'sent': sent, 'warnings': warnings, 'failed': failed}



def _result(subject, token, outbox, email_sent):
    return {
        'subject_id': subject.id,
        'status': subject.status,
        'token': token.token,
        'expires_at': token.expires_at.isoformat(),
        'resend_count': subject.resend_count,
        'delivery_id': outbox.id,
        'email_sent': email_sent,
    }
