"""
E-mail delivery outbox — hands validation e-mails to the transport.

Outbox rows are written in the same transaction as the token/status change
they belong to; sending happens afterwards. A failed send is retried with
exponential backoff up to max_attempts. On exhaustion the row is marked
failed, a delivery_failure note is attached to the subject and an optional
Slack alert goes out. Validation status is never touched here.

By default sends run on a small background thread pool with its own app
context; the caller returns without waiting on the relay.

Transports:
    SendGridEmailTransport — SendGrid dynamic templates (SENDGRID_API_KEY).
    ConsoleEmailTransport  — development fallback, logs the link.
"""
from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait as futures_wait
from datetime import datetime, timedelta

import requests as http_requests
from flask import current_app

from models import db, BatchValidationToken, EmailDelivery, NotificationToken, ValidationNote
from core.validation import constants

logger = logging.getLogger(__name__)


class EmailTransport:
    """Transport contract: accept {recipient, template_id, token}; raise on failure."""

    def send(self, recipient: str, template_id: str, token: str | None = None,
             context: dict | None = None) -> None:
        raise NotImplementedError


class ConsoleEmailTransport(EmailTransport):
    """Development mode: log instead of sending."""

    def send(self, recipient, template_id, token=None, context=None):
        link = (context or {}).get('validation_url') or (validation_url(token) if token else '-')
        logger.info('validation e-mail (dev mode) to=%s template=%s link=%s',
                    recipient, template_id, link)


class SendGridEmailTransport(EmailTransport):
    """Send through SendGrid dynamic templates.

    Template ids are looked up in SENDGRID_TEMPLATE_<TEMPLATE_ID> and fall
    back to the engine's template id itself. Every HTTP call is bounded by
    timeout seconds.
    """

    def __init__(self, api_key: str, from_email: str | None = None, timeout: float | None = None):
        self.api_key = api_key
        self.from_email = from_email or os.environ.get('SENDGRID_FROM_EMAIL', 'validaciones@example.com')
        self.timeout = timeout if timeout is not None else constants.DELIVERY_TIMEOUT_SECONDS

    def send(self, recipient, template_id, token=None, context=None):
        from sendgrid import SendGridAPIClient
        from sendgrid.helpers.mail import Mail

        message = Mail(from_email=self.from_email, to_emails=recipient)
        message.template_id = os.environ.get(f'SENDGRID_TEMPLATE_{template_id.upper()}', template_id)
        data = dict(context or {})
        if token:
            data.setdefault('validation_url', validation_url(token))
        message.dynamic_template_data = data

        client = SendGridAPIClient(self.api_key)
        # python_http_client hands this timeout to every request it builds.
        client.client.timeout = self.timeout
        response = client.send(message)
        if response.status_code >= 300:
            raise RuntimeError(f'SendGrid returned {response.status_code}')


_transport: EmailTransport | None = None


def get_email_transport() -> EmailTransport:
    global _transport
    if _transport is None:
        api_key = os.environ.get('SENDGRID_API_KEY')
        _transport = SendGridEmailTransport(api_key) if api_key else ConsoleEmailTransport()
    return _transport


def set_email_transport(transport: EmailTransport | None) -> None:
    """Install a transport (None resets to the environment default)."""
    global _transport
    _transport = transport


def validation_url(token: str) -> str:
    return f"{constants.BASE_URL}/public/validation/{token}"


def batch_validation_url(token: str) -> str:
    return f"{constants.BASE_URL}/public/batch-validation/{token}"


def notify_slack(message: str) -> bool:
    """Send a message to the configured Slack webhook. Returns True on success."""
    slack_url = os.environ.get('SLACK_WEBHOOK_URL')
    if not slack_url:
        return False

    try:
        resp = http_requests.post(slack_url, json={'text': message}, timeout=5)
        return resp.status_code == 200
    except http_requests.RequestException as e:
        logger.warning('Slack notification failed: %s', e)
        return False


def add_note(subject_id: int, kind: str, message: str, details: dict | None = None) -> ValidationNote:
    """Attach a non-fatal note to a subject. Caller commits."""
    note = ValidationNote(subject_id=subject_id, kind=kind, message=message, details=details or {})
    db.session.add(note)
    return note


def enqueue_delivery(subject_id: int, recipient: str, template_id: str,
                     token_id: int | None = None, batch_token_id: int | None = None) -> EmailDelivery:
    """Add an outbox row. Caller commits it with the state change it belongs to."""
    delivery = EmailDelivery(
        subject_id=subject_id,
        token_id=token_id,
        batch_token_id=batch_token_id,
        recipient=recipient,
        template_id=template_id,
        status='pending',
        attempts=0,
        max_attempts=constants.DELIVERY_MAX_ATTEMPTS,
        next_attempt_at=datetime.utcnow(),
    )
    db.session.add(delivery)
    return delivery


def dispatch(delivery_id: int) -> bool:
    """Post-commit hook. Never raises.

    'background' schedules the send on the delivery pool, 'inline' sends on
    the calling thread, 'deferred' does nothing. Whatever does not go out here
    stays pending in the outbox for the worker.

    Returns:
        bool: True only when an inline send was accepted.
    """
    mode = constants.DELIVERY_MODE
    if mode == 'deferred':
        return False

    if mode == 'background':
        try:
            app = current_app._get_current_object()
            future = _get_executor().submit(_attempt_in_app, app, delivery_id)
        except Exception:
            logger.exception('could not schedule delivery %s; left for the worker', delivery_id)
            return False
        with _executor_lock:
            _pending.add(future)
        future.add_done_callback(_forget)
        return False

    try:
        return attempt_delivery(delivery_id)
    except Exception:
        db.session.rollback()
        logger.exception('delivery %s could not be attempted; left for the worker', delivery_id)
        return False


def wait_for_background_deliveries(timeout: float | None = None) -> bool:
    """Block until scheduled background sends finish. False on timeout."""
    with _executor_lock:
        pending = list(_pending)
    if not pending:
        return True
    _, not_done = futures_wait(pending, timeout=timeout)
    return not not_done


def attempt_delivery(delivery_id: int) -> bool:
    """Try one send. Never raises for transport failures.

    The row is claimed first by pushing next_attempt_at out by a lease, so a
    background send and a worker pass cannot both pick up the same row.

    Returns:
        bool: True when the transport accepted the e-mail.
    """
    now = datetime.utcnow()
    lease_until = now + timedelta(seconds=constants.DELIVERY_TIMEOUT_SECONDS * 3)
    claimed = EmailDelivery.query.filter(
        EmailDelivery.id == delivery_id,
        EmailDelivery.status == 'pending',
        EmailDelivery.next_attempt_at <= now,
    ).update({'next_attempt_at': lease_until}, synchronize_session=False)
    db.session.commit()
    if not claimed:
        return False

    delivery = db.session.get(EmailDelivery, delivery_id, populate_existing=True)
    token_value, link = _link_for(delivery)
    context = {'subject_id': delivery.subject_id}
    if link:
        context['validation_url'] = link

    try:
        get_email_transport().send(
            delivery.recipient,
            delivery.template_id,
            token=token_value,
            context=context,
        )
    except Exception as e:
        _record_failure(delivery, e)
        return False

    delivery.attempts += 1
    delivery.status = 'sent'
    delivery.sent_at = datetime.utcnow()
    delivery.last_error = None
    db.session.commit()
    return True


def process_pending_deliveries(limit: int = constants.DELIVERY_BATCH_SIZE,
                               max_seconds: float | None = None) -> dict:
    """Send every due outbox row (worker entry point).

    Returns:
        dict: {'sent': n, 'retrying': n, 'failed': n, 'truncated': bool}
    """
    start = time.monotonic()
    now = datetime.utcnow()
    due_ids = [
        row.id for row in db.session.query(EmailDelivery.id).filter(
            EmailDelivery.status == 'pending',
            EmailDelivery.next_attempt_at <= now,
        ).order_by(EmailDelivery.next_attempt_at.asc()).limit(limit).all()
    ]

    summary = {'sent': 0, 'retrying': 0, 'failed': 0, 'truncated': False}
    for delivery_id in due_ids:
        if max_seconds is not None and time.monotonic() - start > max_seconds:
            summary['truncated'] = True
            break
        if attempt_delivery(delivery_id):
            summary['sent'] += 1
            continue
        delivery = db.session.get(EmailDelivery, delivery_id)
        if delivery is not None and delivery.status == 'failed':
            summary['failed'] += 1
        else:
            summary['retrying'] += 1
    return summary


# ---- internal helpers ----

def _record_failure(delivery: EmailDelivery, error: Exception) -> None:
    delivery.attempts += 1
    delivery.last_error = str(error)[:2000]

    if delivery.attempts < delivery.max_attempts:
        backoff = constants.DELIVERY_BACKOFF_SECONDS * (2 ** (delivery.attempts - 1))
        delivery.next_attempt_at = datetime.utcnow() + timedelta(seconds=backoff)
        db.session.commit()
        logger.warning('delivery %s to %s failed (attempt %d/%d), retrying in %ss: %s',
                       delivery.id, delivery.recipient, delivery.attempts,
                       delivery.max_attempts, backoff, error)
        return

    delivery.status = 'failed'
    add_note(
        delivery.subject_id,
        kind='delivery_failure',
        message=f'E-mail to {delivery.recipient} could not be delivered',
        details={
            'delivery_id': delivery.id,
            'template_id': delivery.template_id,
            'attempts': delivery.attempts,
            'error': delivery.last_error,
        },
    )
    db.session.commit()
    logger.error('delivery %s to %s failed permanently after %d attempts: %s',
                 delivery.id, delivery.recipient, delivery.attempts, error)
    notify_slack(
        f'[validation] e-mail to {delivery.recipient} for subject '
        f'{delivery.subject_id} failed after {delivery.attempts} attempts'
    )


def _link_for(delivery: EmailDelivery):
    """(token value, public link) for the row, or (None, None) for outcome e-mails."""
    if delivery.batch_token_id is not None:
        batch = db.session.get(BatchValidationToken, delivery.batch_token_id)
        if batch is not None:
            return batch.token, batch_validation_url(batch.token)
    elif delivery.token_id is not None:
        token = db.session.get(NotificationToken, delivery.token_id)
        if token is not None:
            return token.token, validation_url(token.token)
    return None, None


_executor: ThreadPoolExecutor | None = None
_executor_lock = threading.Lock()
_pending = set()


def _get_executor() -> ThreadPoolExecutor:
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(max_workers=constants.DELIVERY_WORKERS,
                                           thread_name_prefix='validation-mail')
        return _executor


def _forget(future):
    with _executor_lock:
        _pending.discard(future)


def _attempt_in_app(app, delivery_id):
    with app.app_context():
        try:
            return attempt_delivery(delivery_id)
        except Exception:
            db.session.rollback()
            logger.exception('background delivery %s failed; left for the worker', delivery_id)
            return False
        finally:
            db.session.remove()
