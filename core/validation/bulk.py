"""
Bulk operation coordinator — one decision across many subjects.

The selection is resolved against the subject store when the operation
runs, so "all matching this filter" means what matches now, not what a
client page showed earlier.

Every subject goes through record_decision on its own. A failure on one
subject is reported for that subject only and never rolls back or blocks
the others. ConcurrentModification is retried once, after a short pause,
before being reported.
"""
from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor

from flask import current_app

from models import db
from core.validation.decisions import record_decision
from core.validation.errors import ConcurrentModification, ValidationEngineError
from core.validation.subjects import resolve_selection

logger = logging.getLogger(__name__)

# One automatic retry for lost write races; caller-input errors are never retried.
CONCURRENT_RETRIES = 1
# Pause before that retry, long enough for the winning writer to commit.
CONCURRENT_RETRY_BACKOFF_SECONDS = 0.05


def apply_bulk_decision(selection, decision, actor, comments=None, comments_by_subject=None,
                        max_workers=1, cancel_event=None):
    """Apply decision to every subject in selection.

    Args:
        selection: {'ids': [...]} or {'filter': {...}}.
        decision: 'validated', 'observed' or 'rejected'.
        actor: Caller-supplied identity.
        comments: Comment used for every subject without its own.
        comments_by_subject: Optional {subject_id: comment} overrides.
        max_workers: >1 processes distinct subjects in parallel threads.
        cancel_event: threading.Event; once set, subjects not yet dispatched
            are skipped. Dispatched subjects always complete.

    Returns:
        dict: {'succeeded': [subject_id...],
               'failed': [{subject_id, reason, message}],
               'skipped': [subject_id...]}
    """
    subject_ids = resolve_selection(selection)
    overrides = {int(k): v for k, v in (comments_by_subject or {}).items()}

    def comment_for(subject_id):
        return overrides.get(subject_id, comments)

    if max_workers and max_workers > 1 and len(subject_ids) > 1:
        outcomes = _run_parallel(subject_ids, decision, actor, comment_for, max_workers, cancel_event)
    else:
        outcomes = []
        for subject_id in subject_ids:
            if cancel_event is not None and cancel_event.is_set():
                outcomes.append((subject_id, 'skipped', None))
                continue
            outcomes.append(_decide_one(subject_id, decision, actor, comment_for(subject_id)))

    result = {'succeeded': [], 'failed': [], 'skipped': []}
    for subject_id, outcome, failure in outcomes:
        if outcome == 'ok':
            result['succeeded'].append(subject_id)
        elif outcome == 'skipped':
            result['skipped'].append(subject_id)
        else:
            result['failed'].append(failure)

    logger.info('bulk %s by %s: %d succeeded, %d failed, %d skipped', decision, actor,
                len(result['succeeded']), len(result['failed']), len(result['skipped']))
    return result


# ---- internal helpers ----

def _decide_one(subject_id, decision, actor, comments):
    """Returns (subject_id, 'ok' | 'failed', failure_dict | None); never raises."""
    attempts = 0
    while True:
        try:
            record_decision(subject_id, decision, actor, comments=comments)
            return subject_id, 'ok', None
        except ConcurrentModification as e:
            db.session.rollback()
            if attempts < CONCURRENT_RETRIES:
                attempts += 1
                time.sleep(CONCURRENT_RETRY_BACKOFF_SECONDS * attempts)
                # Drop cached state so the retry re-reads the current version.
                db.session.expire_all()
                continue
            return subject_id, 'failed', _failure(subject_id, e.code, e.message)
        except ValidationEngineError as e:
            db.session.rollback()
            return subject_id, 'failed', _failure(subject_id, e.code, e.message)
        except Exception as e:
            db.session.rollback()
            logger.exception('bulk decision failed for subject %s', subject_id)
            return subject_id, 'failed', _failure(subject_id, 'internal_error', str(e))


def _failure(subject_id, reason, message):
    return {'subject_id': subject_id, 'reason': reason, 'message': message}


def _run_parallel(subject_ids, decision, actor, comment_for, max_workers, cancel_event):
    app = current_app._get_current_object()

    def worker(subject_id):
        if cancel_event is not None and cancel_event.is_set():
            return subject_id, 'skipped', None
        with app.app_context():
            try:
                return _decide_one(subject_id, decision, actor, comment_for(subject_id))
            finally:
                db.session.remove()

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        return list(pool.map(worker, subject_ids))
