"""
Maintenance worker — periodic housekeeping for the validation engine.

Never runs inside a request. Triggered by a scheduler (cron, Cloud
Scheduler, ...) or manually. Each step is independent: a failing step is
logged and the cycle moves on.
"""
import logging
import time

logger = logging.getLogger(__name__)

# Maximum seconds per maintenance cycle.
MAX_CYCLE_SECONDS = 45


def run_maintenance_cycle(max_seconds=MAX_CYCLE_SECONDS):
    """Send due e-mails, sweep dead tokens, refresh counters.

    Returns:
        dict with summary: deliveries, tokens_swept, counts_recomputed,
        elapsed_seconds, truncated.
    """
    start = time.monotonic()
    summary = {
        'deliveries': run_deliveries_only(max_seconds=max_seconds),
        'tokens_swept': 0,
        'counts_recomputed': 0,
        'truncated': False,
    }

    if max_seconds - (time.monotonic() - start) < 2:
        summary['truncated'] = True
        summary['elapsed_seconds'] = round(time.monotonic() - start, 2)
        return summary

    summary['tokens_swept'] = run_token_sweep_only()
    summary['counts_recomputed'] = run_counts_only()
    summary['elapsed_seconds'] = round(time.monotonic() - start, 2)
    return summary


def run_deliveries_only(max_seconds=MAX_CYCLE_SECONDS):
    """Process the e-mail outbox. Returns the delivery summary dict."""
    from core.validation.delivery import process_pending_deliveries

    try:
        return process_pending_deliveries(max_seconds=max_seconds)
    except Exception:
        _rollback()
        logger.exception('delivery step failed')
        return {'sent': 0, 'retrying': 0, 'failed': 0, 'truncated': False, 'error': True}


def run_token_sweep_only():
    """Delete long-expired tokens. Returns count deleted."""
    from core.validation.tokens import sweep_expired_tokens

    try:
        return sweep_expired_tokens()
    except Exception:
        _rollback()
        logger.exception('token sweep step failed')
        return 0


def run_counts_only():
    """Refresh the dashboard counters for every entity type."""
    from core.validation.counts import recompute_all

    try:
        return recompute_all()
    except Exception:
        _rollback()
        logger.exception('count recompute step failed')
        return 0


def _rollback():
    from models import db
    db.session.rollback()
