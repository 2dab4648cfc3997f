"""
core.validation — Validation workflow engine.

Subject-matter owners validate, observe or reject risk-process links,
controls and action plans. The engine owns the approval state machine,
the e-mailed token lifecycle, the immutable decision history, bulk
decisions and dashboard counters. All state transitions are recorded.

Public API:
    register_subject, get_subject, find_subject, list_subjects
                                            — subject store
    resolve_selection, set_filter_resolver  — bulk selections
    send_notification, resend_notification, send_bulk_notifications,
    send_batch_notification                 — notification dispatcher
    verify_token, get_token_details, verify_batch_token,
    get_batch_token_details, sweep_expired_tokens
                                            — token registry
    record_decision, submit_token_decision, submit_token_decisions,
    submit_batch_decisions, reopen_subject  — decision recorder
    get_history, get_notes                  — audit trail
    apply_bulk_decision                     — bulk coordinator
    get_counts, get_all_counts, recompute   — count aggregator
    aggregate_link_statuses, summarize_risk — aggregated risk status
    register_invalidation_listener          — invalidation events
    set_email_transport, wait_for_background_deliveries
                                            — e-mail delivery
    run_maintenance_cycle                   — periodic worker
"""

from core.validation.subjects import (
    register_subject,
    get_subject,
    find_subject,
    list_subjects,
    resolve_selection,
    set_filter_resolver,
)
from core.validation.tokens import (
    verify_token,
    get_token_details,
    verify_batch_token,
    get_batch_token_details,
    sweep_expired_tokens,
)
from core.validation.notifications import (
    send_notification,
    resend_notification,
    send_bulk_notifications,
    send_batch_notification,
)
from core.validation.decisions import (
    record_decision,
    submit_token_decision,
    submit_token_decisions,
    submit_batch_decisions,
    reopen_subject,
)
from core.validation.history import (
    get_history,
    get_notes,
)
from core.validation.bulk import apply_bulk_decision
from core.validation.counts import (
    get_counts,
    get_all_counts,
    recompute,
)
from core.validation.aggregation import (
    aggregate_link_statuses,
    summarize_risk,
)
from core.validation.events import (
    register_invalidation_listener,
    unregister_invalidation_listener,
)
from core.validation.delivery import (
    EmailTransport,
    set_email_transport,
    wait_for_background_deliveries,
)
from core.validation.worker import run_maintenance_cycle

__all__ = [
    'register_subject',
    'get_subject',
    'find_subject',
    'list_subjects',
    'resolve_selection',
    'set_filter_resolver',
    'verify_token',
    'get_token_details',
    'verify_batch_token',
    'get_batch_token_details',
    'sweep_expired_tokens',
    'send_notification',
    'resend_notification',
    'send_bulk_notifications',
    'send_batch_notification',
    'record_decision',
    'submit_token_decision',
    'submit_token_decisions',
    'submit_batch_decisions',
    'reopen_subject',
    'get_history',
    'get_notes',
    'apply_bulk_decision',
    'get_counts',
    'get_all_counts',
    'recompute',
    'aggregate_link_statuses',
    'summarize_risk',
    'register_invalidation_listener',
    'unregister_invalidation_listener',
    'EmailTransport',
    'set_email_transport',
    'wait_for_background_deliveries',
    'run_maintenance_cycle',
]
