"""
Validation engine constants — entity types, statuses, configuration.

Numeric settings can be overridden through environment variables so a
deployment can tune TTLs and retry behaviour without a code change.
"""
import os

VALID_ENTITY_TYPES = ('risk_process_link', 'control', 'action_plan')

PENDING_VALIDATION = 'pending_validation'
NOTIFIED = 'notified'
VALIDATED = 'validated'
OBSERVED = 'observed'
REJECTED = 'rejected'

VALID_STATUSES = (PENDING_VALIDATION, NOTIFIED, VALIDATED, OBSERVED, REJECTED)

# Verdicts a reviewer (internal or token-holder) may submit.
DECISIONS = frozenset({VALIDATED, OBSERVED, REJECTED})

# Verdicts that must carry a non-empty comment.
COMMENT_REQUIRED_DECISIONS = frozenset({OBSERVED, REJECTED})

# Actor recorded for system-initiated operations.
SYSTEM_ACTOR = 'system'

# Token lifetime for e-mailed validation links.
TOKEN_TTL_DAYS = int(os.environ.get('VALIDATION_TOKEN_TTL_DAYS', '7'))

# Days past expiry before a token row is swept.
TOKEN_RETENTION_DAYS = int(os.environ.get('VALIDATION_TOKEN_RETENTION_DAYS', '30'))

# E-mail templates understood by the transport.
DEFAULT_TEMPLATE_ID = 'validation_request'
OUTCOME_TEMPLATE_ID = 'validation_outcome'
BATCH_TEMPLATE_ID = 'batch_validation_request'

# 'background' hands the send to a small thread pool right after commit,
# 'inline' sends on the calling thread, 'deferred' leaves it to the worker.
DELIVERY_MODE = os.environ.get('VALIDATION_DELIVERY_MODE', 'background')
DELIVERY_WORKERS = int(os.environ.get('VALIDATION_DELIVERY_WORKERS', '4'))
# Upper bound on one transport call.
DELIVERY_TIMEOUT_SECONDS = float(os.environ.get('VALIDATION_DELIVERY_TIMEOUT_SECONDS', '10'))
DELIVERY_MAX_ATTEMPTS = int(os.environ.get('VALIDATION_DELIVERY_MAX_ATTEMPTS', '3'))
DELIVERY_BACKOFF_SECONDS = int(os.environ.get('VALIDATION_DELIVERY_BACKOFF_SECONDS', '60'))
DELIVERY_BATCH_SIZE = 100

# Count snapshots older than this are recomputed on read.
COUNTS_MAX_AGE_SECONDS = int(os.environ.get('VALIDATION_COUNTS_MAX_AGE', '30'))

# Public page the token links point to.
BASE_URL = os.environ.get('VALIDATION_BASE_URL', 'http://localhost:5000')
