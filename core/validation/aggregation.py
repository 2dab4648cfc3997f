"""
Aggregated validation status of a risk across its process links.

A risk linked to several processes is validated link by link. The risk as a
whole reads as:
    rejected             — at least one link rejected
    observed             — at least one link observed, none rejected
    validated            — every link validated
    partially_validated  — some links validated, the rest still open
    pending_validation   — nothing validated yet (or no links)
"""
from core.validation.constants import (
    NOTIFIED, OBSERVED, PENDING_VALIDATION, REJECTED, VALIDATED,
)
from core.validation.subjects import list_subjects

PARTIALLY_VALIDATED = 'partially_validated'


def aggregate_link_statuses(statuses):
    """Fold per-link statuses into one aggregated status with counts."""
    statuses = list(statuses)
    total = len(statuses)
    validated = statuses.count(VALIDATED)
    observed = statuses.count(OBSERVED)
    rejected = statuses.count(REJECTED)
    # Notified links are still waiting for an answer.
    pending = statuses.count(PENDING_VALIDATION) + statuses.count(NOTIFIED)

    if total == 0:
        aggregated = PENDING_VALIDATION
    elif rejected:
        aggregated = REJECTED
    elif observed:
        aggregated = OBSERVED
    elif validated == total:
        aggregated = VALIDATED
    elif validated and pending:
        aggregated = PARTIALLY_VALIDATED
    else:
        aggregated = PENDING_VALIDATION

    return {
        'aggregated_status': aggregated,
        'total_links': total,
        'validated_count': validated,
        'observed_count': observed,
        'rejected_count': rejected,
        'pending_count': pending,
    }


def summarize_risk(risk_id):
    """Aggregate the risk_process_link subjects whose process_context carries risk_id."""
    links = list_subjects(
        'risk_process_link',
        filters={'process_context': {'risk_id': risk_id}},
        limit=None,
    )
    summary = aggregate_link_statuses(link.status for link in links)
    summary['risk_id'] = risk_id
    summary['links'] = [
        {
            'subject_id': link.id,
            'entity_id': link.entity_id,
            'status': link.status,
            'validated_by': link.validated_by,
            'validated_at': link.validated_at.isoformat() if link.validated_at else None,
            'validation_comments': link.validation_comments,
            'process_context': link.process_context or {},
        }
        for link in links
    ]
    return summary
