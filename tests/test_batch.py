"""
Tests for batch validation links: one e-mailed link covering several
subjects, the details the public batch page lists, and submissions with
per-item outcomes, general comments and single use.
"""
import pytest
from datetime import datetime, timedelta

from models import db, BatchValidationToken
from core.validation.decisions import record_decision, submit_batch_decisions
from core.validation.errors import (
    InvalidEntityType, NoRecipientEmail, NotFound, TokenAlreadyConsumed, TokenExpired,
)
from core.validation.history import get_history
from core.validation.notifications import send_batch_notification, send_notification
from core.validation.subjects import get_subject
from core.validation.tokens import (
    get_active_token, get_batch_token_details, issue_batch_token, sweep_expired_tokens,
    verify_batch_token, verify_token,
)


@pytest.fixture
def plans(make_subject):
    """Three action plans owned by the same responsible"""
    return [make_subject('action_plan') for _ in range(3)]


@pytest.mark.tokens
class TestSendBatchNotification:

    def test_one_link_for_several_subjects(self, plans, transport):
        ids = [p.id for p in plans]
        result = send_batch_notification(ids, 'owner@example.com')

        assert result['entity_type'] == 'action_plan'
        assert result['subject_ids'] == ids
        assert result['email_sent'] is True
        assert len(transport.sent) == 1
        sent = transport.sent[0]
        assert sent['template_id'] == 'batch_validation_request'
        assert sent['token'] == result['token']
        assert sent['context']['validation_url'].endswith(f"/public/batch-validation/{result['token']}")

        # Statuses and single tokens are untouched.
        assert {get_subject(i).status for i in ids} == {'pending_validation'}
        assert all(get_active_token(i) is None for i in ids)

    def test_duplicate_ids_are_collapsed(self, plans, transport):
        a = plans[0].id
        result = send_batch_notification([a, a, str(a)], 'owner@example.com')
        assert result['subject_ids'] == [a]

    def test_mixed_entity_types_rejected(self, make_subject, transport):
        ids = [make_subject('action_plan').id, make_subject('control').id]
        with pytest.raises(InvalidEntityType):
            send_batch_notification(ids, 'owner@example.com')
        assert BatchValidationToken.query.count() == 0
        assert transport.sent == []

    def test_unknown_subject_rejected(self, plans):
        with pytest.raises(NotFound):
            send_batch_notification([plans[0].id, 999999], 'owner@example.com')

    def test_recipient_required(self, plans):
        with pytest.raises(NoRecipientEmail):
            send_batch_notification([p.id for p in plans], '  ')

    def test_empty_selection_rejected(self, app):
        with pytest.raises(NotFound):
            send_batch_notification([], 'owner@example.com')


@pytest.mark.tokens
class TestBatchTokenDetails:

    def test_details_list_every_subject(self, plans, transport):
        record_decision(plans[1].id, 'validated', 'reviewer')
        token = send_batch_notification([p.id for p in plans], 'owner@example.com')['token']

        details = get_batch_token_details(token)

        assert details['entity_type'] == 'action_plan'
        assert details['responsible_email'] == 'owner@example.com'
        assert [s['id'] for s in details['subjects']] == [p.id for p in plans]
        assert [s['decidable'] for s in details['subjects']] == [True, False, True]

    def test_unknown_batch_token(self, app):
        with pytest.raises(NotFound):
            verify_batch_token('does-not-exist')

    def test_expired_batch_token(self, plans):
        batch = issue_batch_token([p.id for p in plans], 'owner@example.com', ttl_days=1,
                                  now=datetime.utcnow() - timedelta(days=2))
        db.session.commit()
        with pytest.raises(TokenExpired):
            get_batch_token_details(batch.token)


@pytest.mark.validation
class TestSubmitBatchDecisions:

    def test_items_decided_with_general_comment_fallback(self, plans, transport):
        a, b, c = plans
        token = send_batch_notification([a.id, b.id, c.id], 'owner@example.com')['token']

        result = submit_batch_decisions(token, [
            {'subject_id': a.id, 'decision': 'validated'},
            {'subject_id': b.id, 'decision': 'observed', 'comments': 'Missing due date'},
            {'subject_id': c.id, 'decision': 'rejected'},
        ], general_comments='Reviewed in the quarterly meeting')

        assert result['total_requested'] == 3
        assert result['total_processed'] == 3
        assert [r['new_status'] for r in result['results']] == ['validated', 'observed', 'rejected']
        assert get_subject(b.id).validation_comments == 'Missing due date'
        assert get_subject(c.id).validation_comments == 'Reviewed in the quarterly meeting'
        assert {get_subject(s.id).validated_by for s in plans} == {'owner@example.com'}

        batch = BatchValidationToken.query.filter_by(token=token).first()
        assert batch.is_used
        assert batch.general_comments == 'Reviewed in the quarterly meeting'

    def test_failures_are_isolated_per_item(self, plans, make_subject, transport):
        a, b, c = plans
        outsider = make_subject('action_plan')
        token = send_batch_notification([a.id, b.id, c.id], 'owner@example.com')['token']
        record_decision(b.id, 'rejected', 'earlier', comments='duplicate')

        result = submit_batch_decisions(token, [
            {'subject_id': a.id, 'decision': 'observed'},
            {'subject_id': b.id, 'decision': 'validated'},
            {'subject_id': outsider.id, 'decision': 'validated'},
            {'subject_id': c.id, 'decision': 'validated'},
        ])

        outcomes = {r['subject_id']: r.get('error') for r in result['results']}
        assert outcomes == {
            a.id: 'missing_required_comment',
            b.id: 'already_terminal',
            outsider.id: 'not_found',
            c.id: None,
        }
        assert result['total_processed'] == 1
        assert get_subject(c.id).status == 'validated'
        assert get_subject(a.id).status == 'pending_validation'
        assert get_subject(outsider.id).status == 'pending_validation'
        assert [h.actor for h in get_history(b.id)] == ['earlier']

    def test_link_is_single_use(self, plans, transport):
        token = send_batch_notification([p.id for p in plans], 'owner@example.com')['token']
        submit_batch_decisions(token, [{'subject_id': plans[0].id, 'decision': 'validated'}])

        with pytest.raises(TokenAlreadyConsumed):
            submit_batch_decisions(token, [{'subject_id': plans[1].id, 'decision': 'validated'}])
        assert get_subject(plans[1].id).status == 'pending_validation'

    def test_link_returned_when_nothing_recorded(self, plans, transport):
        token = send_batch_notification([p.id for p in plans], 'owner@example.com')['token']

        result = submit_batch_decisions(token, [{'subject_id': plans[0].id, 'decision': 'rejected'}])
        assert result['total_processed'] == 0
        assert verify_batch_token(token).consumed_at is None

        retry = submit_batch_decisions(token, [
            {'subject_id': plans[0].id, 'decision': 'rejected', 'comments': 'Plan superseded'},
        ])
        assert retry['total_processed'] == 1
        assert get_subject(plans[0].id).status == 'rejected'

    def test_expired_link_records_nothing(self, plans):
        batch = issue_batch_token([p.id for p in plans], 'owner@example.com', ttl_days=1,
                                  now=datetime.utcnow() - timedelta(days=3))
        db.session.commit()
        with pytest.raises(TokenExpired):
            submit_batch_decisions(batch.token, [{'subject_id': plans[0].id, 'decision': 'validated'}])
        assert get_subject(plans[0].id).status == 'pending_validation'

    def test_single_link_of_a_notified_subject_is_consumed(self, plans, transport):
        single = send_notification(plans[0].id, 'owner@example.com')['token']
        token = send_batch_notification([p.id for p in plans], 'owner@example.com')['token']

        submit_batch_decisions(token, [{'subject_id': plans[0].id, 'decision': 'validated'}])

        with pytest.raises(TokenAlreadyConsumed):
            verify_token(single)
        decide = [h for h in get_history(plans[0].id) if h.action == 'decide'][0]
        assert decide.notification_consumed is True

    def test_invalid_subject_id_in_item(self, plans, transport):
        token = send_batch_notification([p.id for p in plans], 'owner@example.com')['token']
        result = submit_batch_decisions(token, [
            {'subject_id': None, 'decision': 'validated'},
            {'subject_id': plans[2].id, 'decision': 'validated'},
        ])
        assert [r['success'] for r in result['results']] == [False, True]
        assert result['results'][0]['error'] == 'not_found'


@pytest.mark.tokens
class TestBatchSweep:

    def test_old_batch_links_are_swept(self, plans):
        old = issue_batch_token([plans[0].id], 'owner@example.com', ttl_days=1,
                                now=datetime.utcnow() - timedelta(days=90))
        issue_batch_token([plans[1].id], 'owner@example.com')
        db.session.commit()
        old_id = old.id

        assert sweep_expired_tokens() == 1
        assert BatchValidationToken.query.filter_by(id=old_id).count() == 0
        assert BatchValidationToken.query.count() == 1
