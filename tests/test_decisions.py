"""
Tests for the decision recorder.

Covers: verdict validation, required comments, terminal statuses, re-open,
token-holder submissions, outcome e-mails, history invariants and the
one-writer-per-subject concurrency contract.
"""
import threading
import time

import pytest
from unittest.mock import patch

from models import db, NotificationToken
from core.validation import decisions
from core.validation.decisions import (
    record_decision, reopen_subject, submit_token_decision, submit_token_decisions,
)
from core.validation.errors import (
    AlreadyTerminal, ConcurrentModification, InvalidDecision, InvalidTransition,
    MissingRequiredComment, NotFound, TokenAlreadyConsumed, TokenSuperseded,
)
from core.validation.history import get_history, get_notes
from core.validation.locks import guard_count, is_guarded, subject_guard
from core.validation.notifications import resend_notification, send_notification
from core.validation.subjects import get_subject
from core.validation.tokens import get_active_token, verify_token


@pytest.mark.validation
class TestRecordDecision:

    def test_validate_pending_subject(self, subject):
        entry = record_decision(subject.id, 'validated', 'reviewer@example.com')

        assert entry['previous_status'] == 'pending_validation'
        assert entry['new_status'] == 'validated'
        assert entry['actor'] == 'reviewer@example.com'
        assert entry['notification_consumed'] is False
        s = get_subject(subject.id)
        assert s.status == 'validated'
        assert s.validated_by == 'reviewer@example.com'
        assert s.validated_at is not None
        assert entry['subject_version'] == s.version

    @pytest.mark.parametrize('decision', ['observed', 'rejected'])
    @pytest.mark.parametrize('comments', [None, '', '   \n'])
    def test_comment_required(self, subject, decision, comments):
        with pytest.raises(MissingRequiredComment):
            record_decision(subject.id, decision, 'reviewer', comments=comments)
        assert get_subject(subject.id).status == 'pending_validation'
        assert get_history(subject.id) == []

    @pytest.mark.parametrize('decision', ['observed', 'rejected'])
    def test_comment_supplied(self, subject, decision):
        entry = record_decision(subject.id, decision, 'reviewer', comments='  Owner changed  ')
        assert entry['new_status'] == decision
        assert entry['comments'] == 'Owner changed'
        assert get_subject(subject.id).validation_comments == 'Owner changed'

    def test_comment_checked_before_lookup(self, app):
        with pytest.raises(MissingRequiredComment):
            record_decision(123456, 'rejected', 'reviewer')

    def test_invalid_decision(self, subject):
        with pytest.raises(InvalidDecision):
            record_decision(subject.id, 'approved', 'reviewer')
        with pytest.raises(InvalidDecision):
            record_decision(subject.id, 'notified', 'reviewer')

    def test_unknown_subject(self, app):
        with pytest.raises(NotFound):
            record_decision(123456, 'validated', 'reviewer')

    @pytest.mark.parametrize('first', ['validated', 'rejected'])
    def test_terminal_subject_cannot_be_redecided(self, subject, first):
        record_decision(subject.id, first, 'reviewer', comments='done')
        with pytest.raises(AlreadyTerminal):
            record_decision(subject.id, 'observed', 'reviewer', comments='second thoughts')
        assert get_subject(subject.id).status == first

    def test_observed_can_be_decided_again(self, subject):
        record_decision(subject.id, 'observed', 'reviewer', comments='Need evidence')
        entry = record_decision(subject.id, 'validated', 'reviewer')
        assert entry['previous_status'] == 'observed'
        assert get_subject(subject.id).status == 'validated'

    def test_observed_twice_is_illegal(self, subject):
        record_decision(subject.id, 'observed', 'reviewer', comments='Need evidence')
        with pytest.raises(InvalidTransition):
            record_decision(subject.id, 'observed', 'reviewer', comments='Still unclear')

    def test_decision_consumes_active_token(self, subject, transport):
        result = send_notification(subject.id, 'owner@example.com')
        entry = record_decision(subject.id, 'validated', 'internal-reviewer')

        assert entry['notification_consumed'] is True
        assert get_active_token(subject.id) is None
        with pytest.raises(TokenAlreadyConsumed):
            verify_token(result['token'])


@pytest.mark.validation
class TestScenarios:

    def test_send_resend_decide(self, make_subject, transport):
        s = make_subject('control', entity_id='S')

        t1 = send_notification(s.id, 'owner@example.com')['token']
        assert get_subject(s.id).status == 'notified'
        assert verify_token(t1)

        t2 = resend_notification(s.id)['token']
        with pytest.raises(TokenSuperseded):
            verify_token(t1)
        assert verify_token(t2)
        assert get_subject(s.id).status == 'notified'

        record_decision(s.id, 'validated', 'U1')
        final = get_subject(s.id)
        assert final.status == 'validated'
        assert final.validated_by == 'U1'
        t2_row = NotificationToken.query.filter_by(token=t2).first()
        assert t2_row.consumed_at is not None

        history = get_history(s.id)
        assert [h.action for h in history] == ['notify', 'resend', 'decide']
        assert history[-1].new_status == final.status
        assert history[-1].consumed_token_id == t2_row.id


@pytest.mark.validation
class TestTokenSubmissions:

    def test_token_holder_decides(self, subject, transport):
        token = send_notification(subject.id, 'owner@example.com')['token']
        entry = submit_token_decision(token, 'observed', comments='Wrong process owner')

        assert entry['actor'] == 'owner@example.com'
        assert entry['new_status'] == 'observed'
        assert entry['notification_consumed'] is True
        with pytest.raises(TokenAlreadyConsumed):
            submit_token_decision(token, 'validated')

    def test_token_checked_before_comment(self, subject, transport):
        token = send_notification(subject.id, 'owner@example.com')['token']
        resend_notification(subject.id)
        with pytest.raises(TokenSuperseded):
            submit_token_decision(token, 'rejected', comments='')

    def test_token_holder_comment_required(self, subject, transport):
        token = send_notification(subject.id, 'owner@example.com')['token']
        with pytest.raises(MissingRequiredComment):
            submit_token_decision(token, 'rejected', comments=' ')
        assert verify_token(token)

    def test_token_after_internal_decision(self, subject, transport):
        token = send_notification(subject.id, 'owner@example.com')['token']
        record_decision(subject.id, 'validated', 'internal')
        with pytest.raises(TokenAlreadyConsumed):
            submit_token_decision(token, 'validated')

    def test_batch_submission(self, make_subject, transport):
        a = make_subject('risk_process_link')
        b = make_subject('risk_process_link')
        ta = send_notification(a.id, 'owner@example.com')['token']
        tb = send_notification(b.id, 'owner@example.com')['token']

        result = submit_token_decisions([
            {'token': ta, 'decision': 'validated'},
            {'token': tb, 'decision': 'rejected'},
            {'token': 'bogus', 'decision': 'validated'},
        ])

        assert result['total_requested'] == 3
        assert result['total_processed'] == 1
        by_token = {r['token']: r for r in result['results']}
        assert by_token[ta]['success'] is True
        assert by_token[ta]['new_status'] == 'validated'
        assert by_token[tb]['error'] == 'missing_required_comment'
        assert by_token['bogus']['error'] == 'not_found'
        assert get_subject(b.id).status == 'notified'


@pytest.mark.validation
class TestOutcomeEmail:

    def test_notify_sends_outcome(self, subject, transport):
        record_decision(subject.id, 'rejected', 'reviewer', comments='Not applicable', notify=True)
        assert transport.sent[-1]['template_id'] == 'validation_outcome'
        assert transport.sent[-1]['recipient'] == 'owner@example.com'
        assert transport.sent[-1]['token'] is None

    def test_missing_email_only_noted(self, make_subject, transport):
        s = make_subject('control', responsible_email=None)
        record_decision(s.id, 'validated', 'reviewer', notify=True)

        assert get_subject(s.id).status == 'validated'
        notes = get_notes(s.id)
        assert [n.kind for n in notes] == ['delivery_warning']
        assert transport.sent == []


@pytest.mark.validation
class TestReopen:

    def test_reopen_validated_subject(self, subject, transport):
        record_decision(subject.id, 'validated', 'reviewer')
        entry = reopen_subject(subject.id, 'admin', 'Control redesigned')

        assert entry['action'] == 'reopen'
        assert entry['previous_status'] == 'validated'
        s = get_subject(subject.id)
        assert s.status == 'pending_validation'
        assert s.validated_by is None
        assert s.validation_comments is None
        assert [h.new_status for h in get_history(subject.id)] == ['validated', 'pending_validation']

        # Normal flow resumes after re-open
        send_notification(subject.id, 'owner@example.com')
        assert get_subject(subject.id).status == 'notified'

    def test_reopen_requires_reason(self, subject):
        record_decision(subject.id, 'validated', 'reviewer')
        with pytest.raises(MissingRequiredComment):
            reopen_subject(subject.id, 'admin', '  ')

    @pytest.mark.parametrize('setup', ['pending', 'notified'])
    def test_reopen_open_subject_is_illegal(self, subject, transport, setup):
        if setup == 'notified':
            send_notification(subject.id, 'owner@example.com')
        with pytest.raises(InvalidTransition):
            reopen_subject(subject.id, 'admin', 'why not')
        assert get_subject(subject.id).status == ('notified' if setup == 'notified' else 'pending_validation')

    def test_reopen_observed_subject(self, subject, transport):
        token = send_notification(subject.id, 'owner@example.com')['token']
        submit_token_decision(token, 'observed', comments='partial evidence')

        reopen_subject(subject.id, 'admin', 'restart review')
        assert get_subject(subject.id).status == 'pending_validation'
        assert get_active_token(subject.id) is None
        assert [h.action for h in get_history(subject.id)] == ['notify', 'decide', 'reopen']


@pytest.mark.concurrency
class TestConcurrency:

    def test_stale_expected_version(self, subject):
        version = subject.version
        record_decision(subject.id, 'observed', 'first', comments='needs work', expected_version=version)
        with pytest.raises(ConcurrentModification) as exc:
            record_decision(subject.id, 'validated', 'second', expected_version=version)
        assert exc.value.retryable is True
        s = get_subject(subject.id)
        assert s.status == 'observed'
        assert s.validated_by == 'first'

    def test_guarded_subject_rejects_second_writer(self, subject):
        with subject_guard(subject.id):
            assert is_guarded(subject.id)
            with pytest.raises(ConcurrentModification):
                record_decision(subject.id, 'validated', 'loser')
        assert not is_guarded(subject.id)
        assert get_subject(subject.id).status == 'pending_validation'

        record_decision(subject.id, 'rejected', 'winner', comments='duplicate control')
        assert get_subject(subject.id).status == 'rejected'
        assert [h.actor for h in get_history(subject.id)] == ['winner']

    def test_lost_version_race_at_flush(self, subject):
        subject_id = subject.id
        real_consume = decisions.consume_active_token

        def bump_then_consume(sid, now=None):
            # Another process commits a change after this writer re-read the row.
            db.session.execute(
                db.text('UPDATE validation_subjects SET version = version + 1 WHERE id = :id'),
                {'id': sid},
            )
            return real_consume(sid, now=now)

        with patch('core.validation.decisions.consume_active_token', side_effect=bump_then_consume):
            with pytest.raises(ConcurrentModification):
                record_decision(subject_id, 'validated', 'stale-writer')

        db.session.expire_all()
        assert get_subject(subject_id).status == 'pending_validation'
        assert get_history(subject_id) == []
        assert not is_guarded(subject_id)

    def test_subject_is_reread_under_the_guard(self, subject):
        subject_id = subject.id
        assert subject.status == 'pending_validation'
        # Another process closes the subject; this session still holds the old row.
        with db.engine.begin() as conn:
            conn.execute(
                db.text("UPDATE validation_subjects SET status = 'validated', "
                        "validated_by = 'elsewhere', version = version + 1 WHERE id = :id"),
                {'id': subject_id},
            )

        with pytest.raises(AlreadyTerminal):
            record_decision(subject_id, 'rejected', 'late-writer', comments='duplicate')
        assert get_subject(subject_id).validated_by == 'elsewhere'
        assert get_history(subject_id) == []

    def test_guard_registry_is_emptied(self, make_subject, transport):
        subjects = [make_subject('control') for _ in range(5)]
        for s in subjects:
            send_notification(s.id, 'owner@example.com')
            record_decision(s.id, 'validated', 'reviewer')
        with subject_guard(subjects[0].id):
            with pytest.raises(ConcurrentModification):
                record_decision(subjects[0].id, 'validated', 'loser')
            assert guard_count() == 1
        assert guard_count() == 0

    def test_failed_decision_leaves_no_partial_state(self, subject, transport):
        send_notification(subject.id, 'owner@example.com')
        with subject_guard(subject.id):
            with pytest.raises(ConcurrentModification):
                record_decision(subject.id, 'validated', 'loser')
        assert get_active_token(subject.id) is not None
        assert [h.action for h in get_history(subject.id)] == ['notify']


@pytest.mark.concurrency
class TestSimultaneousWriters:
    """Two threads released together against the same subject, many times over."""

    ROUNDS = 15
    # Time the winner spends inside its guard; the other thread arrives well within it.
    HOLD_SECONDS = 0.2

    def _race(self, app, calls):
        barrier = threading.Barrier(len(calls))
        outcomes = {}

        def run(name, fn):
            with app.app_context():
                try:
                    barrier.wait(timeout=10)
                    fn()
                    outcomes[name] = 'ok'
                except ConcurrentModification:
                    outcomes[name] = 'conflict'
                except Exception as e:
                    outcomes[name] = type(e).__name__
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=run, args=(name, fn)) for name, fn in calls.items()]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)
        return outcomes

    def _slow_history(self):
        real_log = decisions.log_decision

        def slow_log(*args, **kwargs):
            time.sleep(self.HOLD_SECONDS)
            return real_log(*args, **kwargs)

        return patch('core.validation.decisions.log_decision', side_effect=slow_log)

    def test_exactly_one_direct_decision_wins(self, app, make_subject, transport):
        with self._slow_history():
            for _ in range(self.ROUNDS):
                s = make_subject('control')
                send_notification(s.id, 'owner@example.com')
                subject_id = s.id

                outcomes = self._race(app, {
                    'observed': lambda: record_decision(subject_id, 'observed', 'observed-writer',
                                                        comments='needs an owner'),
                    'rejected': lambda: record_decision(subject_id, 'rejected', 'rejected-writer',
                                                        comments='duplicate control'),
                })

                assert sorted(outcomes.values()) == ['conflict', 'ok'], outcomes
                winner = next(name for name, outcome in outcomes.items() if outcome == 'ok')

                db.session.expire_all()
                final = get_subject(subject_id)
                assert final.status == winner
                assert final.validated_by == f'{winner}-writer'
                decides = [h for h in get_history(subject_id) if h.action == 'decide']
                assert [h.new_status for h in decides] == [winner]
                assert guard_count() == 0

    def test_exactly_one_token_submission_wins(self, app, make_subject, transport):
        with self._slow_history():
            for _ in range(self.ROUNDS // 3):
                s = make_subject('action_plan')
                token = send_notification(s.id, 'owner@example.com')['token']
                subject_id = s.id

                outcomes = self._race(app, {
                    'validated': lambda: submit_token_decision(token, 'validated'),
                    'observed': lambda: submit_token_decision(token, 'observed', 'missing dates'),
                })

                assert sorted(outcomes.values()) == ['conflict', 'ok'], outcomes
                winner = next(name for name, outcome in outcomes.items() if outcome == 'ok')

                db.session.expire_all()
                assert get_subject(subject_id).status == winner
                with pytest.raises(TokenAlreadyConsumed):
                    verify_token(token)
