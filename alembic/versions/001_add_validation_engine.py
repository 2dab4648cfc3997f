"""Add validation engine tables: subjects, decisions, tokens, batch tokens, notes, deliveries, count snapshots.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'validation_subjects',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('entity_type', sa.String(30), nullable=False),
        sa.Column('entity_id', sa.String(64), nullable=False),
        sa.Column('status', sa.String(30), nullable=False, server_default='pending_validation'),
        sa.Column('notified_at', sa.DateTime(), nullable=True),
        sa.Column('validated_at', sa.DateTime(), nullable=True),
        sa.Column('validated_by', sa.String(255), nullable=True),
        sa.Column('validation_comments', sa.Text(), nullable=True),
        sa.Column('responsible_user_id', sa.String(64), nullable=False),
        sa.Column('responsible_email', sa.String(255), nullable=True),
        sa.Column('resend_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('process_context', sa.JSON(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('entity_type', 'entity_id', name='_validation_subject_entity_uc'),
    )
    op.create_index('ix_validation_subjects_entity_type', 'validation_subjects', ['entity_type'])
    op.create_index('ix_validation_subjects_status', 'validation_subjects', ['status'])
    op.create_index('ix_validation_subjects_responsible_user_id', 'validation_subjects', ['responsible_user_id'])
    op.create_index('ix_validation_subject_type_status', 'validation_subjects', ['entity_type', 'status'])

    op.create_table(
        'validation_decisions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('subject_id', sa.Integer(), sa.ForeignKey('validation_subjects.id'), nullable=False),
        sa.Column('action', sa.String(20), nullable=False),
        sa.Column('previous_status', sa.String(30), nullable=False),
        sa.Column('new_status', sa.String(30), nullable=False),
        sa.Column('actor', sa.String(255), nullable=False),
        sa.Column('comments', sa.Text(), nullable=True),
        sa.Column('timestamp', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('notification_consumed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('consumed_token_id', sa.Integer(), nullable=True),
    )
    op.create_index('ix_validation_decision_subject_ts', 'validation_decisions', ['subject_id', 'timestamp'])

    op.create_table(
        'validation_tokens',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('subject_id', sa.Integer(), sa.ForeignKey('validation_subjects.id'), nullable=False),
        sa.Column('token', sa.String(255), nullable=False),
        sa.Column('recipient_email', sa.String(255), nullable=False),
        sa.Column('issued_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('consumed_at', sa.DateTime(), nullable=True),
        sa.Column('invalidated_at', sa.DateTime(), nullable=True),
        sa.Column('resend_count', sa.Integer(), nullable=False, server_default='0'),
    )
    op.create_index('ix_validation_tokens_token', 'validation_tokens', ['token'], unique=True)
    op.create_index('ix_validation_tokens_subject_id', 'validation_tokens', ['subject_id'])
    op.create_index('ix_validation_tokens_expires_at', 'validation_tokens', ['expires_at'])

    op.create_table(
        'validation_batch_tokens',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('token', sa.String(255), nullable=False),
        sa.Column('entity_type', sa.String(30), nullable=False),
        sa.Column('subject_ids', sa.JSON(), nullable=False),
        sa.Column('recipient_email', sa.String(255), nullable=False),
        sa.Column('issued_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('consumed_at', sa.DateTime(), nullable=True),
        sa.Column('general_comments', sa.Text(), nullable=True),
    )
    op.create_index('ix_validation_batch_tokens_token', 'validation_batch_tokens', ['token'], unique=True)
    op.create_index('ix_validation_batch_tokens_expires_at', 'validation_batch_tokens', ['expires_at'])

    op.create_table(
        'validation_notes',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('subject_id', sa.Integer(), sa.ForeignKey('validation_subjects.id'), nullable=False),
        sa.Column('kind', sa.String(30), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_validation_notes_subject_id', 'validation_notes', ['subject_id'])

    op.create_table(
        'validation_email_deliveries',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('subject_id', sa.Integer(), sa.ForeignKey('validation_subjects.id'), nullable=False),
        sa.Column('token_id', sa.Integer(), nullable=True),
        sa.Column('batch_token_id', sa.Integer(), nullable=True),
        sa.Column('recipient', sa.String(255), nullable=False),
        sa.Column('template_id', sa.String(100), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('next_attempt_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_validation_email_deliveries_subject_id', 'validation_email_deliveries', ['subject_id'])
    op.create_index('ix_validation_delivery_status_next', 'validation_email_deliveries', ['status', 'next_attempt_at'])

    op.create_table(
        'validation_count_snapshots',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('entity_type', sa.String(30), nullable=False, unique=True),
        sa.Column('notified', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('not_notified', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('validated', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('observed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('rejected', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('computed_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )


def downgrade():
    op.drop_table('validation_count_snapshots')
    op.drop_table('validation_email_deliveries')
    op.drop_table('validation_notes')
    op.drop_table('validation_batch_tokens')
    op.drop_table('validation_tokens')
    op.drop_table('validation_decisions')
    op.drop_table('validation_subjects')
