"""
Database models for the validation workflow engine
"""
from datetime import datetime
from flask_sqlalchemy import SQLAlchemy
import secrets

db = SQLAlchemy()


class ValidationSubject(db.Model):
    """Current approval status of one reviewable item (risk-process link, control, action plan)"""
    __tablename__ = 'validation_subjects'

    VALID_ENTITY_TYPES = ('risk_process_link', 'control', 'action_plan')
    VALID_STATUSES = ('pending_validation', 'notified', 'validated', 'observed', 'rejected')

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(30), nullable=False, index=True)
    entity_id = db.Column(db.String(64), nullable=False)

    status = db.Column(db.String(30), nullable=False, default='pending_validation', index=True)
    notified_at = db.Column(db.DateTime)
    validated_at = db.Column(db.DateTime)
    validated_by = db.Column(db.String(255))
    validation_comments = db.Column(db.Text)

    # Responsible party (owner of the process the item belongs to)
    responsible_user_id = db.Column(db.String(64), nullable=False, index=True)
    responsible_email = db.Column(db.String(255))

    # Re-sends since the last notify; lives here so token sweeps cannot reset it
    resend_count = db.Column(db.Integer, default=0, nullable=False)

    # Denormalized routing info (macroproceso / proceso / subproceso, risk_id ...), filtering only
    process_context = db.Column(db.JSON, default=dict)

    # Optimistic concurrency counter, managed by the mapper
    version = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    decisions = db.relationship(
        'ValidationDecision', backref='subject', lazy='dynamic',
        order_by='ValidationDecision.timestamp',
    )
    tokens = db.relationship('NotificationToken', backref='subject', lazy='dynamic')

    __table_args__ = (
        db.UniqueConstraint('entity_type', 'entity_id', name='_validation_subject_entity_uc'),
        db.Index('ix_validation_subject_type_status', 'entity_type', 'status'),
    )
    __mapper_args__ = {'version_id_col': version}

    def __repr__(self):
        return f'<ValidationSubject {self.entity_type}:{self.entity_id} {self.status}>'

    def to_dict(self):
        return {
            'id': self.id,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'status': self.status,
            'notified_at': self.notified_at.isoformat() if self.notified_at else None,
            'validated_at': self.validated_at.isoformat() if self.validated_at else None,
            'validated_by': self.validated_by,
            'validation_comments': self.validation_comments,
            'responsible_user_id': self.responsible_user_id,
            'responsible_email': self.responsible_email,
            'resend_count': self.resend_count,
            'process_context': self.process_context or {},
            'version': self.version,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }


class ValidationDecision(db.Model):
    """Append-only history row: one per status-changing operation on a subject"""
    __tablename__ = 'validation_decisions'

    VALID_ACTIONS = ('notify', 'resend', 'decide', 'reopen')

    id = db.Column(db.Integer, primary_key=True)
    subject_id = db.Column(db.Integer, db.ForeignKey('validation_subjects.id'), nullable=False)
    action = db.Column(db.String(20), nullable=False)
    previous_status = db.Column(db.String(30), nullable=False)
    new_status = db.Column(db.String(30), nullable=False)
    actor = db.Column(db.String(255), nullable=False)
    comments = db.Column(db.Text)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    notification_consumed = db.Column(db.Boolean, default=False, nullable=False)
    # No FK: swept tokens must not take history rows with them
    consumed_token_id = db.Column(db.Integer)

    __table_args__ = (
        db.Index('ix_validation_decision_subject_ts', 'subject_id', 'timestamp'),
    )

    def __repr__(self):
        return f'<ValidationDecision {self.subject_id} {self.previous_status}->{self.new_status}>'

    def to_dict(self):
        return {
            'id': self.id,
            'subject_id': self.subject_id,
            'action': self.action,
            'previous_status': self.previous_status,
            'new_status': self.new_status,
            'actor': self.actor,
            'comments': self.comments,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
            'notification_consumed': self.notification_consumed,
        }


class NotificationToken(db.Model):
    """Single-use, time-limited token letting an external responsible submit a decision"""
    __tablename__ = 'validation_tokens'

    id = db.Column(db.Integer, primary_key=True)
    subject_id = db.Column(db.Integer, db.ForeignKey('validation_subjects.id'), nullable=False, index=True)
    token = db.Column(db.String(255), unique=True, nullable=False, index=True)
    recipient_email = db.Column(db.String(255), nullable=False)
    issued_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)
    consumed_at = db.Column(db.DateTime)
    invalidated_at = db.Column(db.DateTime)  # Set when a newer token supersedes this one
    resend_count = db.Column(db.Integer, default=0, nullable=False)

    def __repr__(self):
        return f'<NotificationToken {self.token[:8]}... subject={self.subject_id}>'

    @staticmethod
    def generate_token():
        """Generate a secure random token"""
        return secrets.token_urlsafe(32)

    def is_active(self, now=None):
        """Unconsumed, not superseded and not expired"""
        now = now or datetime.utcnow()
        if self.consumed_at is not None:
            return False
        if self.invalidated_at is not None:
            return False
        return now <= self.expires_at

    def to_dict(self):
        return {
            'id': self.id,
            'subject_id': self.subject_id,
            'recipient_email': self.recipient_email,
            'issued_at': self.issued_at.isoformat() if self.issued_at else None,
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
            'consumed_at': self.consumed_at.isoformat() if self.consumed_at else None,
            'invalidated_at': self.invalidated_at.isoformat() if self.invalidated_at else None,
            'resend_count': self.resend_count,
        }


class BatchValidationToken(db.Model):
    """One e-mailed link covering several subjects of one entity type for one responsible"""
    __tablename__ = 'validation_batch_tokens'

    id = db.Column(db.Integer, primary_key=True)
    token = db.Column(db.String(255), unique=True, nullable=False, index=True)
    entity_type = db.Column(db.String(30), nullable=False)
    subject_ids = db.Column(db.JSON, nullable=False)
    recipient_email = db.Column(db.String(255), nullable=False)
    issued_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)
    consumed_at = db.Column(db.DateTime)
    general_comments = db.Column(db.Text)

    def __repr__(self):
        return f'<BatchValidationToken {self.token[:8]}... {self.entity_type} x{len(self.subject_ids or [])}>'

    @staticmethod
    def generate_token():
        return secrets.token_urlsafe(32)

    @property
    def is_used(self):
        return self.consumed_at is not None

    def to_dict(self):
        return {
            'id': self.id,
            'entity_type': self.entity_type,
            'subject_ids': list(self.subject_ids or []),
            'recipient_email': self.recipient_email,
            'issued_at': self.issued_at.isoformat() if self.issued_at else None,
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
            'consumed_at': self.consumed_at.isoformat() if self.consumed_at else None,
            'is_used': self.is_used,
        }


class ValidationNote(db.Model):
    """Non-fatal note attached to a subject's history (never changes status)"""
    __tablename__ = 'validation_notes'

    VALID_KINDS = ('delivery_failure', 'delivery_warning')

    id = db.Column(db.Integer, primary_key=True)
    subject_id = db.Column(db.Integer, db.ForeignKey('validation_subjects.id'), nullable=False, index=True)
    kind = db.Column(db.String(30), nullable=False)
    message = db.Column(db.Text, nullable=False)
    details = db.Column(db.JSON)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'subject_id': self.subject_id,
            'kind': self.kind,
            'message': self.message,
            'details': self.details or {},
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class EmailDelivery(db.Model):
    """Outbox row for one e-mail handed to the transport, with bounded retry"""
    __tablename__ = 'validation_email_deliveries'

    VALID_STATUSES = ('pending', 'sent', 'failed')

    id = db.Column(db.Integer, primary_key=True)
    subject_id = db.Column(db.Integer, db.ForeignKey('validation_subjects.id'), nullable=False, index=True)
    token_id = db.Column(db.Integer)  # None for outcome e-mails
    batch_token_id = db.Column(db.Integer)  # Set for batch validation e-mails
    recipient = db.Column(db.String(255), nullable=False)
    template_id = db.Column(db.String(100), nullable=False)
    status = db.Column(db.String(20), nullable=False, default='pending')
    attempts = db.Column(db.Integer, nullable=False, default=0)
    max_attempts = db.Column(db.Integer, nullable=False, default=3)
    next_attempt_at = db.Column(db.DateTime, default=datetime.utcnow)
    last_error = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    sent_at = db.Column(db.DateTime)

    __table_args__ = (
        db.Index('ix_validation_delivery_status_next', 'status', 'next_attempt_at'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'subject_id': self.subject_id,
            'recipient': self.recipient,
            'batch_token_id': self.batch_token_id,
            'template_id': self.template_id,
            'status': self.status,
            'attempts': self.attempts,
            'max_attempts': self.max_attempts,
            'last_error': self.last_error,
            'sent_at': self.sent_at.isoformat() if self.sent_at else None,
        }


class ValidationCountSnapshot(db.Model):
    """Cached per-status counters for one entity type (dashboard summary cards)"""
    __tablename__ = 'validation_count_snapshots'

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(30), unique=True, nullable=False)
    notified = db.Column(db.Integer, default=0, nullable=False)
    not_notified = db.Column(db.Integer, default=0, nullable=False)
    validated = db.Column(db.Integer, default=0, nullable=False)
    observed = db.Column(db.Integer, default=0, nullable=False)
    rejected = db.Column(db.Integer, default=0, nullable=False)
    total = db.Column(db.Integer, default=0, nullable=False)
    computed_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self):
        return {
            'entity_type': self.entity_type,
            'notified': self.notified,
            'not_notified': self.not_notified,
            'validated': self.validated,
            'observed': self.observed,
            'rejected': self.rejected,
            'total': self.total,
            'computed_at': self.computed_at.isoformat() if self.computed_at else None,
        }
