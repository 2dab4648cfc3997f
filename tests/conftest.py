"""
Pytest configuration and shared fixtures for validation engine tests
"""
import pytest
import itertools
import os
import sys
import tempfile
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

# Set test environment before importing app
os.environ['FLASK_ENV'] = 'testing'
os.environ['TESTING'] = 'true'
os.environ.pop('SENDGRID_API_KEY', None)
os.environ.pop('SLACK_WEBHOOK_URL', None)


@pytest.fixture(scope='session')
def app():
    """Create and configure a test Flask application instance"""
    # Create a temporary database for testing (engine is bound at init_app time)
    db_fd, db_path = tempfile.mkstemp(suffix='.db')
    os.environ['DATABASE_URL'] = f'sqlite:///{db_path}'

    from server import app as flask_app
    from models import db

    flask_app.config.update({
        'TESTING': True,
        'SECRET_KEY': 'test-secret-key',
    })

    # Create tables inside a persistent app context
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()

    # Close and remove temporary database
    os.close(db_fd)
    os.unlink(db_path)


@pytest.fixture(autouse=True)
def _clean_db(app, monkeypatch):
    """Clean up data and engine-level state between tests."""
    from models import db
    from core.validation import constants, counts, delivery, subjects
    # Sends happen on the calling thread unless a test opts into another mode
    monkeypatch.setattr(constants, 'DELIVERY_MODE', 'inline')
    yield
    delivery.wait_for_background_deliveries(timeout=10)
    db.session.rollback()
    for table in reversed(db.metadata.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()
    db.session.remove()

    with counts._dirty_lock:
        counts._dirty.clear()
    delivery.set_email_transport(None)
    subjects.set_filter_resolver(None)


@pytest.fixture(scope='function')
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


class RecordingTransport:
    """E-mail transport double: records every send, fails the first fail_times calls."""

    def __init__(self, fail_times=0):
        self.fail_times = fail_times
        self.calls = 0
        self.sent = []

    def send(self, recipient, template_id, token=None, context=None):
        self.calls += 1
        if self.calls <= self.fail_times:
            raise RuntimeError('mail relay unavailable')
        self.sent.append({
            'recipient': recipient,
            'template_id': template_id,
            'token': token,
            'context': context or {},
        })


@pytest.fixture
def transport(app):
    """Install a recording e-mail transport that always succeeds"""
    from core.validation.delivery import set_email_transport

    fake = RecordingTransport()
    set_email_transport(fake)
    return fake


@pytest.fixture
def failing_transport(app):
    """Install a recording e-mail transport that fails every call"""
    from core.validation.delivery import set_email_transport

    fake = RecordingTransport(fail_times=10 ** 6)
    set_email_transport(fake)
    return fake


_entity_ids = itertools.count(1)


@pytest.fixture
def make_subject(app):
    """Factory for registered validation subjects"""
    from core.validation.subjects import register_subject

    def _make(entity_type='control', entity_id=None, responsible_user_id='owner-1',
              responsible_email='owner@example.com', process_context=None):
        if entity_id is None:
            entity_id = f'{entity_type}-{next(_entity_ids)}'
        return register_subject(
            entity_type, entity_id, responsible_user_id,
            responsible_email=responsible_email,
            process_context=process_context,
        )

    return _make


@pytest.fixture
def subject(make_subject):
    """A pending control with a responsible e-mail"""
    return make_subject('control')
