"""
Initialize the database with the validation engine tables (local development)
"""
import logging

from server import app
from models import db, ValidationCountSnapshot
from core.validation.constants import VALID_ENTITY_TYPES
from core.validation.counts import recompute

logger = logging.getLogger(__name__)


def init_database():
    """Create all database tables and seed empty count snapshots"""
    with app.app_context():
        db.create_all()
        logger.info('database tables created')

        if ValidationCountSnapshot.query.first() is None:
            for entity_type in VALID_ENTITY_TYPES:
                recompute(entity_type)
            logger.info('seeded count snapshots for %s', ', '.join(VALID_ENTITY_TYPES))
        else:
            logger.info('count snapshots already exist, skipping seed')


if __name__ == '__main__':
    init_database()
