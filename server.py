#!/usr/bin/env python3
"""
Validation Engine Server
Flask application hosting the validation workflow engine (core.validation)
"""

from flask import Flask, jsonify
import logging
import os
from pathlib import Path
from datetime import datetime
import secrets

logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)

app = Flask(__name__)

# Secret key for sessions (generate a secure one for production)
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', secrets.token_hex(32))

# Database configuration
database_url = os.environ.get('DATABASE_URL', f'sqlite:///{Path(__file__).parent}/validation.db')

# Fix Heroku/Vercel's postgres:// scheme (should be postgresql://)
if database_url and database_url.startswith('postgres://'):
    database_url = database_url.replace('postgres://', 'postgresql://', 1)

app.config['SQLALCHEMY_DATABASE_URI'] = database_url
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

# PostgreSQL-specific connection pool settings
if database_url and database_url.startswith('postgresql://'):
    app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {
        'pool_size': 5,
        'max_overflow': 10,
        'pool_recycle': 300,  # Recycle connections after 5 minutes
        'pool_pre_ping': True,
        'pool_timeout': 30,
    }
else:
    # SQLite settings (for local dev)
    app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {
        'pool_pre_ping': True
    }

# Import and initialize database
from models import db
db.init_app(app)

# Registers the count aggregator's invalidation listener
import core.validation  # noqa: E402,F401


@app.route('/api/health', methods=['GET'])
def health_check():
    """Health check endpoint to verify database connection"""
    try:
        db.session.execute(db.text('SELECT 1'))
        db.session.commit()
        return jsonify({
            'status': 'healthy',
            'database': 'connected',
            'timestamp': datetime.utcnow().isoformat()
        })
    except Exception as e:
        db.session.rollback()
        return jsonify({
            'status': 'unhealthy',
            'database': 'disconnected',
            'error': str(e),
            'timestamp': datetime.utcnow().isoformat()
        }), 503


if __name__ == '__main__':
    app.run(host='0.0.0.0', port=int(os.environ.get('PORT', 5000)), debug=False)
