#!/usr/bin/env python3
"""
Flask Dashboard - Operator view over the cadence data layer

Read-by-id access to users, phrases, cadences and classifiers for the
external session/auth layer, plus the consistency check and repair.
"""

import os
import sys
import logging
from typing import Dict, Optional

from flask import Flask, jsonify

# Add parent directory to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from cadence.config import CadenceConfig
from cadence.database import CadenceDatabase
from cadence.enrollment import EnrollmentTracker
from cadence.errors import ConstraintViolation, StoreUnavailable
from cadence.logging_config import setup_logging

logger = logging.getLogger(__name__)

# Fields never sent over the wire
HIDDEN_FIELDS = {
    'users': ('password',),
    'classifiers': ('model',),
}


def _public(collection: str, doc: Dict) -> Dict:
    """Make a stored document JSON friendly"""
    result = {}
    for key, value in doc.items():
        if key in HIDDEN_FIELDS.get(collection, ()):
            continue
        result[key] = sorted(value) if isinstance(value, set) else value
    return result


def create_app(config: Optional[CadenceConfig] = None,
               db: Optional[CadenceDatabase] = None) -> Flask:
    """Build the dashboard app around one configuration and one store"""
    config = config or CadenceConfig.from_env()
    db = db or CadenceDatabase.from_config(config)
    tracker = EnrollmentTracker(db, config)

    app = Flask(__name__)
    app.config['CADENCE'] = config
    app.config['DEBUG'] = config.is_development

    @app.errorhandler(StoreUnavailable)
    def handle_store_unavailable(e):
        logger.error(f"Store unavailable: {e}")
        return jsonify({'error': 'store unavailable'}), 503

    @app.errorhandler(ConstraintViolation)
    def handle_constraint_violation(e):
        return jsonify({'error': str(e)}), 409

    def _get(collection: str, doc_id: str):
        doc = db.get_by_id(collection, doc_id)
        if doc is None:
            return jsonify({'error': f'{collection[:-1]} not found'}), 404
        return jsonify(_public(collection, doc))

    @app.route('/api/users/<doc_id>')
    def get_user(doc_id):
        """Get a user by id"""
        return _get('users', doc_id)

    @app.route('/api/phrases/<doc_id>')
    def get_phrase(doc_id):
        """Get a phrase by id"""
        return _get('phrases', doc_id)

    @app.route('/api/cadences/<doc_id>')
    def get_cadence(doc_id):
        """Get a cadence by id"""
        return _get('cadences', doc_id)

    @app.route('/api/classifiers/<doc_id>')
    def get_classifier(doc_id):
        """Get a classifier's metadata and statistics by id"""
        return _get('classifiers', doc_id)

    @app.route('/api/consistency')
    def get_consistency():
        """Report participant count drift and orphaned cadences"""
        return jsonify(tracker.check_consistency().to_dict())

    @app.route('/api/consistency/reconcile', methods=['POST'])
    def reconcile():
        """Repair drift and return what was repaired"""
        report = tracker.reconcile()
        logger.info(f"Reconcile requested, {len(report.drifts)} drifts repaired")
        return jsonify(report.to_dict())

    return app


if __name__ == '__main__':
    setup_logging()
    config = CadenceConfig.from_env()
    app = create_app(config)

    app.run(
        host=os.getenv('DASHBOARD_HOST', '0.0.0.0'),
        port=config.port,
        debug=config.is_development
    )
