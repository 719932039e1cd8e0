"""
Meal Card Service — Flask application
Scan ingestion (RFID mailbox), meal verification and attendance reports.
"""

import logging
import os
from datetime import datetime, timezone

from dotenv import load_dotenv
from flasgger import Swagger
from flask import Flask, jsonify
from sqlalchemy import text

from mealcard.errors import LedgerIntegrityError
from mealcard.extensions import db
from mealcard.models import DenialEntry, VerificationAttempt, VerificationRecord  # Register models
from mealcard.rfid import SerialTokenReader, TokenMailbox
from mealcard.services.scan_payload import parse_meal_schedule
from mealcard.services.verification_service import config_flag, engine_from_config

load_dotenv()

logger = logging.getLogger(__name__)


def _database_uri():
    if os.environ.get('DATABASE_URL'):
        return os.environ['DATABASE_URL']

    db_user = os.environ.get('DB_USER', 'meal_svc_user')
    db_pass = os.environ.get('DB_PASS', 'password')
    db_host = os.environ.get('DB_HOST', 'meals-db')
    db_name = os.environ.get('DB_NAME', 'meals_db')
    return f"postgresql://{db_user}:{db_pass}@{db_host}/{db_name}"


def _engine_options(uri, timeout):
    # Bound connect / statement / row-lock waits so verification fails closed
    if uri.startswith('postgresql'):
        millis = int(timeout * 1000)
        return {
            'pool_timeout': timeout,
            'pool_pre_ping': True,
            'connect_args': {
                'connect_timeout': max(1, int(timeout)),
                'options': f"-c statement_timeout={millis} -c lock_timeout={millis}",
            },
        }
    if uri.startswith('sqlite'):
        return {'connect_args': {'timeout': timeout}}
    return {'pool_timeout': timeout}


def create_app(test_config=None):
    app = Flask(__name__)

    # Configuration
    app.config['SQLALCHEMY_DATABASE_URI'] = _database_uri()
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['CAMPUS_TIMEZONE'] = os.environ.get('CAMPUS_TIMEZONE', 'UTC')
    app.config['REPLAY_WINDOW_MINUTES'] = float(os.environ.get('REPLAY_WINDOW_MINUTES', 10))
    app.config['REPLAY_REVOKES_GRANT'] = config_flag(os.environ.get('REPLAY_REVOKES_GRANT', 'true'))
    app.config['VERIFICATION_TIMEOUT'] = float(os.environ.get('VERIFICATION_TIMEOUT', 5))
    app.config['DENIAL_SERVICE_URL'] = os.environ.get('DENIAL_SERVICE_URL')
    app.config['MEAL_SCHEDULE'] = parse_meal_schedule(os.environ.get('MEAL_SCHEDULE'))
    app.config['RFID_SERIAL_PORT'] = os.environ.get('RFID_SERIAL_PORT')
    app.config['RFID_BAUDRATE'] = int(os.environ.get('RFID_BAUDRATE', 9600))
    app.config['RFID_FRAME_PREFIX'] = os.environ.get('RFID_FRAME_PREFIX', 'UID:')
    app.config['RFID_RECONNECT_DELAY'] = float(os.environ.get('RFID_RECONNECT_DELAY', 2))
    app.config['LOG_LEVEL'] = os.environ.get('LOG_LEVEL', 'INFO')

    if test_config:
        app.config.update(test_config)

    app.config.setdefault(
        'SQLALCHEMY_ENGINE_OPTIONS',
        _engine_options(app.config['SQLALCHEMY_DATABASE_URI'], app.config['VERIFICATION_TIMEOUT']),
    )

    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    )

    # Initialize Extensions
    db.init_app(app)
    Swagger(app)

    app.extensions['verification_engine'] = engine_from_config(app.config)
    mailbox = TokenMailbox(prefix=app.config['RFID_FRAME_PREFIX'])
    app.extensions['token_mailbox'] = mailbox

    # Register Blueprints
    from mealcard.routes.verification import verification_bp
    app.register_blueprint(verification_bp, url_prefix='/api')

    from mealcard.routes.reports import reports_bp
    app.register_blueprint(reports_bp, url_prefix='/api')

    from mealcard.routes.rfid import rfid_bp
    app.register_blueprint(rfid_bp, url_prefix='/rfid')

    @app.errorhandler(LedgerIntegrityError)
    def ledger_integrity_error(e):
        logger.error("Ledger integrity error: %s", e)
        return jsonify({'error': 'Ledger integrity error', 'details': str(e)}), 500

    @app.route('/health')
    def health():
        try:
            db.session.execute(text('SELECT 1'))
            return jsonify({
                'service': 'meal-card-service',
                'status': 'healthy',
                'timestamp': datetime.now(timezone.utc).isoformat(),
                'checks': {'rfid_reader': mailbox.status()},
            }), 200
        except Exception as e:
            return jsonify({'service': 'meal-card-service', 'status': 'unhealthy', 'error': str(e)}), 503

    if app.config['RFID_SERIAL_PORT'] and not app.config.get('TESTING'):
        reader = SerialTokenReader(
            mailbox,
            app.config['RFID_SERIAL_PORT'],
            baudrate=app.config['RFID_BAUDRATE'],
            reconnect_delay=app.config['RFID_RECONNECT_DELAY'],
        )
        reader.start()
        app.extensions['rfid_reader'] = reader

    return app


if __name__ == '__main__':
    app = create_app()
    with app.app_context():
        db.create_all()
    app.run(host='0.0.0.0', port=int(os.environ.get('PORT', 5000)))
