"""Flask application entry point"""
from datetime import timedelta
import logging
import os
import secrets

from dotenv import load_dotenv
from flask import Flask, jsonify
from flask_cors import CORS
from pymongo.errors import PyMongoError
from werkzeug.exceptions import HTTPException

from carbon_exchange.errors import ServiceError
from carbon_exchange.routes import (
    auth_routes,
    certificate_routes,
    credit_routes,
    dashboard_routes,
    insights_routes,
    onboarding_routes,
    project_routes,
    purchase_routes,
    transaction_routes
)
from carbon_exchange.seed import seed_command
from carbon_exchange.services.mongodb_service import ensure_indexes

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ServiceError)
    def handle_service_error(e):
        return jsonify({'error': str(e)}), e.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return jsonify({'error': e.description}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        logger.exception("Unhandled error: %s", e)
        return jsonify({'error': 'Internal server error'}), 500


def load_secret_key(config_name) -> str:
    secret_key = os.getenv('SECRET_KEY')
    if secret_key:
        return secret_key
    if config_name != 'testing':
        # Sessions will not survive a restart or span workers
        logger.warning("SECRET_KEY is not set, using a random key for this process")
    return secrets.token_hex(32)


def create_app(config_name=None):
    """Create and configure the Flask application."""
    app = Flask(__name__)

    origins = [o.strip() for o in os.getenv('CORS_ORIGINS', '*').split(',') if o.strip()]
    CORS(app, supports_credentials=True, origins=origins)

    configure_logging(os.getenv('LOG_LEVEL', 'INFO'))

    session_ttl_hours = int(os.getenv('SESSION_TTL_HOURS', 168))
    app.config.update({
        'SECRET_KEY': load_secret_key(config_name),
        'MONGODB_URI': os.getenv('MONGODB_URI'),
        'MONGODB_DB': os.getenv('MONGODB_DB', 'carbon_exchange'),
        'XRPL_NODE_URL': os.getenv('XRPL_NODE_URL'),
        'PUBLIC_BASE_URL': os.getenv('PUBLIC_BASE_URL'),
        'SESSION_TTL_HOURS': session_ttl_hours,
        'PERMANENT_SESSION_LIFETIME': timedelta(hours=session_ttl_hours),
        'SESSION_COOKIE_HTTPONLY': True,
        'SESSION_COOKIE_SAMESITE': 'Lax',
        'PLATFORM_FEE_RATE': float(os.getenv('PLATFORM_FEE_RATE', 0.02)),
        'COMPLIANCE_FEE_RATE': float(os.getenv('COMPLIANCE_FEE_RATE', 0.01)),
        'GST_RATE': float(os.getenv('GST_RATE', 0.18))
    })

    # Configuration based on environment
    if config_name == 'testing':
        app.config.update({
            'TESTING': True,
            'SECRET_KEY': 'test-secret-key',
            'MONGODB_DB': os.getenv('MONGODB_TEST_DB', 'carbon_exchange_test')
        })

    # Register blueprints
    app.register_blueprint(auth_routes.bp)
    app.register_blueprint(onboarding_routes.bp)
    app.register_blueprint(project_routes.bp)
    app.register_blueprint(credit_routes.bp)
    app.register_blueprint(purchase_routes.bp)
    app.register_blueprint(transaction_routes.bp)
    app.register_blueprint(certificate_routes.bp)
    app.register_blueprint(insights_routes.bp)
    app.register_blueprint(dashboard_routes.bp)

    register_error_handlers(app)
    app.cli.add_command(seed_command)

    if not app.config.get('TESTING'):
        try:
            with app.app_context():
                ensure_indexes()
        except (PyMongoError, ServiceError) as e:
            logger.error("Could not ensure MongoDB indexes: %s", e)

    return app


if __name__ == '__main__':
    app = create_app()
    app.run(
        host=os.getenv('HOST', '0.0.0.0'),
        port=int(os.getenv('PORT', 5000)),
        debug=os.getenv('FLASK_DEBUG') == '1'
    )
