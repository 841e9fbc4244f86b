from flask import Flask, jsonify
import flask
import markupsafe
# Flasgger still reads flask.Markup, removed in Flask 3.0
flask.Markup = markupsafe.Markup

from flasgger import Swagger
from pvesync.config import DevelopmentConfig

# Extensions first: the models and the engine import db from there
from pvesync.extensions import db, migrate, cors, proxmox_client, sync_engine

from proxmoxer import ResourceException, AuthenticationError
from pvesync.errors import (
    SyncError, SyncInProgressError, RemoteValidationError, RemoteAuthenticationError,
    ReferentialIntegrityError, ConflictError,
)
import logging

from pvesync.api.main import main_bp


def create_app(config_class=DevelopmentConfig, resource_client=None, collector=None):
    """Flask application factory"""
    app = Flask(__name__)
    app.config.from_object(config_class)

    # CLI COMMANDS
    from pvesync.commands import init_db_command, sync_command, sync_status_command
    app.cli.add_command(init_db_command)
    app.cli.add_command(sync_command)
    app.cli.add_command(sync_status_command)

    # Swagger
    swagger_config = {
        "headers": [],
        "specs": [
            {
                "endpoint": 'apispec',
                "route": '/apispec.json',
                "rule_filter": lambda rule: True,
                "model_filter": lambda tag: True,
            }
        ],
        "static_url_path": "/flasgger_static",
        "swagger_ui": True,
        "specs_route": "/docs"
    }

    Swagger(app, config=swagger_config)

    # 1. EXTENSIONS
    init_extensions(app, resource_client, collector)

    # 2. LOGGING
    configure_logging(app)

    # 3. ROUTES
    register_blueprints(app)
    app.register_blueprint(main_bp)

    # 4. ERROR HANDLING
    register_error_handlers(app)

    return app


def init_extensions(app, resource_client=None, collector=None):
    """Binds every extension to the app."""
    db.init_app(app)
    migrate.init_app(app, db)

    cors.init_app(app, resources={r"/*": {
        "origins": app.config.get('CORS_ORIGINS', []),
        "methods": ["GET", "POST", "OPTIONS"],
        "allow_headers": ["Content-Type", "Authorization"],
    }})

    # The Proxmox client is a singleton created in extensions.py; here it only receives the config
    proxmox_client.init_app(app)

    # Tests inject a fake Resource Client
    sync_engine.init_app(app, client=resource_client or proxmox_client, collector=collector)


def configure_logging(app):
    if not app.debug:
        level = getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)
        logging.basicConfig(
            level=level,
            format='%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s',
        )


def register_blueprints(app):
    """Registers the route modules (Blueprints)."""
    prefix = app.config.get('API_PREFIX', '/api')

    # Imported here to avoid import cycles
    from pvesync.api.sync.routes import bp as sync_bp
    app.register_blueprint(sync_bp, url_prefix=f"{prefix}/sync")


def register_error_handlers(app):
    """Central exception handling."""

    @app.errorhandler(SyncInProgressError)
    def handle_sync_in_progress(e):
        app.logger.warning(f"Sync rejected: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 409

    @app.errorhandler(RemoteValidationError)
    def handle_remote_validation(e):
        app.logger.error(f"Remote validation error: {str(e)}")
        return jsonify({'success': False, 'error': str(e), 'resource_type': e.resource_type,
                        'resource_id': e.resource_id}), 422

    @app.errorhandler(ConflictError)
    def handle_conflict(e):
        return jsonify({'success': False, 'error': str(e), 'fields': e.fields}), 409

    @app.errorhandler(RemoteAuthenticationError)
    @app.errorhandler(AuthenticationError)
    def handle_auth_error(e):
        app.logger.error(f"Proxmox auth error: {str(e)}")
        return jsonify({'success': False, 'error': 'Authentication with the Proxmox backend failed.'}), 401

    @app.errorhandler(ReferentialIntegrityError)
    def handle_integrity_error(e):
        app.logger.error(f"State store integrity error: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 500

    @app.errorhandler(SyncError)
    @app.errorhandler(ResourceException)
    def handle_remote_error(e):
        app.logger.error(f"Proxmox error: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 502

    @app.errorhandler(400)
    def handle_bad_request(e):
        return jsonify({'success': False, 'error': e.description}), 400

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({'success': False, 'error': 'Endpoint not found'}), 404

    @app.errorhandler(500)
    def handle_generic_error(e):
        app.logger.error(f"Internal Server Error: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 500
