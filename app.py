# app.py
"""
Flask Application Factory for the Review Verification Service

This application factory wires:
- File-backed review, token and workflow services under one data directory
- Resend email delivery with quota tracking
- Rate limiting, CORS and security headers
- JSON error handling and logging
- Maintenance commands (``flask cleanup-workflows``, ``flask cleanup-tokens``)
"""

import os
import logging
import logging.handlers
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import click
from flask import Flask, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from api.admin import admin_bp
from api.reviews import reviews_bp
from config.settings import CONFIG_BY_NAME
from core.errors import ReviewSystemError
from middleware.security import limiter, security_headers
from services.review_services import EXTENSION_KEY, build_review_services, current_services


def setup_logging(app: Flask) -> None:
    """
    Configure application logging

    This setup provides:
    - A compact stream format suited to journald and container logs
    - A rotating detailed log file when LOG_FILE is set
    - Quieter third-party loggers outside debug mode
    """
    # Remove default Flask handlers to avoid duplicate logs
    app.logger.handlers.clear()

    journal_formatter = logging.Formatter(
        fmt='%(name)s[%(process)d]: %(levelname)s %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    detailed_formatter = logging.Formatter(
        fmt='%(asctime)s %(name)-20s %(levelname)-8s %(funcName)-15s:%(lineno)-4d %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    log_level = getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)
    app.logger.setLevel(log_level)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(journal_formatter)
    stream_handler.setLevel(log_level)
    app.logger.addHandler(stream_handler)

    # Module loggers (core.*, services.*, api.*) share the same handlers
    for name in ('core', 'services', 'api', 'middleware'):
        module_logger = logging.getLogger(name)
        module_logger.handlers.clear()
        module_logger.setLevel(log_level)
        module_logger.addHandler(stream_handler)
        module_logger.propagate = False

    log_file = app.config.get('LOG_FILE')
    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10*1024*1024,  # 10MB
            backupCount=5
        )
        file_handler.setFormatter(detailed_formatter)
        file_handler.setLevel(logging.DEBUG)
        app.logger.addHandler(file_handler)
        for name in ('core', 'services', 'api', 'middleware'):
            logging.getLogger(name).addHandler(file_handler)

    if not app.debug:
        logging.getLogger('werkzeug').setLevel(logging.WARNING)
        logging.getLogger('urllib3').setLevel(logging.WARNING)


def configure_security(app: Flask) -> None:
    """
    Configure rate limiting and CORS
    """
    app.config.setdefault('RATELIMIT_DEFAULT', '1000 per hour')
    limiter.init_app(app)

    CORS(app,
         resources={r'/api/reviews/*': {'origins': app.config.get('CORS_ORIGINS', [])}},
         allow_headers=['Content-Type'],
         methods=['GET', 'POST', 'OPTIONS'])

    if not app.config.get('ADMIN_API_TOKEN') and not app.testing:
        app.logger.warning("ADMIN_API_TOKEN is not set; admin endpoints are unauthenticated")

    app.logger.info("Security features configured")


def register_blueprints(app: Flask) -> None:
    """
    Register all application blueprints with proper URL prefixes
    """
    app.register_blueprint(reviews_bp, url_prefix='/api/reviews')
    app.register_blueprint(admin_bp, url_prefix='/api/admin')

    app.logger.info("Application blueprints registered")


def configure_error_handlers(app: Flask) -> None:
    """
    Configure JSON error responses
    """
    @app.errorhandler(ReviewSystemError)
    def review_system_error(error):
        if error.status_code >= 500:
            app.logger.error(f"{error.code}: {error.message}", exc_info=True)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            'success': False,
            'error': 'NOT_FOUND',
            'message': 'The requested resource was not found'
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({
            'success': False,
            'error': 'METHOD_NOT_ALLOWED',
            'message': 'Method not allowed for this endpoint'
        }), 405

    @app.errorhandler(429)
    def rate_limit_exceeded(error):
        app.logger.warning(f"Rate limit exceeded for {request.remote_addr} on {request.path}")
        return jsonify({
            'success': False,
            'error': 'RATE_LIMIT_EXCEEDED',
            'message': 'Too many requests. Please try again later.'
        }), 429

    @app.errorhandler(500)
    def internal_error(error):
        app.logger.error(f"Internal server error: {error}", exc_info=True)
        return jsonify({
            'success': False,
            'error': 'INTERNAL_SERVER_ERROR',
            'message': 'An unexpected error occurred'
        }), 500

    @app.errorhandler(Exception)
    def handle_exception(e):
        """Handle unexpected exceptions"""
        if isinstance(e, HTTPException):
            return e

        app.logger.error(f"Unhandled exception: {e}", exc_info=True)
        return jsonify({
            'success': False,
            'error': 'INTERNAL_SERVER_ERROR',
            'message': 'An unexpected error occurred'
        }), 500


def configure_health_checks(app: Flask) -> None:
    """
    Configure health check endpoint for monitoring
    """
    @app.route('/health')
    def health_check():
        services = current_services(app)
        data_ok = os.access(services.data_dir, os.W_OK)
        return jsonify({
            'status': 'healthy' if data_ok else 'degraded',
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'version': app.config.get('VERSION', '1.0.0'),
            'components': {
                'storage': 'writable' if data_ok else 'read-only',
                'email': 'configured' if app.config.get('RESEND_API_KEY') else 'not configured',
            }
        }), 200 if data_ok else 503


def configure_request_middleware(app: Flask) -> None:
    """
    Configure request/response middleware
    """
    @app.after_request
    def after_request(response):
        return security_headers(response)


def register_commands(app: Flask) -> None:
    """
    Maintenance commands for cron or systemd timers
    """
    @app.cli.command('cleanup-workflows')
    @click.option('--max-age-days', type=int, default=None,
                  help='Remove finished workflows older than this many days')
    def cleanup_workflows(max_age_days):
        days = max_age_days if max_age_days is not None else app.config['WORKFLOW_RETENTION_DAYS']
        removed = current_services(app).workflow.cleanup_old_workflows(timedelta(days=days))
        click.echo(f"Removed {removed} workflow records")

    @app.cli.command('cleanup-tokens')
    def cleanup_tokens():
        result = current_services(app).tokens.cleanup_expired_tokens()
        click.echo(f"Removed {result['cleaned']} tokens ({result['errors']} errors)")

    @app.cli.command('email-stats')
    def email_stats():
        for key, value in current_services(app).emails.get_email_stats().items():
            click.echo(f"{key}: {value}")


def create_app(config_name: Optional[str] = None,
               overrides: Optional[Dict[str, Any]] = None,
               email_transport=None) -> Flask:
    """
    Flask application factory

    Args:
        config_name: Configuration environment ('development', 'testing', 'production')
        overrides: Config values applied after the environment config
        email_transport: Replacement for the Resend transport

    Returns:
        Configured Flask application instance
    """
    app = Flask(__name__)

    config_name = config_name or os.environ.get('FLASK_ENV', 'production')
    app.config.from_object(CONFIG_BY_NAME.get(config_name, CONFIG_BY_NAME['production']))
    if overrides:
        app.config.update(overrides)

    if app.config.get('BEHIND_PROXY'):
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

    setup_logging(app)
    app.logger.info(f"Starting review service in {config_name} mode")

    app.extensions[EXTENSION_KEY] = build_review_services(app.config, transport=email_transport)

    configure_security(app)
    register_blueprints(app)
    configure_error_handlers(app)
    configure_health_checks(app)
    configure_request_middleware(app)
    register_commands(app)

    app.logger.info("Flask application factory completed successfully")
    return app


if __name__ == '__main__':
    create_app('development').run(host='127.0.0.1', port=5000, debug=True)
