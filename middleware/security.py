# middleware/security.py
"""
Security Middleware for Request Processing
"""

import hmac
import logging
from functools import wraps

from flask import current_app, jsonify, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

logger = logging.getLogger(__name__)

# Shared limiter; bound to the application in create_app
limiter = Limiter(key_func=get_remote_address)


def security_headers(response):
    """Add security headers to all responses"""
    for header, value in current_app.config.get('SECURITY_HEADERS', {}).items():
        response.headers.setdefault(header, value)
    return response


def client_ip() -> str:
    forwarded = request.headers.get('X-Forwarded-For', '')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.headers.get('X-Real-IP') or request.remote_addr or 'unknown'


def require_admin_token(f):
    """
    Decorator guarding the admin API with a bearer token

    Requests pass unchecked only when no ADMIN_API_TOKEN is configured.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = current_app.config.get('ADMIN_API_TOKEN')
        if expected:
            header = request.headers.get('Authorization', '')
            scheme, _, provided = header.partition(' ')
            if scheme.lower() != 'bearer' or not hmac.compare_digest(provided.strip().encode(), expected.encode()):
                logger.warning(f"Unauthorized admin request to {request.path} from {client_ip()}")
                return jsonify({
                    'success': False,
                    'error': 'UNAUTHORIZED',
                    'message': 'Admin access required'
                }), 401

        return f(*args, **kwargs)
    return decorated_function
