# api/reviews.py
"""
Public review API: submission, email verification and display
"""

import hashlib
import json
import logging
import time

from flask import Blueprint, current_app, jsonify, request
from pydantic import ValidationError as PydanticValidationError

from core.errors import InvalidSortFieldError
from core.models import ReviewSubmission, build_review
from core.review_display import ReviewQuery, get_review_stats, get_reviews, load_reviews
from core.tokens import is_valid_token_format
from core.workflow import WORKFLOW_ERROR
from middleware.security import client_ip, limiter
from services.review_services import current_services

reviews_bp = Blueprint('reviews', __name__)
logger = logging.getLogger(__name__)

VERIFY_ERRORS = {
    'MISSING_TOKEN': (400, 'Verification token is required.'),
    'INVALID_TOKEN_FORMAT': (400, 'Invalid verification token format.'),
    'INVALID_TOKEN': (404, 'Verification token not found.'),
    'ALREADY_USED': (400, 'This verification link has already been used.'),
    'EXPIRED_TOKEN': (400, 'Verification token has expired. Please submit a new review.'),
    'TOO_MANY_ATTEMPTS': (400, 'Too many verification attempts for this link.'),
    'EMAIL_MISMATCH': (400, 'Email address does not match the verification token.'),
    'WORKFLOW_NOT_FOUND': (404, 'No verification is in progress for this review.'),
    'REVIEW_NOT_FOUND': (404, 'Associated review not found.'),
    'INVALID_TRANSITION': (400, 'This review can no longer be verified.'),
}

NEXT_STEPS = [
    'Check your email for a verification link',
    'Click the verification link to confirm your review',
    'Your review will be read and published within 1-2 business days',
]


def _error(code: str, message: str, status: int, **extra):
    body = {'success': False, 'error': code, 'message': message}
    body.update(extra)
    return jsonify(body), status


@reviews_bp.route('/display', methods=['GET'])
def display_reviews():
    """
    Approved reviews, filtered, sorted and paginated from query parameters
    """
    config = current_app.config
    try:
        query = ReviewQuery.from_args(
            request.args,
            default_limit=config['DISPLAY_DEFAULT_LIMIT'],
            max_limit=config['DISPLAY_MAX_LIMIT'],
        )
    except InvalidSortFieldError as e:
        return _error(e.code, e.message, 400)

    try:
        reviews = load_reviews(current_services().approved_dir)
        payload = get_reviews(reviews, query)
    except Exception as e:
        logger.error(f"Failed to build review listing: {e}", exc_info=True)
        return _error('INTERNAL_SERVER_ERROR', 'Failed to fetch reviews', 500)

    etag = hashlib.md5(json.dumps(payload, sort_keys=True).encode('utf-8')).hexdigest()
    response = jsonify({'success': True, 'data': payload})
    response.set_etag(etag)
    response.headers['Cache-Control'] = config['DISPLAY_CACHE_CONTROL']
    return response.make_conditional(request)


@reviews_bp.route('/stats', methods=['GET'])
def review_stats():
    reviews = load_reviews(current_services().approved_dir)
    return jsonify({'success': True, 'data': get_review_stats(reviews)})


@reviews_bp.route('/submit', methods=['POST'])
@limiter.limit(lambda: current_app.config['RATELIMIT_SUBMIT'])
def submit_review():
    """
    Validate a submission, store it as pending and send the verification email
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return _error('VALIDATION_ERROR', 'Request body must be a JSON object', 400)

    try:
        submission = ReviewSubmission.model_validate(data)
    except PydanticValidationError as e:
        details = [
            {'field': '.'.join(str(part) for part in err['loc']), 'message': err['msg']}
            for err in e.errors()
        ]
        return _error('VALIDATION_ERROR', 'Invalid submission data', 400, details=details)

    services = current_services()
    ip_address = client_ip()
    user_agent = request.headers.get('User-Agent', '')

    elapsed = None
    if submission.timestamp:
        elapsed = time.time() - submission.timestamp / 1000

    analysis = services.spam.analyze(submission, user_agent=user_agent, submission_seconds=elapsed)
    if analysis.is_spam:
        services.audit.verifications.log('submission_blocked', email=submission.email, ipAddress=ip_address,
                                          score=analysis.score, reasons=analysis.reasons)
        return _error('SPAM_DETECTED', 'Submission rejected', 400)

    review = build_review(submission, ip_address=ip_address, user_agent=user_agent)
    result = services.workflow.initiate_verification(submission, review)

    if result.error == WORKFLOW_ERROR:
        return _error('INTERNAL_SERVER_ERROR',
                      'An error occurred while processing your submission. Please try again later.', 500)

    logger.info(f"Review {review.id} submitted (verification email sent: {result.success})")
    return jsonify({
        'success': True,
        'data': {
            'reviewId': review.id,
            'verificationSent': result.success,
            'message': 'Review submitted successfully! Please check your email to verify your submission.',
            'nextSteps': NEXT_STEPS,
        }
    }), 201


@reviews_bp.route('/verify', methods=['GET'])
@limiter.limit(lambda: current_app.config['RATELIMIT_VERIFY'])
def verify_review():
    """
    Consume the verification link sent by email
    """
    token = request.args.get('token', '').strip()
    email = request.args.get('email') or None
    services = current_services()

    def log_attempt(outcome: str, review_id=None):
        services.audit.verifications.log('verification_attempt', outcome=outcome,
                                         tokenPrefix=token[:8], reviewId=review_id,
                                         ipAddress=client_ip())

    if not token:
        log_attempt('MISSING_TOKEN')
        status, message = VERIFY_ERRORS['MISSING_TOKEN']
        return _error('MISSING_TOKEN', message, status)

    if not is_valid_token_format(token):
        log_attempt('INVALID_TOKEN_FORMAT')
        status, message = VERIFY_ERRORS['INVALID_TOKEN_FORMAT']
        return _error('INVALID_TOKEN_FORMAT', message, status)

    result = services.workflow.process_verification(token, email)
    log_attempt('VERIFIED' if result.success else result.error, result.review_id)

    if not result.success:
        if result.error in VERIFY_ERRORS:
            status, message = VERIFY_ERRORS[result.error]
            return _error(result.error, message, status)
        return _error('INTERNAL_SERVER_ERROR',
                      'An error occurred during verification. Please try again later.', 500)

    return jsonify({
        'success': True,
        'message': 'Email verified successfully! Your review is now pending approval.',
        'data': {
            'reviewId': result.review_id,
            'verified': True,
            'status': result.status.value,
        }
    })
