# api/admin.py
"""
Admin API for moderating verified reviews
"""

import logging

from flask import Blueprint, jsonify, request

from core.models import is_valid_review_id
from core.workflow import INVALID_TRANSITION, REVIEW_NOT_FOUND, WORKFLOW_NOT_FOUND
from middleware.security import require_admin_token
from services.review_services import current_services

admin_bp = Blueprint('admin', __name__)
logger = logging.getLogger(__name__)

MODERATION_STATUSES = ('approved', 'rejected')

ERROR_STATUS = {
    INVALID_TRANSITION: 400,
    WORKFLOW_NOT_FOUND: 404,
    REVIEW_NOT_FOUND: 404,
}


@admin_bp.route('/reviews/<review_id>', methods=['PATCH'])
@require_admin_token
def update_review(review_id):
    """
    Approve or reject a verified review

    Body: {"status": "approved"|"rejected", "notes": str?, "reviewedBy": str?}
    """
    if not is_valid_review_id(review_id):
        return jsonify({
            'success': False,
            'error': 'INVALID_REVIEW_ID',
            'message': 'Review ID is required'
        }), 400

    data = request.get_json(silent=True) or {}
    status = data.get('status')
    if status not in MODERATION_STATUSES:
        return jsonify({
            'success': False,
            'error': 'INVALID_STATUS',
            'message': f"Status must be one of: {', '.join(MODERATION_STATUSES)}"
        }), 400

    notes = data.get('notes')
    reviewed_by = data.get('reviewedBy') or 'admin'

    result = current_services().workflow.process_approval(
        review_id, approved=(status == 'approved'), notes=notes, moderated_by=reviewed_by)

    if not result.success:
        code = result.error or 'INTERNAL_SERVER_ERROR'
        return jsonify({
            'success': False,
            'error': code,
            'message': result.message or 'An error occurred while updating the review'
        }), ERROR_STATUS.get(code, 500)

    logger.info(f"Review {review_id} {status} by {reviewed_by}")
    return jsonify({
        'success': True,
        'message': f'Review {status} successfully',
        'data': {
            'reviewId': review_id,
            'status': status,
            'workflowStatus': result.status.value,
        }
    })


@admin_bp.route('/workflows/<review_id>', methods=['GET'])
@require_admin_token
def get_workflow(review_id):
    if not is_valid_review_id(review_id):
        return jsonify({'success': False, 'error': 'INVALID_REVIEW_ID', 'message': 'Invalid review ID'}), 400

    state = current_services().workflow.get_workflow_state(review_id)
    if state is None:
        return jsonify({'success': False, 'error': WORKFLOW_NOT_FOUND, 'message': 'Workflow not found'}), 404
    return jsonify({'success': True, 'data': state.to_dict()})


@admin_bp.route('/stats', methods=['GET'])
@require_admin_token
def admin_stats():
    services = current_services()
    return jsonify({
        'success': True,
        'data': {
            'workflows': services.workflow.get_workflow_stats(),
            'emails': services.emails.get_email_stats(),
            'tokens': services.tokens.get_token_stats(),
        }
    })
