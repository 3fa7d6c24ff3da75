# services/review_services.py
"""
Composition of the review services

``build_review_services`` constructs every service from a config mapping.
``create_app`` stores the result in ``app.extensions['review_system']``; views
reach it through ``current_services()``.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping, Optional

from flask import current_app

from core.audit import AuditTrail
from core.models import ReviewStatus
from core.review_store import ReviewStore
from core.spam import SpamAnalyzer
from core.template_engine import ReviewTemplateEngine
from core.tokens import TokenManager
from core.workflow import VerificationWorkflow, WorkflowConfig
from services.email_service import EmailCounter, EmailService, EmailSettings
from services.resend_transport import ResendTransport

logger = logging.getLogger(__name__)

EXTENSION_KEY = 'review_system'


@dataclass
class ReviewServices:
    data_dir: Path
    audit: AuditTrail
    reviews: ReviewStore
    tokens: TokenManager
    emails: EmailService
    workflow: VerificationWorkflow
    spam: SpamAnalyzer

    @property
    def approved_dir(self) -> Path:
        return self.reviews.directory(ReviewStatus.APPROVED)


def build_review_services(config: Mapping[str, Any], transport=None) -> ReviewServices:
    """
    Wire the services for one data directory

    ``transport`` replaces the Resend client, e.g. with a recording fake.
    """
    data_dir = Path(config['DATA_DIR'])
    data_dir.mkdir(parents=True, exist_ok=True)

    audit = AuditTrail(data_dir / 'audit')
    reviews = ReviewStore(data_dir / 'reviews')

    tokens = TokenManager(
        data_dir / 'verification' / 'tokens',
        audit=audit.tokens,
        cleanup_audit=audit.token_cleanup,
        max_attempts=config.get('TOKEN_MAX_ATTEMPTS', 5),
        max_token_age=config.get('TOKEN_MAX_AGE', timedelta(days=7)),
        pending_reviews_dir=reviews.directory(ReviewStatus.PENDING),
    )

    if transport is None:
        transport = ResendTransport(
            config.get('RESEND_API_KEY'),
            timeout=config.get('EMAIL_SEND_TIMEOUT', 10),
            max_retries=config.get('EMAIL_MAX_RETRIES', 0),
            retry_delay=config.get('EMAIL_RETRY_DELAY', 5),
        )

    emails = EmailService(
        transport=transport,
        counter=EmailCounter(
            data_dir / 'email-counts.json',
            daily_limit=config.get('EMAIL_DAILY_LIMIT', 90),
            monthly_limit=config.get('EMAIL_MONTHLY_LIMIT', 2800),
        ),
        templates=ReviewTemplateEngine(config.get('EMAIL_TEMPLATES_DIR')),
        settings=EmailSettings.from_config(config),
        sent_log=audit.emails,
        error_log=audit.email_errors,
    )

    workflow = VerificationWorkflow(
        data_dir / 'workflows',
        tokens=tokens,
        emails=emails,
        reviews=reviews,
        audit=audit.workflows,
        config=WorkflowConfig(
            verification_expiry_hours=config.get('VERIFICATION_EXPIRY_HOURS', 24),
            send_admin_notifications=config.get('SEND_ADMIN_NOTIFICATIONS', True),
            send_approval_notifications=config.get('SEND_APPROVAL_NOTIFICATIONS', True),
            send_rejection_notifications=config.get('SEND_REJECTION_NOTIFICATIONS', False),
            retention=timedelta(days=config.get('WORKFLOW_RETENTION_DAYS', 30)),
        ),
    )
    tokens.on_unverified_removed = workflow.mark_expired

    logger.info(f"Review services ready (data dir: {data_dir})")
    return ReviewServices(
        data_dir=data_dir,
        audit=audit,
        reviews=reviews,
        tokens=tokens,
        emails=emails,
        workflow=workflow,
        spam=SpamAnalyzer(),
    )


def current_services(app: Optional[Any] = None) -> ReviewServices:
    app = app or current_app
    return app.extensions[EXTENSION_KEY]
