# services/email_service.py
"""
Review email delivery

EmailService renders the review templates, enforces the provider's daily and
monthly quotas through EmailCounter and hands messages to a transport. Every
send returns a SendResult instead of raising, and is recorded in the email
audit logs.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union
from urllib.parse import quote

from jinja2.exceptions import TemplateError

from core.audit import AuditLogger
from core.errors import CorruptFileError, EmailSenderError
from core.models import Review
from core.storage import locked, read_json, to_iso, utcnow, write_json
from services.resend_transport import OutboundEmail

logger = logging.getLogger(__name__)

DAILY_LIMIT_EXCEEDED = 'Daily email limit exceeded'
MONTHLY_LIMIT_EXCEEDED = 'Monthly email limit exceeded'

SUBJECT_VERIFICATION = 'Verify Your Review Submission - {site_name}'
SUBJECT_APPROVED = 'Your Review Has Been Published - Thank You!'
SUBJECT_REJECTED = 'An Update on Your Review Submission'
SUBJECT_ADMIN = 'New Review Awaiting Approval'


@dataclass
class SendResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class EmailSettings:
    from_email: str
    reply_to: Optional[str]
    admin_email: Optional[str]
    site_url: str
    site_name: str
    owner_name: str
    environment: str = 'development'
    verification_expiry_hours: int = 24

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> 'EmailSettings':
        return cls(
            from_email=config['REVIEW_FROM_EMAIL'],
            reply_to=config.get('REVIEW_REPLY_TO_EMAIL'),
            admin_email=config.get('REVIEW_ADMIN_EMAIL'),
            site_url=config['SITE_URL'].rstrip('/'),
            site_name=config.get('SITE_NAME', 'Portfolio'),
            owner_name=config.get('OWNER_NAME', 'Site Owner'),
            environment=config.get('ENVIRONMENT', 'development'),
            verification_expiry_hours=config.get('VERIFICATION_EXPIRY_HOURS', 24),
        )


class EmailCounter:
    """
    Daily and monthly send counts persisted in ``email-counts.json``

    Counts are keyed by UTC date (``YYYY-MM-DD``) and month (``YYYY-MM``); a
    stored date or month that differs from the current one reads as zero.
    """

    def __init__(self, path: Union[str, Path],
                 daily_limit: int = 90,
                 monthly_limit: int = 2800,
                 clock: Callable[[], datetime] = utcnow):
        self.path = Path(path)
        self.daily_limit = daily_limit
        self.monthly_limit = monthly_limit
        self.clock = clock

    def _periods(self) -> Tuple[str, str]:
        now = self.clock()
        return now.strftime('%Y-%m-%d'), now.strftime('%Y-%m')

    def _current(self) -> Tuple[int, int]:
        today, this_month = self._periods()
        try:
            data = read_json(self.path) or {}
        except CorruptFileError as e:
            logger.warning(f"Resetting unreadable email counts: {e}")
            data = {}

        daily = int(data.get('dailyCount', 0)) if data.get('lastDate') == today else 0
        monthly = int(data.get('monthlyCount', 0)) if data.get('lastMonth') == this_month else 0
        return daily, monthly

    def _save(self, daily: int, monthly: int) -> None:
        today, this_month = self._periods()
        write_json(self.path, {
            'dailyCount': daily,
            'monthlyCount': monthly,
            'lastDate': today,
            'lastMonth': this_month,
            'updatedAt': to_iso(self.clock()),
        })

    def counts(self) -> Tuple[int, int]:
        return self._current()

    def check_limits(self) -> Optional[str]:
        daily, monthly = self._current()
        return self._limit_error(daily, monthly)

    def _limit_error(self, daily: int, monthly: int) -> Optional[str]:
        if daily >= self.daily_limit:
            return DAILY_LIMIT_EXCEEDED
        if monthly >= self.monthly_limit:
            return MONTHLY_LIMIT_EXCEEDED
        return None

    def reserve(self) -> Optional[str]:
        """
        Claim one send against both quotas

        Returns None when the slot was taken, otherwise the limit error. The
        check and the increment share one lock so parallel senders cannot
        overshoot a quota.
        """
        with locked(self.path):
            daily, monthly = self._current()
            error = self._limit_error(daily, monthly)
            if error:
                return error
            self._save(daily + 1, monthly + 1)
        return None

    def release(self) -> None:
        """Give back a slot claimed by a send that then failed"""
        with locked(self.path):
            daily, monthly = self._current()
            self._save(max(0, daily - 1), max(0, monthly - 1))


class EmailService:
    """Sends the review lifecycle emails"""

    def __init__(self, transport, counter: EmailCounter, templates, settings: EmailSettings,
                 sent_log: Optional[AuditLogger] = None,
                 error_log: Optional[AuditLogger] = None):
        self.transport = transport
        self.counter = counter
        self.templates = templates
        self.settings = settings
        self.sent_log = sent_log
        self.error_log = error_log

    def _base_variables(self) -> Dict[str, Any]:
        return {
            'site_name': self.settings.site_name,
            'site_url': self.settings.site_url,
            'owner_name': self.settings.owner_name,
            'year': utcnow().year,
        }

    def _tags(self, category: str) -> Dict[str, str]:
        return {'category': category, 'environment': self.settings.environment}

    def _send(self, kind: str, recipient: str, subject: str, template: str,
              variables: Dict[str, Any], reply_to: Optional[str] = None) -> SendResult:
        limit_error = self.counter.reserve()
        if limit_error:
            logger.warning(f"Skipping {kind} email to {recipient}: {limit_error}")
            self._log_error(kind, recipient, limit_error)
            return SendResult(success=False, error=limit_error)

        try:
            rendered = self.templates.render(template, {**self._base_variables(), **variables})
            message_id = self.transport.send(OutboundEmail(
                to=[recipient],
                subject=subject,
                html=rendered.html,
                text=rendered.text,
                sender=self.settings.from_email,
                reply_to=reply_to,
                tags=self._tags(kind),
            ))
        except (EmailSenderError, TemplateError) as e:
            self.counter.release()
            logger.error(f"Failed to send {kind} email to {recipient}: {e}")
            self._log_error(kind, recipient, str(e))
            return SendResult(success=False, error=str(e))

        logger.info(f"Sent {kind} email to {recipient} (id={message_id})")
        self._log_sent(kind, recipient, message_id)
        return SendResult(success=True, message_id=message_id)

    def verification_url(self, email: str, token: str) -> str:
        return f"{self.settings.site_url}/api/reviews/verify?token={token}&email={quote(email, safe='')}"

    def send_verification_email(self, email: str, name: str, token: str) -> SendResult:
        hours = self.settings.verification_expiry_hours
        return self._send(
            'review-verification', email,
            SUBJECT_VERIFICATION.format(site_name=self.settings.site_name),
            'verification',
            {
                'name': name,
                'verification_url': self.verification_url(email, token),
                'expires_in': f"{hours} hour{'s' if hours != 1 else ''}",
            },
            reply_to=self.settings.reply_to,
        )

    def send_approval_email(self, email: str, name: str, review_id: str) -> SendResult:
        return self._send(
            'review-approved', email, SUBJECT_APPROVED, 'approved',
            {'name': name, 'review_url': f"{self.settings.site_url}/testimonials#review-{review_id}"},
            reply_to=self.settings.reply_to,
        )

    def send_rejection_email(self, email: str, name: str, notes: Optional[str] = None) -> SendResult:
        return self._send(
            'review-rejected', email, SUBJECT_REJECTED, 'rejected',
            {'name': name, 'notes': notes or ''},
            reply_to=self.settings.reply_to,
        )

    def send_admin_notification(self, review: Review) -> SendResult:
        recipient = self.settings.admin_email or self.settings.reply_to
        if not recipient:
            return SendResult(success=False, error='No admin email address configured')

        return self._send(
            'admin-notification', recipient, SUBJECT_ADMIN, 'admin_notification',
            {
                'reviewer_name': review.reviewer.name,
                'organization': review.reviewer.organization or 'Not specified',
                'relationship': review.reviewer.relationship.value,
                'rating': review.content.rating,
                'testimonial': review.content.testimonial,
                'admin_url': f"{self.settings.site_url}/admin/reviews?id={review.id}",
            },
        )

    def get_email_stats(self) -> Dict[str, int]:
        daily, monthly = self.counter.counts()
        return {
            'dailyCount': daily,
            'monthlyCount': monthly,
            'dailyLimit': self.counter.daily_limit,
            'monthlyLimit': self.counter.monthly_limit,
            'dailyRemaining': max(0, self.counter.daily_limit - daily),
            'monthlyRemaining': max(0, self.counter.monthly_limit - monthly),
        }

    def _log_sent(self, kind: str, recipient: str, message_id: Optional[str]) -> None:
        if not self.sent_log:
            return
        daily, monthly = self.counter.counts()
        self.sent_log.log('email_sent', type=kind, recipient=recipient.lower(), messageId=message_id,
                          status='sent', dailyCount=daily, monthlyCount=monthly)

    def _log_error(self, kind: str, recipient: str, error: str) -> None:
        if not self.error_log:
            return
        self.error_log.log('email_failed', type=kind, recipient=recipient.lower(), error=error,
                           status='failed')
