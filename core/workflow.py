# core/workflow.py
"""
Review verification workflow

Each submitted review gets a workflow record, ``<workflows_dir>/<review id>.json``,
that tracks it from the verification email through to the moderation decision:

    initiated -> email_sent   -> verified -> admin_notified -> approved | rejected
              -> email_failed -> verified -> approved | rejected
    any non-terminal state -> expired | error

A failed verification email leaves the token valid, so the link still
verifies from ``email_failed``.

Workflow records are rewritten whole under the record's lock. When a step
also moves the review file, the review lock is taken inside the workflow
lock, never the other way round.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from core.audit import AuditLogger
from core.errors import CorruptFileError, NotFoundError, ReviewSystemError, StorageError, TransitionError
from core.models import Review, ReviewStatus, ReviewSubmission
from core.review_store import ReviewStore
from core.storage import (delete_file, discard_lock, iter_json_files, locked, parse_iso,
                          read_json, to_iso, utcnow, write_json)
from core.tokens import EXPIRED_TOKEN, TokenManager, normalize_email

logger = logging.getLogger(__name__)

# Result codes beyond the token validation codes
EMAIL_MISMATCH = 'EMAIL_MISMATCH'
WORKFLOW_NOT_FOUND = 'WORKFLOW_NOT_FOUND'
REVIEW_NOT_FOUND = 'REVIEW_NOT_FOUND'
INVALID_TRANSITION = 'INVALID_TRANSITION'
ALREADY_USED = 'ALREADY_USED'
WORKFLOW_ERROR = 'WORKFLOW_ERROR'


class WorkflowStatus(str, Enum):
    INITIATED = "initiated"
    EMAIL_SENT = "email_sent"
    EMAIL_FAILED = "email_failed"
    VERIFIED = "verified"
    ADMIN_NOTIFIED = "admin_notified"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    ERROR = "error"


ALLOWED_TRANSITIONS = {
    WorkflowStatus.INITIATED: {WorkflowStatus.EMAIL_SENT, WorkflowStatus.EMAIL_FAILED,
                               WorkflowStatus.EXPIRED, WorkflowStatus.ERROR},
    WorkflowStatus.EMAIL_SENT: {WorkflowStatus.VERIFIED, WorkflowStatus.EXPIRED, WorkflowStatus.ERROR},
    WorkflowStatus.EMAIL_FAILED: {WorkflowStatus.VERIFIED, WorkflowStatus.EXPIRED, WorkflowStatus.ERROR},
    WorkflowStatus.VERIFIED: {WorkflowStatus.ADMIN_NOTIFIED, WorkflowStatus.APPROVED,
                              WorkflowStatus.REJECTED, WorkflowStatus.EXPIRED, WorkflowStatus.ERROR},
    WorkflowStatus.ADMIN_NOTIFIED: {WorkflowStatus.APPROVED, WorkflowStatus.REJECTED, WorkflowStatus.ERROR},
    WorkflowStatus.APPROVED: set(),
    WorkflowStatus.REJECTED: set(),
    WorkflowStatus.EXPIRED: set(),
    WorkflowStatus.ERROR: set(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)
AWAITING_DECISION = frozenset({WorkflowStatus.VERIFIED, WorkflowStatus.ADMIN_NOTIFIED})


def can_transition(from_status: WorkflowStatus, to_status: WorkflowStatus) -> bool:
    return WorkflowStatus(to_status) in ALLOWED_TRANSITIONS[WorkflowStatus(from_status)]


@dataclass
class WorkflowState:
    review_id: str
    email: str
    status: WorkflowStatus
    current_step: str
    started_at: str
    last_updated: str
    attempts: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)
    history: List[Dict[str, str]] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(cls, review_id: str, email: str) -> 'WorkflowState':
        now = to_iso(utcnow())
        return cls(
            review_id=review_id,
            email=normalize_email(email),
            status=WorkflowStatus.INITIATED,
            current_step='creating_token',
            started_at=now,
            last_updated=now,
            history=[{'status': WorkflowStatus.INITIATED.value, 'at': now}],
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, to_status: WorkflowStatus, step: str) -> None:
        to_status = WorkflowStatus(to_status)
        if not can_transition(self.status, to_status):
            raise TransitionError(
                f"Transition not allowed: {self.status.value} -> {to_status.value}")
        now = to_iso(utcnow())
        self.status = to_status
        self.current_step = step
        self.last_updated = now
        self.history.append({'status': to_status.value, 'at': now})

    def record_error(self, message: str) -> None:
        self.errors.append({'at': to_iso(utcnow()), 'step': self.current_step, 'message': message})

    def to_dict(self) -> Dict[str, Any]:
        return {
            'reviewId': self.review_id,
            'email': self.email,
            'status': self.status.value,
            'currentStep': self.current_step,
            'startedAt': self.started_at,
            'lastUpdated': self.last_updated,
            'attempts': self.attempts,
            'errors': self.errors,
            'history': self.history,
            'metadata': self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowState':
        try:
            return cls(
                review_id=data['reviewId'],
                email=data['email'],
                status=WorkflowStatus(data['status']),
                current_step=data.get('currentStep', ''),
                started_at=data['startedAt'],
                last_updated=data.get('lastUpdated', data['startedAt']),
                attempts=int(data.get('attempts', 0)),
                errors=list(data.get('errors', [])),
                history=list(data.get('history', [])),
                metadata=dict(data.get('metadata', {})),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptFileError(f"Malformed workflow record: {e}") from e


@dataclass
class WorkflowConfig:
    verification_expiry_hours: float = 24
    send_admin_notifications: bool = True
    send_approval_notifications: bool = True
    send_rejection_notifications: bool = False
    retention: timedelta = timedelta(days=30)


@dataclass
class WorkflowResult:
    success: bool
    workflow_id: Optional[str] = None
    status: Optional[WorkflowStatus] = None
    verification_token: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None

    @property
    def review_id(self) -> Optional[str]:
        return self.workflow_id


class VerificationWorkflow:
    """Drives a review through verification and moderation"""

    def __init__(self,
                 workflows_dir: Union[str, Path],
                 tokens: TokenManager,
                 emails,
                 reviews: ReviewStore,
                 audit: Optional[AuditLogger] = None,
                 config: Optional[WorkflowConfig] = None):
        self.workflows_dir = Path(workflows_dir)
        self.tokens = tokens
        self.emails = emails
        self.reviews = reviews
        self.audit = audit
        self.config = config or WorkflowConfig()
        self.workflows_dir.mkdir(parents=True, exist_ok=True)

    # Persistence

    def _path(self, review_id: str) -> Path:
        return self.workflows_dir / f"{review_id}.json"

    def _load(self, review_id: str) -> Optional[WorkflowState]:
        data = read_json(self._path(review_id))
        if data is None:
            return None
        return WorkflowState.from_dict(data)

    def _write(self, state: WorkflowState) -> None:
        write_json(self._path(state.review_id), state.to_dict())

    def _update(self, review_id: str, mutate: Callable[[WorkflowState], None]) -> WorkflowState:
        """
        Load, mutate and rewrite a workflow under its lock

        Nothing is written when ``mutate`` raises.
        """
        path = self._path(review_id)
        with locked(path):
            state = self._load(review_id)
            if state is None:
                raise NotFoundError(f"Workflow {review_id} not found", code=WORKFLOW_NOT_FOUND)
            mutate(state)
            state.last_updated = to_iso(utcnow())
            self._write(state)
        return state

    def get_workflow_state(self, review_id: str) -> Optional[WorkflowState]:
        try:
            return self._load(review_id)
        except StorageError as e:
            logger.warning(f"Unreadable workflow {review_id}: {e}")
            return None

    # Steps

    def initiate_verification(self, submission: ReviewSubmission, review: Review) -> WorkflowResult:
        """
        Store the pending review, issue a token and send the verification email
        """
        review_id = review.id
        state = WorkflowState.new(review_id, submission.email)

        try:
            self.reviews.save(review)
            with locked(self._path(review_id)):
                self._write(state)

            token, record = self.tokens.create_verification_token(
                submission.email, review_id, self.config.verification_expiry_hours)

            def token_created(s: WorkflowState) -> None:
                s.metadata['tokenHash'] = record.token_hash
                s.current_step = 'sending_email'

            self._update(review_id, token_created)

            sent = self.emails.send_verification_email(submission.email, submission.name, token)

            def email_outcome(s: WorkflowState) -> None:
                if sent.success:
                    s.transition(WorkflowStatus.EMAIL_SENT, 'awaiting_verification')
                    s.metadata['emailMessageId'] = sent.message_id
                else:
                    s.transition(WorkflowStatus.EMAIL_FAILED, 'email_delivery')
                    s.record_error(sent.error or 'Verification email failed')

            state = self._update(review_id, email_outcome)
        except Exception as e:
            logger.error(f"Failed to initiate verification for review {review_id}: {e}", exc_info=True)
            self._fail(review_id, str(e))
            return WorkflowResult(success=False, workflow_id=review_id,
                                  status=WorkflowStatus.ERROR, error=WORKFLOW_ERROR, message=str(e))

        self._audit('verification_initiated', review_id, email=state.email,
                    status=state.status.value, emailSent=sent.success)

        if not sent.success:
            return WorkflowResult(success=False, workflow_id=review_id, status=state.status,
                                  verification_token=token, error='EMAIL_FAILED', message=sent.error)

        return WorkflowResult(success=True, workflow_id=review_id, status=state.status,
                              verification_token=token)

    def process_verification(self, token: str, email: Optional[str] = None) -> WorkflowResult:
        """
        Consume a verification token and move the review to ``verified``

        ``email``, when given, must match the address the token was issued
        for; a mismatch counts as a failed attempt on the token.
        """
        validation = self.tokens.validate_token(token)
        record = validation.token_data

        if not validation.valid:
            review_id = record.review_id if record else None
            if validation.error == EXPIRED_TOKEN and review_id:
                self.mark_expired(review_id)
            return WorkflowResult(success=False, workflow_id=review_id, error=validation.error)

        review_id = record.review_id

        if email is not None and normalize_email(email) != record.email:
            self.tokens.increment_token_attempts(token)
            self._audit('email_mismatch', review_id)
            return WorkflowResult(success=False, workflow_id=review_id, error=EMAIL_MISMATCH,
                                  message='Email does not match the verification token')

        state = self.get_workflow_state(review_id)
        if state is None:
            return WorkflowResult(success=False, workflow_id=review_id, error=WORKFLOW_NOT_FOUND)
        if not can_transition(state.status, WorkflowStatus.VERIFIED):
            return WorkflowResult(success=False, workflow_id=review_id, status=state.status,
                                  error=INVALID_TRANSITION,
                                  message=f"Workflow is {state.status.value}")
        if not self.reviews.path(review_id, ReviewStatus.PENDING).exists():
            return WorkflowResult(success=False, workflow_id=review_id, error=REVIEW_NOT_FOUND)

        if not self.tokens.mark_token_as_used(token):
            return WorkflowResult(success=False, workflow_id=review_id, error=ALREADY_USED)

        verified_at = to_iso(utcnow())
        holder: Dict[str, Review] = {}

        def mark_reviewed(review: Review) -> None:
            review.metadata.verified_at = verified_at
            review.reviewer.verified = True

        def verify(s: WorkflowState) -> None:
            s.attempts += 1
            holder['review'] = self.reviews.move(review_id, ReviewStatus.PENDING,
                                                 ReviewStatus.VERIFIED, mark_reviewed)
            s.transition(WorkflowStatus.VERIFIED, 'awaiting_approval')
            s.metadata['verifiedAt'] = verified_at

        try:
            state = self._update(review_id, verify)
        except ReviewSystemError as e:
            logger.error(f"Verification failed for review {review_id}: {e.message}")
            self._fail(review_id, e.message)
            return WorkflowResult(success=False, workflow_id=review_id, status=WorkflowStatus.ERROR,
                                  error=e.code, message=e.message)
        except Exception as e:
            logger.error(f"Verification failed for review {review_id}: {e}", exc_info=True)
            self._fail(review_id, str(e))
            return WorkflowResult(success=False, workflow_id=review_id, status=WorkflowStatus.ERROR,
                                  error=WORKFLOW_ERROR, message=str(e))

        self._audit('email_verified', review_id, email=record.email)

        if self.config.send_admin_notifications:
            state = self._notify_admin(holder['review']) or state

        return WorkflowResult(success=True, workflow_id=review_id, status=state.status)

    def _notify_admin(self, review: Review) -> Optional[WorkflowState]:
        result = self.emails.send_admin_notification(review)

        def outcome(s: WorkflowState) -> None:
            s.metadata['adminNotified'] = result.success
            if result.success:
                s.metadata['adminMessageId'] = result.message_id
                s.transition(WorkflowStatus.ADMIN_NOTIFIED, 'awaiting_approval')
            else:
                s.record_error(f"Admin notification failed: {result.error}")

        try:
            state = self._update(review.id, outcome)
        except (ReviewSystemError, OSError) as e:
            logger.error(f"Failed to record admin notification for {review.id}: {e}")
            return None

        if result.success:
            self._audit('admin_notified', review.id, messageId=result.message_id)
        else:
            logger.warning(f"Admin notification for review {review.id} failed: {result.error}")
            self._audit('admin_notification_failed', review.id, error=result.error)
        return state

    def process_approval(self, review_id: str, approved: bool,
                         notes: Optional[str] = None,
                         moderated_by: Optional[str] = None) -> WorkflowResult:
        """
        Record the moderation decision for a verified review

        Only workflows waiting for a decision accept one; any other state is
        reported as INVALID_TRANSITION and left untouched.
        """
        target = WorkflowStatus.APPROVED if approved else WorkflowStatus.REJECTED
        review_status = ReviewStatus.APPROVED if approved else ReviewStatus.REJECTED
        now = to_iso(utcnow())
        holder: Dict[str, Review] = {}

        def stamp(review: Review) -> None:
            if approved:
                review.metadata.approved_at = now
            else:
                review.metadata.rejected_at = now
                review.admin.rejection_reason = notes
            review.admin.notes = notes
            review.admin.moderated_by = moderated_by
            review.admin.moderated_at = now

        def decide(s: WorkflowState) -> None:
            if s.status not in AWAITING_DECISION:
                raise TransitionError(
                    f"Cannot {'approve' if approved else 'reject'} a workflow in status {s.status.value}")
            holder['review'] = self.reviews.move(review_id, ReviewStatus.VERIFIED, review_status, stamp)
            s.transition(target, 'completed')
            if notes:
                s.metadata['notes'] = notes
            if moderated_by:
                s.metadata['moderatedBy'] = moderated_by

        try:
            state = self._update(review_id, decide)
        except TransitionError as e:
            return WorkflowResult(success=False, workflow_id=review_id, error=INVALID_TRANSITION,
                                  message=e.message)
        except NotFoundError as e:
            return WorkflowResult(success=False, workflow_id=review_id, error=e.code, message=e.message)
        except Exception as e:
            logger.error(f"Moderation failed for review {review_id}: {e}", exc_info=True)
            self._fail(review_id, str(e))
            return WorkflowResult(success=False, workflow_id=review_id, status=WorkflowStatus.ERROR,
                                  error=WORKFLOW_ERROR, message=str(e))

        self._audit('review_approved' if approved else 'review_rejected', review_id,
                    moderatedBy=moderated_by, notes=notes)

        review = holder['review']
        if approved and self.config.send_approval_notifications:
            result = self.emails.send_approval_email(review.reviewer.email, review.reviewer.name, review_id)
            state = self._record_decision_email(review_id, 'approval', result) or state
        elif not approved and self.config.send_rejection_notifications:
            result = self.emails.send_rejection_email(review.reviewer.email, review.reviewer.name, notes)
            state = self._record_decision_email(review_id, 'rejection', result) or state

        return WorkflowResult(success=True, workflow_id=review_id, status=state.status)

    def _record_decision_email(self, review_id: str, kind: str, result) -> Optional[WorkflowState]:
        def outcome(s: WorkflowState) -> None:
            s.metadata[f'{kind}Sent'] = result.success
            if result.success:
                s.metadata[f'{kind}MessageId'] = result.message_id
            else:
                s.record_error(f"{kind.capitalize()} email failed: {result.error}")

        try:
            state = self._update(review_id, outcome)
        except (ReviewSystemError, OSError) as e:
            logger.error(f"Failed to record {kind} email for {review_id}: {e}")
            return None

        if result.success:
            self._audit(f'{kind}_notification_sent', review_id, messageId=result.message_id)
        else:
            self._audit(f'{kind}_notification_failed', review_id, error=result.error)
        return state

    def mark_expired(self, review_id: str) -> None:
        """Move a still-open workflow to expired; unknown ids are logged and ignored"""
        def expire(s: WorkflowState) -> None:
            if can_transition(s.status, WorkflowStatus.EXPIRED):
                s.transition(WorkflowStatus.EXPIRED, 'expired')

        try:
            state = self._update(review_id, expire)
        except (ReviewSystemError, OSError) as e:
            logger.warning(f"Could not mark workflow {review_id} expired: {e}")
            return
        if state.status == WorkflowStatus.EXPIRED:
            self._audit('workflow_expired', review_id)

    def _fail(self, review_id: str, message: str) -> None:
        """Record an unexpected failure; terminal workflows keep their status"""
        def fail(s: WorkflowState) -> None:
            s.record_error(message)
            if not s.is_terminal:
                s.transition(WorkflowStatus.ERROR, 'error')

        try:
            self._update(review_id, fail)
        except (ReviewSystemError, OSError) as e:
            logger.error(f"Could not record failure for workflow {review_id}: {e}")
        self._audit('workflow_error', review_id, error=message)

    # Reporting and maintenance

    def _iter_states(self):
        for path in iter_json_files(self.workflows_dir):
            try:
                state = self._load(path.stem)
            except StorageError:
                continue
            if state is not None:
                yield state

    def get_workflow_stats(self) -> Dict[str, Any]:
        """
        Totals per status, mean completion time of decided workflows in
        milliseconds, and the share of all workflows that ended approved
        """
        by_status: Dict[str, int] = {}
        completion_ms: List[float] = []
        total = 0
        approved = 0

        for state in self._iter_states():
            total += 1
            by_status[state.status.value] = by_status.get(state.status.value, 0) + 1
            if state.status in (WorkflowStatus.APPROVED, WorkflowStatus.REJECTED):
                elapsed = parse_iso(state.last_updated) - parse_iso(state.started_at)
                completion_ms.append(elapsed.total_seconds() * 1000)
                if state.status == WorkflowStatus.APPROVED:
                    approved += 1

        return {
            'total': total,
            'byStatus': by_status,
            'averageCompletionTime': sum(completion_ms) / len(completion_ms) if completion_ms else 0,
            'successRate': approved / total if total else 0,
        }

    def cleanup_old_workflows(self, max_age: Optional[timedelta] = None) -> int:
        """Delete finished workflows older than ``max_age`` and any corrupted records"""
        max_age = max_age if max_age is not None else self.config.retention
        now = utcnow()
        cleaned = 0

        for path in iter_json_files(self.workflows_dir):
            removed = False
            with locked(path):
                try:
                    state = self._load(path.stem)
                except CorruptFileError:
                    removed = delete_file(path)
                    state = None
                if state is not None:
                    try:
                        age = now - parse_iso(state.started_at)
                    except ValueError:
                        age = max_age + timedelta(seconds=1)
                    if age > max_age and state.is_terminal:
                        removed = delete_file(path)
            if removed:
                discard_lock(path)
                cleaned += 1

        logger.info(f"Workflow cleanup removed {cleaned} records")
        return cleaned

    def _audit(self, event: str, review_id: Optional[str], **fields: Any) -> None:
        if self.audit:
            self.audit.log(event, reviewId=review_id, **fields)
