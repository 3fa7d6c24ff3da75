from datetime import timedelta

import pytest

from conftest import submission_payload
from core.errors import TransitionError
from core.models import ReviewStatus, ReviewSubmission, build_review
from core.storage import read_json, to_iso, utcnow, write_json
from core.tokens import ALREADY_USED, EXPIRED_TOKEN, TOO_MANY_ATTEMPTS
from core.workflow import (EMAIL_MISMATCH, INVALID_TRANSITION, WORKFLOW_ERROR, WORKFLOW_NOT_FOUND,
                           WorkflowState, WorkflowStatus, can_transition)


def start(services, review_id="r1", email="a@b.com"):
    submission = ReviewSubmission.model_validate(submission_payload(email=email))
    review = build_review(submission, ip_address="203.0.113.9", user_agent="pytest-agent/1.0")
    review.id = review_id
    return services.workflow.initiate_verification(submission, review)


def test_initiate_sends_verification_email(services, transport):
    result = start(services)

    assert result.success
    assert result.status == WorkflowStatus.EMAIL_SENT
    assert services.reviews.path("r1", ReviewStatus.PENDING).exists()
    assert transport.sent[0].to == ["a@b.com"]
    assert result.verification_token in transport.sent[0].html

    state = services.workflow.get_workflow_state("r1")
    assert state.current_step == "awaiting_verification"
    assert state.metadata["emailMessageId"] == "msg-1"
    assert [h["status"] for h in state.history] == ["initiated", "email_sent"]


def test_verification_moves_review_and_notifies_admin(services, transport):
    token = start(services).verification_token

    result = services.workflow.process_verification(token, "a@b.com")

    assert result.success
    assert result.status == WorkflowStatus.ADMIN_NOTIFIED
    assert not services.reviews.path("r1", ReviewStatus.PENDING).exists()
    review = services.reviews.load("r1", ReviewStatus.VERIFIED)
    assert review.status == ReviewStatus.VERIFIED
    assert review.reviewer.verified is True
    assert review.metadata.verified_at
    assert transport.last_to("owner@example.test")


def test_verification_without_admin_notification(services):
    services.workflow.config.send_admin_notifications = False
    token = start(services).verification_token

    result = services.workflow.process_verification(token)

    assert result.status == WorkflowStatus.VERIFIED
    state = services.workflow.get_workflow_state("r1")
    assert state.status == WorkflowStatus.VERIFIED
    assert state.current_step == "awaiting_approval"
    assert state.metadata["verifiedAt"]


def test_token_cannot_be_reused(services):
    token = start(services).verification_token
    services.workflow.process_verification(token, "a@b.com")

    result = services.workflow.process_verification(token, "a@b.com")

    assert not result.success
    assert result.error == ALREADY_USED


def test_email_mismatch_counts_attempt(services):
    token = start(services).verification_token

    result = services.workflow.process_verification(token, "someone@else.com")

    assert result.error == EMAIL_MISMATCH
    assert services.tokens.validate_token(token).token_data.attempts == 1
    assert services.reviews.path("r1", ReviewStatus.PENDING).exists()


def test_repeated_mismatches_lock_the_token(services):
    services.tokens.max_attempts = 2
    token = start(services).verification_token
    services.workflow.process_verification(token, "x@y.com")
    services.workflow.process_verification(token, "x@y.com")

    assert services.workflow.process_verification(token, "a@b.com").error == TOO_MANY_ATTEMPTS


def test_expired_token_expires_workflow(services):
    services.workflow.config.verification_expiry_hours = 0
    token = start(services).verification_token

    result = services.workflow.process_verification(token, "a@b.com")

    assert result.error == EXPIRED_TOKEN
    assert services.workflow.get_workflow_state("r1").status == WorkflowStatus.EXPIRED


def test_link_from_failed_email_still_verifies(services, transport):
    transport.fail = True
    result = start(services)

    assert not result.success
    assert result.error == "EMAIL_FAILED"
    assert result.status == WorkflowStatus.EMAIL_FAILED
    state = services.workflow.get_workflow_state("r1")
    assert state.errors

    transport.fail = False
    outcome = services.workflow.process_verification(result.verification_token, "a@b.com")

    assert outcome.success
    assert services.workflow.get_workflow_state("r1").status == WorkflowStatus.ADMIN_NOTIFIED
    assert services.reviews.load("r1", ReviewStatus.VERIFIED).reviewer.verified is True
    assert not services.reviews.path("r1", ReviewStatus.PENDING).exists()


def test_unexpected_failure_moves_workflow_to_error(services, monkeypatch):
    token = start(services).verification_token

    def broken_move(*args, **kwargs):
        raise RuntimeError("disk went away")

    monkeypatch.setattr(services.reviews, "move", broken_move)
    result = services.workflow.process_verification(token, "a@b.com")

    assert result.error == WORKFLOW_ERROR
    assert result.status == WorkflowStatus.ERROR
    state = services.workflow.get_workflow_state("r1")
    assert state.status == WorkflowStatus.ERROR
    assert state.errors[-1]["message"] == "disk went away"


def test_approval_publishes_review(services, transport):
    token = start(services).verification_token
    services.workflow.process_verification(token, "a@b.com")

    result = services.workflow.process_approval("r1", approved=True, notes="Lovely", moderated_by="alex")

    assert result.success
    assert result.status == WorkflowStatus.APPROVED
    review = services.reviews.load("r1", ReviewStatus.APPROVED)
    assert review.metadata.approved_at
    assert review.admin.moderated_by == "alex"
    assert review.admin.notes == "Lovely"
    assert not services.reviews.path("r1", ReviewStatus.VERIFIED).exists()
    assert transport.sent[-1].subject == "Your Review Has Been Published - Thank You!"
    assert services.workflow.get_workflow_state("r1").metadata["approvalSent"] is True


def test_rejection_stores_reason_without_email(services, transport):
    token = start(services).verification_token
    services.workflow.process_verification(token, "a@b.com")
    sent_before = len(transport.sent)

    result = services.workflow.process_approval("r1", approved=False, notes="Off topic")

    assert result.status == WorkflowStatus.REJECTED
    review = services.reviews.load("r1", ReviewStatus.REJECTED)
    assert review.admin.rejection_reason == "Off topic"
    assert review.metadata.rejected_at
    assert len(transport.sent) == sent_before


def test_decision_before_verification_is_rejected(services):
    start(services)

    result = services.workflow.process_approval("r1", approved=True)

    assert result.error == INVALID_TRANSITION
    assert services.workflow.get_workflow_state("r1").status == WorkflowStatus.EMAIL_SENT
    assert services.reviews.path("r1", ReviewStatus.PENDING).exists()


def test_second_decision_is_rejected(services):
    token = start(services).verification_token
    services.workflow.process_verification(token)
    services.workflow.process_approval("r1", approved=True)

    result = services.workflow.process_approval("r1", approved=False)

    assert result.error == INVALID_TRANSITION
    assert services.reviews.path("r1", ReviewStatus.APPROVED).exists()
    assert not services.reviews.path("r1", ReviewStatus.REJECTED).exists()


def test_decision_for_unknown_workflow(services):
    assert services.workflow.process_approval("missing", approved=True).error == WORKFLOW_NOT_FOUND


def test_workflow_stats(services):
    token = start(services, "r1").verification_token
    services.workflow.process_verification(token)
    services.workflow.process_approval("r1", approved=True)
    start(services, "r2", "c@d.com")

    stats = services.workflow.get_workflow_stats()

    assert stats["total"] == 2
    assert stats["byStatus"] == {"approved": 1, "email_sent": 1}
    assert stats["successRate"] == 0.5
    assert stats["averageCompletionTime"] >= 0


def test_cleanup_removes_old_finished_workflows(services):
    token = start(services, "old").verification_token
    services.workflow.process_verification(token)
    services.workflow.process_approval("old", approved=True)
    start(services, "pending-old", "c@d.com")
    start(services, "fresh", "e@f.com")

    for review_id in ("old", "pending-old"):
        path = services.workflow.workflows_dir / f"{review_id}.json"
        data = read_json(path)
        data["startedAt"] = to_iso(utcnow() - timedelta(days=45))
        write_json(path, data)

    assert services.workflow.cleanup_old_workflows() == 1
    assert services.workflow.get_workflow_state("old") is None
    assert services.workflow.get_workflow_state("pending-old") is not None
    assert services.workflow.get_workflow_state("fresh") is not None


def test_cleanup_removes_corrupted_workflow_files(services):
    start(services)
    corrupt = services.workflow.workflows_dir / "bad.json"
    corrupt.write_text("{not json")

    assert services.workflow.cleanup_old_workflows() == 1
    assert not corrupt.exists()
    assert not (services.workflow.workflows_dir / "bad.json.lock").exists()
    assert services.workflow.get_workflow_state("r1") is not None


def test_token_cleanup_expires_abandoned_workflow(services):
    start(services, "stale")
    token_path = next(services.tokens.tokens_dir.glob("*.json"))
    data = read_json(token_path)
    data["createdAt"] = to_iso(utcnow() - timedelta(days=40))
    data["expiresAt"] = to_iso(utcnow() - timedelta(days=39))
    write_json(token_path, data)
    workflow_path = services.workflow.workflows_dir / "stale.json"
    data = read_json(workflow_path)
    data["startedAt"] = to_iso(utcnow() - timedelta(days=40))
    write_json(workflow_path, data)

    assert services.tokens.cleanup_expired_tokens()["cleaned"] == 1

    assert services.workflow.get_workflow_state("stale").status == WorkflowStatus.EXPIRED
    assert not services.reviews.path("stale", ReviewStatus.PENDING).exists()
    assert services.workflow.cleanup_old_workflows() == 1
    assert services.workflow.get_workflow_state("stale") is None
    assert not (services.workflow.workflows_dir / "stale.json.lock").exists()


def test_transition_table():
    assert can_transition(WorkflowStatus.EMAIL_SENT, WorkflowStatus.VERIFIED)
    assert can_transition(WorkflowStatus.ADMIN_NOTIFIED, WorkflowStatus.REJECTED)
    assert not can_transition(WorkflowStatus.APPROVED, WorkflowStatus.REJECTED)
    assert can_transition(WorkflowStatus.EMAIL_FAILED, WorkflowStatus.VERIFIED)
    assert not can_transition(WorkflowStatus.EXPIRED, WorkflowStatus.VERIFIED)

    state = WorkflowState.new("r1", "A@B.com")
    assert state.email == "a@b.com"
    with pytest.raises(TransitionError):
        state.transition(WorkflowStatus.APPROVED, "completed")
    assert state.status == WorkflowStatus.INITIATED
