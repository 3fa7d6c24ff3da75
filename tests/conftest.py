from datetime import datetime, timedelta, timezone

import pytest

from app import create_app
from core.errors import EmailTransportError
from core.models import Review
from core.storage import to_iso
from services.review_services import current_services


class FakeTransport:
    """Records outgoing messages instead of calling Resend"""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, message):
        if self.fail:
            raise EmailTransportError("provider unavailable", status=503, retryable=True)
        self.sent.append(message)
        return f"msg-{len(self.sent)}"

    def last_to(self, address):
        return [m for m in self.sent if address in m.to]


def submission_payload(**overrides):
    payload = {
        "name": "Jane Doe",
        "email": "jane@example.com",
        "title": "Research Lead",
        "organization": "Acme Labs",
        "relationship": "colleague",
        "rating": 5,
        "testimonial": (
            "Working together on the data platform migration was a pleasure. "
            "Careful planning, thoughtful reviews and steady communication kept "
            "every milestone on track."
        ),
        "skills": ["Python", "Data Engineering"],
        "recommendation": True,
    }
    payload.update(overrides)
    return payload


REVIEW_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_review(review_id, rating=5, name="Jane Doe", days=0, featured=False,
                relationship="colleague", organization="Acme Labs",
                testimonial="Thoughtful engineer who made the whole team better every week."):
    """An approved review as stored on disk"""
    return Review.model_validate({
        "id": review_id,
        "status": "approved",
        "reviewer": {
            "name": name,
            "email": f"{review_id}@example.com",
            "organization": organization,
            "relationship": relationship,
            "verified": True,
        },
        "content": {"rating": rating, "testimonial": testimonial},
        "metadata": {
            "submittedAt": to_iso(REVIEW_TIME),
            "approvedAt": to_iso(REVIEW_TIME + timedelta(days=days)),
            "ipAddress": "198.51.100.7",
            "userAgent": "Mozilla/5.0",
        },
        "admin": {"featured": featured, "notes": "internal only", "moderatedBy": "alex"},
    })


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def app(tmp_path, transport):
    return create_app("testing", {"DATA_DIR": str(tmp_path / "data")}, email_transport=transport)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app):
    return current_services(app)
