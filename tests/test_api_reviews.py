import json
import re

from conftest import make_review, submission_payload
from core.models import ReviewStatus
from core.storage import write_json

BROWSER = {"User-Agent": "Mozilla/5.0 (X11; Linux x86_64) Firefox/126.0"}
TOKEN_RE = re.compile(r"token=([a-f0-9]{64})")


def submit(client, **overrides):
    return client.post("/api/reviews/submit", json=submission_payload(**overrides), headers=BROWSER)


def sent_token(transport):
    return TOKEN_RE.search(transport.sent[0].text).group(1)


def publish(services, *reviews):
    for review in reviews:
        write_json(services.approved_dir / f"{review.id}.json", review.to_dict())


# Display

def test_display_lists_approved_reviews(client, services):
    publish(services, make_review("a", rating=3), make_review("b", rating=5), make_review("c", rating=4))

    response = client.get("/api/reviews/display?minRating=4&sortBy=rating")

    assert response.status_code == 200
    body = response.get_json()
    assert body["success"] is True
    assert [r["id"] for r in body["data"]["reviews"]] == ["b", "c"]
    assert body["data"]["filters"]["minRating"] == 4
    assert "email" not in body["data"]["reviews"][0]["reviewer"]
    assert response.headers["Cache-Control"] == "public, max-age=3600, s-maxage=7200"


def test_display_supports_conditional_requests(client, services):
    publish(services, make_review("a"))

    first = client.get("/api/reviews/display")
    etag = first.headers["ETag"]
    second = client.get("/api/reviews/display", headers={"If-None-Match": etag})

    assert second.status_code == 304


def test_display_rejects_unknown_sort_field(client):
    response = client.get("/api/reviews/display?sortBy=email")

    assert response.status_code == 400
    assert response.get_json()["error"] == "INVALID_SORT_FIELD"


def test_display_clamps_limit(client, services):
    publish(services, *[make_review(f"r{i}", days=i) for i in range(3)])

    body = client.get("/api/reviews/display?limit=1000&offset=-1").get_json()

    assert body["data"]["pagination"]["limit"] == 50
    assert body["data"]["pagination"]["offset"] == 0
    assert len(body["data"]["reviews"]) == 3


def test_stats_endpoint(client, services):
    publish(services, make_review("a", rating=5), make_review("b", rating=3))

    body = client.get("/api/reviews/stats").get_json()

    assert body["data"]["total"] == 2
    assert body["data"]["averageRating"] == 4.0


# Submission

def test_submit_stores_pending_review_and_sends_email(client, services, transport):
    response = submit(client)

    assert response.status_code == 201
    data = response.get_json()["data"]
    assert data["verificationSent"] is True
    assert len(data["nextSteps"]) == 3

    review = services.reviews.load(data["reviewId"], ReviewStatus.PENDING)
    assert review.reviewer.email == "jane@example.com"
    assert review.metadata.user_agent == BROWSER["User-Agent"]
    assert transport.sent[0].to == ["jane@example.com"]


def test_submit_strips_markup(client, services):
    response = submit(client, organization="<b>Acme</b> Labs")

    review = services.reviews.load(response.get_json()["data"]["reviewId"], ReviewStatus.PENDING)
    assert review.reviewer.organization == "Acme Labs"


def test_submit_reports_validation_errors(client, transport):
    response = submit(client, rating=7, testimonial="Too short", email="not-an-email")

    assert response.status_code == 400
    body = response.get_json()
    assert body["error"] == "VALIDATION_ERROR"
    assert {d["field"] for d in body["details"]} >= {"rating", "testimonial", "email"}
    assert transport.sent == []


def test_submit_requires_json_object(client):
    response = client.post("/api/reviews/submit", data="name=Jane", headers=BROWSER)

    assert response.status_code == 400
    assert response.get_json()["error"] == "VALIDATION_ERROR"


def test_submit_rejects_bad_linkedin_url(client):
    response = submit(client, linkedinUrl="https://example.com/in/jane")

    assert response.status_code == 400


def test_honeypot_submission_is_blocked(client, services, transport):
    response = submit(client, honeypot="filled by a bot")

    assert response.status_code == 400
    assert response.get_json()["error"] == "SPAM_DETECTED"
    assert transport.sent == []
    assert not list(services.reviews.directory(ReviewStatus.PENDING).glob("*.json"))


def test_submit_when_email_fails(client, transport):
    transport.fail = True

    response = submit(client)

    assert response.status_code == 201
    assert response.get_json()["data"]["verificationSent"] is False


# Verification

def test_verify_flow(client, services, transport):
    review_id = submit(client).get_json()["data"]["reviewId"]
    token = sent_token(transport)

    response = client.get(f"/api/reviews/verify?token={token}&email=jane%40example.com")

    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data == {"reviewId": review_id, "verified": True, "status": "admin_notified"}
    assert services.reviews.path(review_id, ReviewStatus.VERIFIED).exists()

    again = client.get(f"/api/reviews/verify?token={token}")
    assert again.status_code == 400
    assert again.get_json()["error"] == "ALREADY_USED"


def test_verify_requires_token(client):
    response = client.get("/api/reviews/verify")

    assert response.status_code == 400
    assert response.get_json()["error"] == "MISSING_TOKEN"


def test_verify_rejects_malformed_token(client):
    response = client.get("/api/reviews/verify?token=not-a-token")

    assert response.status_code == 400
    assert response.get_json()["error"] == "INVALID_TOKEN_FORMAT"


def test_verify_unknown_token(client):
    response = client.get("/api/reviews/verify?token=" + "c" * 64)

    assert response.status_code == 404
    assert response.get_json()["error"] == "INVALID_TOKEN"


def test_verify_email_mismatch(client, transport):
    submit(client)

    response = client.get(f"/api/reviews/verify?token={sent_token(transport)}&email=other%40example.com")

    assert response.status_code == 400
    assert response.get_json()["error"] == "EMAIL_MISMATCH"


def test_verification_attempts_are_audited(client, services, transport):
    submit(client)
    token = sent_token(transport)
    client.get("/api/reviews/verify?token=bad")
    client.get(f"/api/reviews/verify?token={token}")

    log = services.data_dir / "audit" / "verifications.log"
    outcomes = [json.loads(line)["outcome"] for line in log.read_text().splitlines()]
    assert outcomes == ["INVALID_TOKEN_FORMAT", "VERIFIED"]
    assert token not in log.read_text()
