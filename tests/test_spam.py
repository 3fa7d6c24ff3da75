from conftest import submission_payload
from core.models import ReviewSubmission
from core.spam import SpamAnalyzer, is_trusted_domain

BROWSER = "Mozilla/5.0 (X11; Linux x86_64) Firefox/126.0"


def analyze(user_agent=BROWSER, seconds=120.0, **overrides):
    submission = ReviewSubmission.model_validate(submission_payload(**overrides))
    return SpamAnalyzer().analyze(submission, user_agent=user_agent, submission_seconds=seconds)


def test_genuine_submission_is_allowed():
    result = analyze()

    assert not result.is_spam
    assert not result.is_suspicious
    assert result.recommendation == "allow"


def test_honeypot_blocks_immediately():
    result = analyze(honeypot="http://spam.example")

    assert result.is_spam
    assert result.score == 100.0
    assert result.recommendation == "block"


def test_spammy_submission_is_blocked():
    result = analyze(
        email="a1b2c3d4e5f6g7h8i9j0k1@mailinator.com",
        testimonial=("CLICK HERE NOW!!! Visit https://cheap.example and https://win.example "
                     "and https://free.example to buy FREE casino money $100 winner winner winner winner"),
        user_agent="bot",
        seconds=2,
    )

    assert result.is_spam
    assert result.recommendation == "block"
    assert "Submission behavior indicates automation" in result.reasons


def test_fast_bot_submission_is_flagged():
    result = analyze(user_agent="python-requests crawler", seconds=3)

    assert result.features["behavioral_analysis"] == 100
    assert "Submission behavior indicates automation" in result.reasons


def test_trusted_domains():
    assert is_trusted_domain("prof@cs.stanford.edu")
    assert is_trusted_domain("someone@ox.ac.uk")
    assert not is_trusted_domain("someone@example.com")
