# core/spam.py
"""
Heuristic spam scoring for review submissions

Each feature scores 0-100 and the weighted sum decides whether a submission
is allowed, held for review or blocked. The honeypot field short-circuits to
a block.
"""

import re
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from core.models import ReviewSubmission

logger = logging.getLogger(__name__)

SPAM_THRESHOLD = 70
SUSPICIOUS_THRESHOLD = 40

FEATURE_WEIGHTS = {
    'content_quality': 0.35,
    'email_reputation': 0.25,
    'behavioral_analysis': 0.25,
    'domain_trust': 0.15,
}

MIN_SUBMISSION_SECONDS = 30
MAX_SUBMISSION_SECONDS = 30 * 60

SUSPICIOUS_PATTERNS = [
    re.compile(r'(.)\1{5,}'),
    re.compile(r'https?://\S+', re.IGNORECASE),
    re.compile(r'\$\d+|\d+\$|\bmoney\b|\bpay\b|\bbuy\b', re.IGNORECASE),
    re.compile(r'\bclick\b|\bvisit\b|\bdownload\b|\bfree\b', re.IGNORECASE),
    re.compile(r'viagra|casino|lottery|winner', re.IGNORECASE),
    re.compile(r'[A-Z]{10,}'),
    re.compile(r'!{3,}|\?{3,}'),
]

GENERIC_PHRASES = ('great work', 'highly recommend', 'excellent service', 'very professional', 'good job')

DISPOSABLE_DOMAINS = {
    '10minutemail.com', 'tempmail.org', 'guerrillamail.com',
    'mailinator.com', 'throwaway.email', 'temp-mail.org',
}

TRUSTED_DOMAIN_PATTERNS = [
    re.compile(r'\.edu$'),
    re.compile(r'\.ac\.uk$'),
    re.compile(r'\.edu\.au$'),
    re.compile(r'\.org$'),
]

SUSPICIOUS_TLDS = ('.tk', '.ml', '.ga', '.cf', '.click', '.download')


@dataclass
class SpamAnalysis:
    is_spam: bool
    is_suspicious: bool
    score: float
    features: Dict[str, int]
    reasons: List[str] = field(default_factory=list)

    @property
    def recommendation(self) -> str:
        if self.is_spam:
            return 'block'
        if self.is_suspicious:
            return 'review'
        return 'allow'


def is_trusted_domain(email: str) -> bool:
    domain = email.rpartition('@')[2].lower()
    return bool(domain) and any(p.search(domain) for p in TRUSTED_DOMAIN_PATTERNS)


class SpamAnalyzer:
    """Scores a submission from its content, email address and timing"""

    def analyze(self, submission: ReviewSubmission,
                user_agent: Optional[str] = None,
                submission_seconds: Optional[float] = None) -> SpamAnalysis:
        if submission.is_spam_trap_filled:
            return SpamAnalysis(True, True, 100.0, {}, ['Hidden form field was filled'])

        features = {
            'content_quality': self._content_quality(submission.testimonial),
            'email_reputation': self._email_reputation(submission.email),
            'behavioral_analysis': self._behavior(user_agent, submission_seconds),
            'domain_trust': self._domain_trust(submission.email),
        }
        score = sum(features[name] * weight for name, weight in FEATURE_WEIGHTS.items())

        reasons = []
        if features['content_quality'] > 50:
            reasons.append('Content shows spam-like patterns')
        if features['email_reputation'] > 50:
            reasons.append('Email address appears suspicious')
        if features['behavioral_analysis'] > 50:
            reasons.append('Submission behavior indicates automation')
        if features['domain_trust'] > 50:
            reasons.append('Email domain is not trusted')

        result = SpamAnalysis(
            is_spam=score >= SPAM_THRESHOLD,
            is_suspicious=score >= SUSPICIOUS_THRESHOLD,
            score=round(score, 1),
            features=features,
            reasons=reasons,
        )
        if result.is_suspicious:
            logger.warning(f"Suspicious submission from {submission.email}: score {result.score}, {reasons}")
        return result

    def _content_quality(self, testimonial: str) -> int:
        score = 0
        text = testimonial.lower()
        words = text.split()

        if re.search(r'(.)\1{5,}', text):
            score += 30

        counts: Dict[str, int] = {}
        for word in words:
            if len(word) > 3:
                counts[word] = counts.get(word, 0) + 1
        if any(count > 3 for count in counts.values()):
            score += 25
        if len(counts) < 10:
            score += 20

        for pattern in SUSPICIOUS_PATTERNS:
            score += 15 * len(pattern.findall(testimonial))

        if len(re.findall(r'https?://\S+', text)) > 2:
            score += 40

        if sum(1 for phrase in GENERIC_PHRASES if phrase in text) > 2:
            score += 20

        return min(score, 100)

    def _email_reputation(self, email: str) -> int:
        local, _, domain = email.lower().rpartition('@')
        if not local or not domain:
            return 100

        score = 0
        if domain in DISPOSABLE_DOMAINS:
            score += 80
        if re.match(r'^[a-z0-9]{20,}$', local):
            score += 30
        if sum(ch.isdigit() for ch in local) > len(local) * 0.5:
            score += 25
        return min(score, 100)

    def _behavior(self, user_agent: Optional[str], submission_seconds: Optional[float]) -> int:
        score = 0
        if submission_seconds is not None:
            if submission_seconds < MIN_SUBMISSION_SECONDS:
                score += 40
            elif submission_seconds > MAX_SUBMISSION_SECONDS:
                score += 20

        agent = (user_agent or '').lower()
        if any(marker in agent for marker in ('bot', 'crawler', 'spider')):
            score += 60
        if len(agent) < 10:
            score += 30
        return min(score, 100)

    def _domain_trust(self, email: str) -> int:
        domain = email.rpartition('@')[2].lower()
        if not domain:
            return 100
        if is_trusted_domain(email):
            return 0

        score = 0
        if any(marker in domain for marker in ('temp', 'fake')):
            score += 60
        if domain.endswith(SUSPICIOUS_TLDS):
            score += 40
        if len(domain) > 30:
            score += 20
        if len(domain.split('.')) > 3:
            score += 15
        return min(score, 100)
