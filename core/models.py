# core/models.py
"""
Review data models

Persisted review files keep camelCase keys, so every model uses a camelCase
alias generator and is dumped with ``by_alias=True``.
"""

import re
import secrets
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional

import bleach
from email_validator import EmailNotValidError, validate_email
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from core.storage import to_iso, utcnow

NAME_PATTERN = re.compile(r"^[a-zA-Z\s\-'\.]+$")
LINKEDIN_URL_PATTERN = re.compile(r'^https://(www\.)?linkedin\.com/in/[a-zA-Z0-9-]+/?$')
REVIEW_ID_PATTERN = re.compile(r'^[A-Za-z0-9_-]{1,64}$')

MIN_TESTIMONIAL_LENGTH = 50
MAX_TESTIMONIAL_LENGTH = 2000
MAX_SKILLS = 10
MAX_HIGHLIGHTS = 5


class ReviewStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    APPROVED = "approved"
    REJECTED = "rejected"
    ARCHIVED = "archived"


class ReviewSource(str, Enum):
    DIRECT = "direct"
    LINKEDIN = "linkedin"
    EMAIL = "email"
    REFERRAL = "referral"


class ReviewerRelationship(str, Enum):
    PROFESSOR = "professor"
    COLLEAGUE = "colleague"
    SUPERVISOR = "supervisor"
    COLLABORATOR = "collaborator"
    CLIENT = "client"


def strip_html(value: Optional[str]) -> Optional[str]:
    """Remove every tag from user supplied text"""
    if value is None:
        return None
    return bleach.clean(value, tags=[], attributes={}, strip=True).strip()


def is_valid_review_id(review_id: Any) -> bool:
    return isinstance(review_id, str) and bool(REVIEW_ID_PATTERN.match(review_id))


def _parse_period_date(value: str) -> date:
    value = value.strip()
    if re.match(r'^\d{4}-\d{2}$', value):
        value = f"{value}-01"
    return date.fromisoformat(value[:10])


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra='allow')


class WorkPeriod(CamelModel):
    start: str = Field(min_length=1)
    end: Optional[str] = None

    @model_validator(mode='after')
    def check_order(self) -> 'WorkPeriod':
        try:
            start = _parse_period_date(self.start)
            end = _parse_period_date(self.end) if self.end else None
        except ValueError:
            raise ValueError('Work period dates must be ISO dates (YYYY-MM or YYYY-MM-DD)')
        if end is not None and start > end:
            raise ValueError('End date must be after start date')
        return self


class ReviewerProfile(CamelModel):
    name: str
    email: str
    title: Optional[str] = None
    organization: Optional[str] = None
    relationship: ReviewerRelationship
    linkedin_url: Optional[str] = None
    website: Optional[str] = None
    verified: bool = False
    avatar: Optional[str] = None


class ReviewContent(CamelModel):
    rating: int = Field(ge=1, le=5)
    testimonial: str
    project_association: Optional[str] = None
    skills: List[str] = Field(default_factory=list)
    recommendation: bool = True
    highlights: List[str] = Field(default_factory=list)
    work_period: Optional[WorkPeriod] = None


class ReviewMetadata(CamelModel):
    submitted_at: str
    verified_at: Optional[str] = None
    approved_at: Optional[str] = None
    rejected_at: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    source: ReviewSource = ReviewSource.DIRECT
    language: Optional[str] = None
    timezone: Optional[str] = None


class AdminFields(CamelModel):
    notes: Optional[str] = None
    featured: bool = False
    display_order: Optional[int] = None
    moderated_by: Optional[str] = None
    moderated_at: Optional[str] = None
    rejection_reason: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    internal_rating: Optional[int] = Field(default=None, ge=1, le=5)


class Review(CamelModel):
    id: str
    status: ReviewStatus
    reviewer: ReviewerProfile
    content: ReviewContent
    metadata: ReviewMetadata
    admin: AdminFields = Field(default_factory=AdminFields)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode='json', by_alias=True, exclude_none=True)


class ReviewSubmission(CamelModel):
    """Validated body of a review submission"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra='ignore')

    name: str = Field(min_length=2, max_length=100)
    email: str = Field(min_length=5, max_length=254)
    title: Optional[str] = Field(default=None, max_length=150)
    organization: Optional[str] = Field(default=None, max_length=200)
    relationship: ReviewerRelationship
    linkedin_url: Optional[str] = None
    rating: int = Field(ge=1, le=5)
    testimonial: str = Field(min_length=MIN_TESTIMONIAL_LENGTH, max_length=MAX_TESTIMONIAL_LENGTH)
    project_association: Optional[str] = Field(default=None, max_length=200)
    skills: List[str] = Field(default_factory=list, max_length=MAX_SKILLS)
    recommendation: bool = True
    work_period: Optional[WorkPeriod] = None
    honeypot: Optional[str] = None
    timestamp: Optional[float] = None

    @field_validator('name', 'title', 'organization', 'project_association', 'testimonial',
                     mode='before')
    @classmethod
    def strip_markup(cls, value):
        if isinstance(value, str):
            return strip_html(value)
        return value

    @field_validator('name')
    @classmethod
    def check_name(cls, value: str) -> str:
        if not NAME_PATTERN.match(value):
            raise ValueError('Name contains invalid characters')
        return value

    @field_validator('email')
    @classmethod
    def check_email(cls, value: str) -> str:
        try:
            result = validate_email(value.strip(), check_deliverability=False)
        except EmailNotValidError as e:
            raise ValueError(f'Please enter a valid email address: {e}')
        return result.normalized

    @field_validator('linkedin_url')
    @classmethod
    def check_linkedin_url(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        if not LINKEDIN_URL_PATTERN.match(value):
            raise ValueError('Please enter a valid LinkedIn profile URL')
        return value

    @field_validator('skills')
    @classmethod
    def check_skills(cls, value: List[str]) -> List[str]:
        cleaned = [strip_html(skill) for skill in value]
        for skill in cleaned:
            if len(skill) > 50:
                raise ValueError('Skill name too long')
        return [skill for skill in cleaned if skill]

    @property
    def is_spam_trap_filled(self) -> bool:
        return bool(self.honeypot)


def generate_review_id() -> str:
    return secrets.token_urlsafe(9)


def build_review(submission: ReviewSubmission,
                 ip_address: Optional[str] = None,
                 user_agent: Optional[str] = None,
                 source: ReviewSource = ReviewSource.DIRECT) -> Review:
    """Create the pending review record for a validated submission"""
    return Review(
        id=generate_review_id(),
        status=ReviewStatus.PENDING,
        reviewer=ReviewerProfile(
            name=submission.name,
            email=submission.email,
            title=submission.title,
            organization=submission.organization,
            relationship=submission.relationship,
            linkedin_url=submission.linkedin_url,
        ),
        content=ReviewContent(
            rating=submission.rating,
            testimonial=submission.testimonial,
            project_association=submission.project_association,
            skills=submission.skills,
            recommendation=submission.recommendation,
            work_period=submission.work_period,
        ),
        metadata=ReviewMetadata(
            submitted_at=to_iso(utcnow()),
            ip_address=ip_address,
            user_agent=user_agent,
            source=source,
        ),
    )
