# core/review_display.py
"""
Public review listing: filter, sort, paginate and strip private fields

Everything here is a pure function of the approved review files, recomputed
on each request.
"""

import math
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from core.errors import InvalidSortFieldError, StorageError
from core.models import Review, ReviewStatus
from core.storage import iter_json_files, parse_iso, read_json

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 12
MAX_LIMIT = 50
SORT_FIELDS = ('approvedAt', 'rating', 'name', 'organization')

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _parse_int(value: Any) -> Optional[int]:
    if value is None or value == '':
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _parse_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool) or value is None:
        return value
    lowered = str(value).strip().lower()
    if lowered == 'true':
        return True
    if lowered == 'false':
        return False
    return None


@dataclass
class ReviewQuery:
    limit: int = DEFAULT_LIMIT
    offset: int = 0
    sort_by: str = 'approvedAt'
    sort_order: str = 'desc'
    featured: Optional[bool] = None
    min_rating: Optional[int] = None
    relationship: Optional[str] = None
    search: Optional[str] = None

    def __post_init__(self):
        if self.sort_by not in SORT_FIELDS:
            raise InvalidSortFieldError(f"Invalid sort field: {self.sort_by}")
        if self.sort_order != 'asc':
            self.sort_order = 'desc'
        if self.limit is None or self.limit <= 0:
            self.limit = DEFAULT_LIMIT
        if self.offset is None or self.offset < 0:
            self.offset = 0

    @classmethod
    def from_args(cls, args: Mapping[str, Any],
                  default_limit: int = DEFAULT_LIMIT,
                  max_limit: int = MAX_LIMIT) -> 'ReviewQuery':
        """Build a query from request parameters, clamping out-of-range values"""
        limit = _parse_int(args.get('limit'))
        if limit is None or limit <= 0:
            limit = default_limit
        limit = min(limit, max_limit)

        offset = _parse_int(args.get('offset'))
        if offset is None or offset < 0:
            offset = 0

        return cls(
            limit=limit,
            offset=offset,
            sort_by=(args.get('sortBy') or 'approvedAt').strip(),
            sort_order='asc' if args.get('sortOrder') == 'asc' else 'desc',
            featured=_parse_bool(args.get('featured')),
            min_rating=_parse_int(args.get('minRating')),
            relationship=args.get('relationship') or None,
            search=args.get('search') or None,
        )

    def filters(self) -> Dict[str, Any]:
        return {
            'sortBy': self.sort_by,
            'sortOrder': self.sort_order,
            'featured': self.featured,
            'minRating': self.min_rating,
            'relationship': self.relationship,
            'search': self.search,
        }


def load_reviews(directory: Union[str, Path]) -> List[Review]:
    """
    Read every approved review in ``directory``

    Index files, dot files, undecodable or invalid documents and reviews
    whose status is not ``approved`` are skipped.
    """
    reviews = []
    for path in iter_json_files(directory):
        if path.name == 'index.json':
            continue
        try:
            data = read_json(path)
        except StorageError as e:
            logger.warning(f"Skipping unreadable review file {path.name}: {e}")
            continue
        if not data or 'featuredIds' in data:
            continue
        if data.get('status', ReviewStatus.APPROVED.value) != ReviewStatus.APPROVED.value:
            continue
        data.setdefault('status', ReviewStatus.APPROVED.value)
        try:
            reviews.append(Review.model_validate(data))
        except PydanticValidationError as e:
            logger.warning(f"Skipping malformed review {path.name}: {e.error_count()} validation errors")
    return reviews


def convert_to_public_review(review: Review) -> Dict[str, Any]:
    """Projection of a review that is safe to show without authentication"""
    reviewer = review.reviewer
    public_reviewer = {
        'name': reviewer.name,
        'title': reviewer.title or '',
        'organization': reviewer.organization or '',
        'relationship': reviewer.relationship.value,
        'verified': reviewer.verified,
    }
    if reviewer.linkedin_url:
        public_reviewer['linkedinUrl'] = reviewer.linkedin_url
    if reviewer.website:
        public_reviewer['website'] = reviewer.website
    if reviewer.avatar:
        public_reviewer['avatar'] = reviewer.avatar

    metadata = {'source': review.metadata.source.value}
    if review.metadata.approved_at:
        metadata['approvedAt'] = review.metadata.approved_at

    return {
        'id': review.id,
        'status': review.status.value,
        'reviewer': public_reviewer,
        'content': review.content.model_dump(mode='json', by_alias=True, exclude_none=True),
        'metadata': metadata,
        'admin': {
            'featured': review.admin.featured,
            'moderatedAt': review.admin.moderated_at or review.metadata.approved_at,
        },
    }


def _approved_at(review: Review) -> datetime:
    if not review.metadata.approved_at:
        return _EPOCH
    try:
        return parse_iso(review.metadata.approved_at)
    except ValueError:
        return _EPOCH


_SORT_KEYS = {
    'approvedAt': _approved_at,
    'rating': lambda r: r.content.rating,
    'name': lambda r: r.reviewer.name.lower(),
    'organization': lambda r: (r.reviewer.organization or '').lower(),
}


def filter_reviews(reviews: List[Review], query: ReviewQuery) -> List[Review]:
    result = list(reviews)
    if query.featured is not None:
        result = [r for r in result if r.admin.featured == query.featured]
    if query.min_rating is not None:
        result = [r for r in result if r.content.rating >= query.min_rating]
    if query.relationship:
        wanted = query.relationship.lower()
        result = [r for r in result if r.reviewer.relationship.value == wanted]
    if query.search and query.search.strip():
        term = query.search.lower()
        result = [
            r for r in result
            if term in r.content.testimonial.lower()
            or term in r.reviewer.name.lower()
            or term in (r.reviewer.organization or '').lower()
        ]
    return result


def sort_reviews(reviews: List[Review], sort_by: str, sort_order: str = 'desc') -> List[Review]:
    return sorted(reviews, key=_SORT_KEYS[sort_by], reverse=(sort_order != 'asc'))


def get_reviews(reviews: List[Review], query: Optional[ReviewQuery] = None, **options) -> Dict[str, Any]:
    """
    Filter, sort and paginate ``reviews``

    Accepts either a ReviewQuery or its fields as keyword arguments, e.g.
    ``get_reviews(reviews, min_rating=4)``.
    """
    query = query or ReviewQuery(**options)

    matched = sort_reviews(filter_reviews(reviews, query), query.sort_by, query.sort_order)
    total = len(matched)
    page = matched[query.offset:query.offset + query.limit]

    return {
        'reviews': [convert_to_public_review(r) for r in page],
        'featured': [convert_to_public_review(r) for r in reviews if r.admin.featured],
        'pagination': {
            'total': total,
            'limit': query.limit,
            'offset': query.offset,
            'hasMore': query.offset + query.limit < total,
            'totalPages': math.ceil(total / query.limit),
            'currentPage': query.offset // query.limit + 1,
        },
        'filters': query.filters(),
    }


def get_review_stats(reviews: List[Review]) -> Dict[str, Any]:
    total = len(reviews)
    distribution = {str(star): 0 for star in range(1, 6)}
    relationships: Dict[str, int] = {}
    for review in reviews:
        distribution[str(review.content.rating)] += 1
        key = review.reviewer.relationship.value
        relationships[key] = relationships.get(key, 0) + 1

    average = round(sum(r.content.rating for r in reviews) / total, 1) if total else 0
    return {
        'total': total,
        'averageRating': average,
        'ratingDistribution': distribution,
        'relationships': relationships,
        'featured': sum(1 for r in reviews if r.admin.featured),
        'recommendations': sum(1 for r in reviews if r.content.recommendation),
    }
