# core/review_store.py
"""
Review files grouped by status

    <reviews_dir>/pending/<id>.json
    <reviews_dir>/verified/<id>.json
    <reviews_dir>/approved/<id>.json
    <reviews_dir>/rejected/<id>.json
"""

import logging
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from core.errors import CorruptFileError, NotFoundError, StorageError
from core.models import Review, ReviewStatus
from core.storage import delete_file, iter_json_files, locked, read_json, write_json

logger = logging.getLogger(__name__)

STORED_STATUSES = (
    ReviewStatus.PENDING,
    ReviewStatus.VERIFIED,
    ReviewStatus.APPROVED,
    ReviewStatus.REJECTED,
)

INDEX_FILE = 'index.json'


class ReviewStore:

    def __init__(self, reviews_dir: Union[str, Path]):
        self.reviews_dir = Path(reviews_dir)
        for status in STORED_STATUSES:
            (self.reviews_dir / status.value).mkdir(parents=True, exist_ok=True)

    def directory(self, status: ReviewStatus) -> Path:
        return self.reviews_dir / ReviewStatus(status).value

    def path(self, review_id: str, status: ReviewStatus) -> Path:
        return self.directory(status) / f"{review_id}.json"

    def _lock_path(self, review_id: str) -> Path:
        return self.reviews_dir / f".{review_id}"

    def save(self, review: Review) -> Path:
        path = self.path(review.id, review.status)
        with locked(self._lock_path(review.id)):
            write_json(path, review.to_dict())
        logger.debug(f"Saved review {review.id} to {review.status.value}")
        return path

    def load(self, review_id: str, status: ReviewStatus) -> Optional[Review]:
        data = read_json(self.path(review_id, status))
        if data is None:
            return None
        try:
            return Review.model_validate(data)
        except PydanticValidationError as e:
            raise CorruptFileError(f"Review {review_id} failed validation: {e.error_count()} errors") from e

    def find(self, review_id: str) -> Optional[Tuple[ReviewStatus, Review]]:
        """Locate a review in any status directory"""
        for status in STORED_STATUSES:
            try:
                review = self.load(review_id, status)
            except CorruptFileError as e:
                logger.warning(f"Skipping unreadable review file: {e}")
                continue
            if review is not None:
                return status, review
        return None

    def move(self, review_id: str, from_status: ReviewStatus, to_status: ReviewStatus,
             mutate: Optional[Callable[[Review], None]] = None) -> Review:
        """
        Move a review between status directories

        The destination is written before the source is removed, so a crash
        can leave a duplicate but never lose the review.
        """
        with locked(self._lock_path(review_id)):
            review = self.load(review_id, from_status)
            if review is None:
                raise NotFoundError(f"Review {review_id} not found in {ReviewStatus(from_status).value}",
                                    code='REVIEW_NOT_FOUND')
            review.status = ReviewStatus(to_status)
            if mutate is not None:
                mutate(review)
            write_json(self.path(review_id, to_status), review.to_dict())
            if from_status != to_status:
                delete_file(self.path(review_id, from_status))

        logger.info(f"Review {review_id} moved {ReviewStatus(from_status).value} -> {ReviewStatus(to_status).value}")
        return review

    def delete(self, review_id: str, status: ReviewStatus) -> bool:
        with locked(self._lock_path(review_id)):
            return delete_file(self.path(review_id, status))

    def list_reviews(self, status: ReviewStatus) -> List[Review]:
        """All readable reviews in a status directory; broken files are skipped"""
        reviews = []
        for path in iter_json_files(self.directory(status)):
            if path.name == INDEX_FILE:
                continue
            try:
                review = self.load(path.stem, status)
            except StorageError as e:
                logger.warning(f"Skipping {path.name}: {e}")
                continue
            if review is not None:
                reviews.append(review)
        return reviews
