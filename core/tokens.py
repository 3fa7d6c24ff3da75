# core/tokens.py
"""
Verification token management

Tokens are 32 random bytes rendered as 64 hex characters. Only the SHA-256
hash of a token is written to disk, as ``<tokens_dir>/<hash>.json``; the raw
value exists solely in the verification email.
"""

import hashlib
import hmac
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from core.audit import AuditLogger
from core.errors import CorruptFileError, StorageError
from core.storage import (delete_file, discard_lock, iter_json_files, locked, parse_iso,
                          read_json, to_iso, utcnow, write_json)

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32
TOKEN_PATTERN = re.compile(r'^[a-f0-9]{64}$')

# Validation error codes
INVALID_TOKEN = 'INVALID_TOKEN'
ALREADY_USED = 'ALREADY_USED'
EXPIRED_TOKEN = 'EXPIRED_TOKEN'
TOO_MANY_ATTEMPTS = 'TOO_MANY_ATTEMPTS'


def generate_secure_random_string(length: int = 32) -> str:
    return secrets.token_hex(length)


def hash_string(value: str) -> str:
    return hashlib.sha256(value.encode('utf-8')).hexdigest()


def verify_token_hash(token: str, token_hash: str) -> bool:
    return hmac.compare_digest(hash_string(token), token_hash)


def is_valid_token_format(token: Any) -> bool:
    return isinstance(token, str) and bool(TOKEN_PATTERN.match(token))


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass
class VerificationToken:
    """Persisted token record"""
    token_hash: str
    email: str
    review_id: str
    created_at: str
    expires_at: str
    used: bool = False
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tokenHash': self.token_hash,
            'email': self.email,
            'reviewId': self.review_id,
            'createdAt': self.created_at,
            'expiresAt': self.expires_at,
            'used': self.used,
            'attempts': self.attempts,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'VerificationToken':
        try:
            return cls(
                token_hash=data['tokenHash'],
                email=data['email'],
                review_id=data['reviewId'],
                created_at=data['createdAt'],
                expires_at=data['expiresAt'],
                used=bool(data.get('used', False)),
                attempts=int(data.get('attempts', 0)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptFileError(f"Malformed token record: {e}") from e

    def is_expired(self, now=None) -> bool:
        now = now or utcnow()
        return now >= parse_iso(self.expires_at)


@dataclass
class TokenValidation:
    """Outcome of ``TokenManager.validate_token``"""
    valid: bool
    token_data: Optional[VerificationToken] = None
    error: Optional[str] = None


class TokenManager:
    """Creates, validates and consumes single-use verification tokens"""

    def __init__(self,
                 tokens_dir: Union[str, Path],
                 audit: Optional[AuditLogger] = None,
                 cleanup_audit: Optional[AuditLogger] = None,
                 max_attempts: int = 5,
                 max_token_age: timedelta = timedelta(days=7),
                 pending_reviews_dir: Optional[Union[str, Path]] = None,
                 on_unverified_removed: Optional[Callable[[str], None]] = None):
        self.tokens_dir = Path(tokens_dir)
        self.audit = audit
        self.cleanup_audit = cleanup_audit
        self.max_attempts = max_attempts
        self.max_token_age = max_token_age
        self.pending_reviews_dir = Path(pending_reviews_dir) if pending_reviews_dir else None
        self.on_unverified_removed = on_unverified_removed
        self.tokens_dir.mkdir(parents=True, exist_ok=True)

    def _path_for_hash(self, token_hash: str) -> Path:
        return self.tokens_dir / f"{token_hash}.json"

    def _path_for_token(self, token: str) -> Path:
        return self._path_for_hash(hash_string(token))

    def _load(self, path: Path) -> Optional[VerificationToken]:
        data = read_json(path)
        if data is None:
            return None
        return VerificationToken.from_dict(data)

    def create_verification_token(self, email: str, review_id: str,
                                  expiry_hours: float = 24) -> Tuple[str, VerificationToken]:
        """
        Issue a new token bound to ``email`` and ``review_id``

        Returns:
            Tuple of (raw token, persisted record)
        """
        token = generate_secure_random_string(TOKEN_BYTES)
        now = utcnow()
        record = VerificationToken(
            token_hash=hash_string(token),
            email=normalize_email(email),
            review_id=review_id,
            created_at=to_iso(now),
            expires_at=to_iso(now + timedelta(hours=expiry_hours)),
        )
        path = self._path_for_hash(record.token_hash)
        with locked(path):
            write_json(path, record.to_dict())

        self._log_action('created', token, record.email, review_id=review_id)
        logger.info(f"Verification token created for review {review_id}")
        return token, record

    def validate_token(self, token: str) -> TokenValidation:
        """Check a token without consuming it"""
        if not is_valid_token_format(token):
            return TokenValidation(valid=False, error=INVALID_TOKEN)

        try:
            record = self._load(self._path_for_token(token))
        except StorageError as e:
            logger.warning(f"Unreadable token file for {token[:8]}...: {e}")
            return TokenValidation(valid=False, error=INVALID_TOKEN)

        if record is None:
            return TokenValidation(valid=False, error=INVALID_TOKEN)
        if record.used:
            return TokenValidation(valid=False, token_data=record, error=ALREADY_USED)
        if record.is_expired():
            return TokenValidation(valid=False, token_data=record, error=EXPIRED_TOKEN)
        if record.attempts >= self.max_attempts:
            return TokenValidation(valid=False, token_data=record, error=TOO_MANY_ATTEMPTS)

        return TokenValidation(valid=True, token_data=record)

    def mark_token_as_used(self, token: str) -> bool:
        """
        Consume a token

        The check and the write happen under the token's lock, so of two
        concurrent callers exactly one gets True.
        """
        if not is_valid_token_format(token):
            return False

        path = self._path_for_token(token)
        try:
            with locked(path):
                record = self._load(path)
                if record is None or record.used or record.is_expired():
                    return False
                record.used = True
                record.attempts += 1
                write_json(path, record.to_dict())
        except StorageError as e:
            logger.error(f"Failed to mark token {token[:8]}... as used: {e}")
            return False

        self._log_action('used', token, record.email)
        return True

    def increment_token_attempts(self, token: str) -> bool:
        if not is_valid_token_format(token):
            return False

        path = self._path_for_token(token)
        try:
            with locked(path):
                record = self._load(path)
                if record is None:
                    return False
                record.attempts += 1
                write_json(path, record.to_dict())
        except StorageError as e:
            logger.error(f"Failed to increment attempts for token {token[:8]}...: {e}")
            return False

        self._log_action('attempt', token, record.email, attempts=record.attempts)
        return True

    def revoke_token(self, token: str, reason: str = 'Manual revocation') -> bool:
        if not is_valid_token_format(token):
            return False

        path = self._path_for_token(token)
        try:
            with locked(path):
                record = self._load(path)
                if record is None:
                    return False
                record.used = True
                record.attempts = self.max_attempts
                write_json(path, record.to_dict())
        except StorageError as e:
            logger.error(f"Failed to revoke token {token[:8]}...: {e}")
            return False

        self._log_action('revoked', token, record.email, reason=reason)
        return True

    def cleanup_expired_tokens(self) -> Dict[str, int]:
        """
        Delete expired, over-age and corrupted token files

        The still-pending review bound to a removed unused token is deleted as
        well, since it can no longer be verified, and ``on_unverified_removed``
        is called with its review id once the token lock is released.
        """
        cleaned = 0
        errors = 0
        now = utcnow()
        unverified: List[str] = []

        for path in iter_json_files(self.tokens_dir):
            removed = False
            try:
                with locked(path):
                    try:
                        record = self._load(path)
                    except CorruptFileError:
                        removed = delete_file(path)
                        cleaned += 1
                        continue

                    if record is None:
                        continue

                    too_old = now - parse_iso(record.created_at) > self.max_token_age
                    if not (record.is_expired(now) or too_old):
                        continue

                    removed = delete_file(path)
                    cleaned += 1
                    if not record.used:
                        self._remove_pending_review(record.review_id)
                        unverified.append(record.review_id)
            except (StorageError, OSError, ValueError) as e:
                logger.error(f"Token cleanup failed for {path.name}: {e}")
                errors += 1
            finally:
                if removed:
                    discard_lock(path)

        if self.on_unverified_removed:
            for review_id in unverified:
                self.on_unverified_removed(review_id)

        if self.cleanup_audit:
            self.cleanup_audit.log('token_cleanup', cleaned=cleaned, errors=errors)
        logger.info(f"Token cleanup finished: {cleaned} removed, {errors} errors")
        return {'cleaned': cleaned, 'errors': errors}

    def _remove_pending_review(self, review_id: str) -> None:
        if not self.pending_reviews_dir:
            return
        if delete_file(self.pending_reviews_dir / f"{review_id}.json"):
            logger.info(f"Removed unverified pending review {review_id}")

    def get_token_stats(self) -> Dict[str, int]:
        stats = {'total': 0, 'active': 0, 'expired': 0, 'used': 0}
        now = utcnow()

        for record in self._iter_records():
            stats['total'] += 1
            if record.used:
                stats['used'] += 1
            elif record.is_expired(now):
                stats['expired'] += 1
            else:
                stats['active'] += 1
        return stats

    def find_tokens_by_email(self, email: str) -> List[VerificationToken]:
        """Records bound to ``email``, newest first"""
        target = normalize_email(email)
        matches = [r for r in self._iter_records() if r.email == target]
        return sorted(matches, key=lambda r: parse_iso(r.created_at), reverse=True)

    def _iter_records(self):
        for path in iter_json_files(self.tokens_dir):
            try:
                record = self._load(path)
            except StorageError:
                continue
            if record is not None:
                yield record

    def _log_action(self, action: str, token: str, email: str, **extra: Any) -> None:
        if not self.audit:
            return
        self.audit.log(
            f"token_{action}",
            action=action,
            tokenPrefix=token[:8],
            email=email,
            **extra,
        )
