# core/audit.py
"""
Append-only JSONL audit trail
"""

import json
import logging
from pathlib import Path
from typing import Any, Union

from core.storage import to_iso, utcnow

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Appends one JSON record per event to a log file.

    Audit output is best effort: a failing write is reported through logging
    and never interrupts the operation being audited.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def log(self, event: str, **fields: Any) -> None:
        record = {'timestamp': to_iso(utcnow()), 'event': event}
        record.update(fields)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open('a', encoding='utf-8') as handle:
                handle.write(json.dumps(record, default=str))
                handle.write('\n')
        except OSError as e:
            logger.error(f"Failed to write audit event {event} to {self.path}: {e}")


class AuditTrail:
    """Named audit logs living under ``<data>/audit``"""

    def __init__(self, audit_dir: Union[str, Path]):
        self.audit_dir = Path(audit_dir)
        self.emails = AuditLogger(self.audit_dir / 'emails.log')
        self.email_errors = AuditLogger(self.audit_dir / 'email-errors.log')
        self.workflows = AuditLogger(self.audit_dir / 'workflows.log')
        self.tokens = AuditLogger(self.audit_dir / 'tokens.log')
        self.token_cleanup = AuditLogger(self.audit_dir / 'token-cleanup.log')
        self.verifications = AuditLogger(self.audit_dir / 'verifications.log')
