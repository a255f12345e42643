"""
Audit log module for ProxyFlare.

Every mutating operation appends one JSON line to `<audit_dir>/audit.log`.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from proxyflare.models.models import SagaResult

AUDIT_LOG_NAME = "audit.log"
RESULT_SUCCESS = "success"
RESULT_FAILURE = "failure"


class AuditEntry(BaseModel):
    """One line of the audit log."""

    timestamp: datetime = Field(default_factory=datetime.now)
    operation: str
    entity_type: str
    domain: str = ""
    details: Dict[str, Any] = Field(default_factory=dict)
    result: str = RESULT_SUCCESS
    error: Optional[str] = None
    batch_count: Optional[int] = None


class AuditLogger:
    """
    Append-only JSON-lines audit log.
    """

    def __init__(self, audit_dir: Union[str, Path]):
        """
        Initialize an AuditLogger, creating the directory if needed.

        Args:
            audit_dir: Directory holding audit.log
        """
        self.audit_dir = Path(audit_dir).expanduser()
        self.audit_dir.mkdir(parents=True, exist_ok=True)
        self.log_path = self.audit_dir / AUDIT_LOG_NAME
        self.logger = logging.getLogger("proxyflare.audit")

    def log(self, entry: AuditEntry) -> None:
        """
        Append an entry.

        Args:
            entry: Entry to write
        """
        with open(self.log_path, "a", encoding="utf-8") as f:
            f.write(entry.model_dump_json(exclude_none=True) + "\n")

    def log_result(self, result: SagaResult, batch: bool = False) -> AuditEntry:
        """
        Write the audit entry describing a saga result.

        Batch operations record the first affected domain and the number of
        affected domains; single operations record all their domains.

        Args:
            result: Saga outcome
            batch: Whether the saga was a batch operation

        Returns:
            AuditEntry: The entry written
        """
        domains = result.affected_domains
        details: Dict[str, Any] = dict(result.details)
        if result.backup_path is not None:
            details["backup_path"] = str(result.backup_path)
        if result.failed_step:
            details["failed_step"] = result.failed_step
        if result.failed_domain:
            details["failed_domain"] = result.failed_domain
        if result.completed_count:
            details["completed_count"] = result.completed_count

        entry = AuditEntry(
            operation=result.operation.value,
            entity_type=result.entity_type.value,
            domain=(domains[0] if domains else "")
            if batch
            else ", ".join(domains),
            details=details,
            result=RESULT_SUCCESS if result.success else RESULT_FAILURE,
            error=None if result.success else str(result.cause),
            batch_count=len(domains) if batch else None,
        )
        self.log(entry)
        return entry

    def load_logs(self) -> List[AuditEntry]:
        """
        Read every entry, oldest first.

        Malformed lines are skipped with a warning.

        Returns:
            List[AuditEntry]: Parsed entries
        """
        if not self.log_path.exists():
            return []

        entries = []
        with open(self.log_path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(AuditEntry.model_validate_json(line))
                except ValidationError as e:
                    self.logger.warning(f"Failed to parse audit log line {lineno}: {e}")
        return entries

    def rotate_logs(self, max_entries: int) -> int:
        """
        Keep only the newest max_entries entries.

        Args:
            max_entries: Entries to keep

        Returns:
            int: Number of entries dropped
        """
        entries = self.load_logs()
        if max_entries < 0 or len(entries) <= max_entries:
            return 0

        kept = entries[len(entries) - max_entries :] if max_entries else []
        with open(self.log_path, "w", encoding="utf-8") as f:
            for entry in kept:
                f.write(entry.model_dump_json(exclude_none=True) + "\n")

        dropped = len(entries) - len(kept)
        self.logger.info(f"Rotated audit log, dropped {dropped} entries")
        return dropped
