"""
Audit Logging Module.

This module records every program, process and block state change as an
append-only audit trail.
"""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..models import AuditRecord

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Append-only logger for audit events.

    Persists audit records as daily JSONL files when a directory is
    configured, otherwise keeps them in memory. Writing never raises:
    a failed write is logged and the caller's operation proceeds.
    """

    def __init__(self, audit_dir: Optional[str] = None):
        """
        Initialize the audit logger.

        Args:
            audit_dir: Directory to store audit logs. If None, records
                       are kept in memory only.
        """
        self.audit_dir = Path(audit_dir) if audit_dir else None
        self.records: List[AuditRecord] = []
        self._lock = threading.Lock()

        if self.audit_dir:
            self.audit_dir.mkdir(parents=True, exist_ok=True)

    def record(
        self,
        user_id: Optional[str],
        action: str,
        entity_type: str,
        entity_id: str,
        changes: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """
        Build and log an audit record.

        Args:
            user_id: Acting user
            action: Dotted action name, e.g. "process.advance"
            entity_type: Kind of entity affected
            entity_id: ID of the entity affected
            changes: Optional {"before": ..., "after": ...} snapshot
            metadata: Extra context

        Returns:
            The record ID, or None if the write failed
        """
        record = AuditRecord(
            user_id=user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            changes=changes,
            metadata=metadata or {},
        )
        try:
            return self.log_event(record)
        except Exception as e:
            logger.error(f"Failed to log audit event {action} for {entity_type}/{entity_id}: {e}")
            return None

    def log_event(self, record: AuditRecord) -> str:
        """
        Log an audit event.

        Args:
            record: The audit record to log

        Returns:
            The record ID
        """
        with self._lock:
            if self.audit_dir is None:
                self.records.append(record)
            else:
                date_str = datetime.now(timezone.utc).strftime("%Y-%m-%d")
                log_file = self.audit_dir / f"audit_{date_str}.jsonl"

                with open(log_file, "a", encoding="utf-8") as f:
                    data = record.model_dump(mode="json")
                    f.write(json.dumps(data) + "\n")

        logger.info(f"Logged audit event {record.action} on {record.entity_type}/{record.entity_id}")
        return record.id

    def get_events(
        self,
        user_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        action: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditRecord]:
        """
        Retrieve audit events with filtering, most recent first.

        Args:
            user_id: Filter by acting user
            entity_id: Filter by affected entity
            action: Filter by action name
            start_date: Filter by start date
            end_date: Filter by end date
            limit: Maximum number of records to return

        Returns:
            List of matching AuditRecords
        """
        results = []

        for record in self._iter_recent():
            if len(results) >= limit:
                break
            if user_id and record.user_id != user_id:
                continue
            if entity_id and record.entity_id != entity_id:
                continue
            if action and record.action != action:
                continue
            if start_date and record.timestamp < start_date:
                continue
            if end_date and record.timestamp > end_date:
                continue
            results.append(record)

        return results

    def get_entity_trail(self, entity_id: str, limit: int = 1000) -> List[AuditRecord]:
        """Audit history of a single entity in chronological order."""
        return list(reversed(self.get_events(entity_id=entity_id, limit=limit)))

    def _iter_recent(self):
        if self.audit_dir is None:
            with self._lock:
                records = list(self.records)
            yield from reversed(records)
            return

        for log_file in sorted(self.audit_dir.glob("audit_*.jsonl"), reverse=True):
            try:
                with open(log_file, encoding="utf-8") as f:
                    lines = f.readlines()
            except Exception as e:
                logger.error(f"Failed to read log file {log_file}: {e}")
                continue

            for line in reversed(lines):
                try:
                    yield AuditRecord(**json.loads(line))
                except Exception as e:
                    logger.warning(f"Failed to parse audit record: {e}")
                    continue
