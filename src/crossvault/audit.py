"""
Audit trail — append-only JSONL log of replication outcomes.

One JSON object per line: timestamp, host, event type, target and
structured metadata. Secret values never reach this log; only version
markers, write names and failure kinds do.
"""

from __future__ import annotations

import json
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field


class AuditEntry(BaseModel):
    """A single structured audit log entry."""

    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    event_type: str
    target: str
    detail: str
    host: str = Field(default_factory=socket.gethostname)
    metadata: Optional[dict] = None


def audit_event(
    audit_log: Optional[Path],
    event_type: str,
    target: str,
    detail: str,
    metadata: Optional[dict] = None,
) -> AuditEntry:
    """Append an event to the audit log.

    Args:
        audit_log: Log file path; ``None`` disables writing.
        event_type: RECONCILE_SYNCED, RECONCILE_FAILED, RECONCILE_PLANNED,
            RECORD_DECOMMISSIONED.
        target: Target key the event concerns.
        detail: Human-readable description.
        metadata: Extra structured data.

    Returns:
        The entry, whether or not it was written.
    """
    entry = AuditEntry(event_type=event_type, target=target, detail=detail, metadata=metadata)
    if audit_log is None:
        return entry
    audit_log = Path(audit_log).expanduser()
    audit_log.parent.mkdir(parents=True, exist_ok=True)
    with audit_log.open("a", encoding="utf-8") as f:
        f.write(entry.model_dump_json() + "\n")
    return entry


def read_audit_log(audit_log: Path, limit: int = 0) -> list[AuditEntry]:
    """Read entries, newest last. ``limit`` keeps only the last N."""
    audit_log = Path(audit_log).expanduser()
    if not audit_log.exists():
        return []
    entries = []
    for line in audit_log.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        try:
            entries.append(AuditEntry.model_validate(json.loads(line)))
        except (json.JSONDecodeError, ValueError):
            continue
    return entries[-limit:] if limit else entries
