"""
Portfolio Agent Core: Audit Logger

Append-only JSONL trail of finalized decisions and emergency shutdowns.
"""

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.models import Decision

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit trail logger.

    Logs:
    - Every finalized Decision (including PENDING and REJECTED ones)
    - Emergency shutdowns with the agents they stopped

    Output format: JSONL (one JSON object per line). Write failures are
    logged and never interrupt the caller.
    """

    def __init__(self, audit_file: Optional[str] = None):
        self.audit_file = Path(audit_file) if audit_file else Path("logs/decisions.jsonl")
        self.audit_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def log_decision(self, agent_id: str, decision: Decision) -> None:
        entry = {"event": "decision", "agent_id": agent_id}
        entry.update(decision.to_dict())
        self._write(entry)

    def log_shutdown(self, ts: datetime, reason: str, stopped: List[str], failed: List[str]) -> None:
        self._write({
            "event": "emergency_shutdown",
            "timestamp": ts.isoformat(),
            "reason": reason,
            "stopped_agents": stopped,
            "failed_agents": failed,
        })

    def _write(self, entry: Dict[str, Any]) -> None:
        try:
            line = json.dumps(entry, default=str)
            with self._lock:
                with open(self.audit_file, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to write audit log: {e}")

    def get_recent(self, n: int = 10, event: Optional[str] = None) -> List[Dict[str, Any]]:
        """Last n entries, optionally filtered by event type."""
        if not self.audit_file.exists():
            return []

        entries = []
        with self._lock:
            with open(self.audit_file, "r", encoding="utf-8") as f:
                for line in f:
                    try:
                        entry = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if event is None or entry.get("event") == event:
                        entries.append(entry)
        return entries[-n:]
