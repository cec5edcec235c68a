"""
Tamper-Aware Audit System
=========================

Append-only audit logging with integrity verification.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional


class AuditSeverity(Enum):
    """Audit event severity levels."""
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class AuditEventType(Enum):
    """Types of auditable events."""
    # Accounts
    USER_REGISTERED = "USER_REGISTERED"
    EMAIL_CONFIRMED = "EMAIL_CONFIRMED"
    REGISTRATION_REFUSED = "REGISTRATION_REFUSED"

    # Authentication
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILURE = "LOGIN_FAILURE"
    LOGOUT = "LOGOUT"
    SESSIONS_REVOKED = "SESSIONS_REVOKED"
    CSRF_REJECTED = "CSRF_REJECTED"

    # Vault membership
    VAULT_CREATED = "VAULT_CREATED"
    VAULT_MEMBER_ADDED = "VAULT_MEMBER_ADDED"
    VAULT_MEMBER_REMOVED = "VAULT_MEMBER_REMOVED"


@dataclass
class AuditEvent:
    """An auditable security event."""
    event_type: AuditEventType
    severity: AuditSeverity
    timestamp: datetime
    user_id: Optional[str] = None
    client_ip: Optional[str] = None
    description: str = ""
    details: Dict = field(default_factory=dict)

    # Computed fields
    event_id: str = field(default="")
    previous_hash: str = field(default="")
    event_hash: str = field(default="")

    def __post_init__(self):
        if not self.event_id:
            self.event_id = hashlib.sha256(
                f"{self.timestamp.isoformat()}{self.event_type.value}{os.urandom(8).hex()}".encode()
            ).hexdigest()[:16]

    def compute_hash(self, previous_hash: str) -> str:
        """Compute event hash for chain integrity."""
        self.previous_hash = previous_hash
        self.event_hash = hashlib.sha256(
            json.dumps(self._chained_fields(), sort_keys=True).encode()
        ).hexdigest()
        return self.event_hash

    def _chained_fields(self) -> Dict:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "timestamp": self.timestamp.isoformat(),
            "user_id": self.user_id,
            "client_ip": self.client_ip,
            "description": self.description,
            "details": self.details,
            "previous_hash": self.previous_hash,
        }

    def to_dict(self) -> Dict:
        """Convert to dictionary for storage."""
        data = self._chained_fields()
        data["event_hash"] = self.event_hash
        return data


class TamperAwareAuditLog:
    """
    Append-only audit log with tamper detection.

    Features:
    - Chained hashes for integrity
    - Append-only (no deletion)
    - JSON Lines format
    - No tokens, passwords or key material
    """

    def __init__(self, log_path: Path):
        self._log_path = log_path
        self._lock = threading.Lock()
        self._last_hash = "genesis"
        self._event_count = 0
        self._log = logging.getLogger("teamvault.audit")

        log_path.parent.mkdir(parents=True, exist_ok=True)

        self._load_chain()

    @property
    def event_count(self) -> int:
        return self._event_count

    def _load_chain(self):
        """Resume the chain from an existing file."""
        if not self._log_path.exists():
            return

        with open(self._log_path, "r") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    self._log.warning("Audit log contains an unreadable line")
                    continue
                self._last_hash = event.get("event_hash", self._last_hash)
                self._event_count += 1

    def log(
        self,
        event_type: AuditEventType,
        severity: AuditSeverity,
        description: str,
        user_id: str = None,
        client_ip: str = None,
        details: Dict = None,
    ) -> str:
        """
        Log an audit event.

        Returns:
            Event ID
        """
        event = AuditEvent(
            event_type=event_type,
            severity=severity,
            timestamp=datetime.now(timezone.utc),
            user_id=user_id,
            client_ip=client_ip,
            description=description,
            details=details or {},
        )

        with self._lock:
            event.compute_hash(self._last_hash)

            with open(self._log_path, "a") as f:
                f.write(json.dumps(event.to_dict()) + "\n")
                f.flush()
                os.fsync(f.fileno())

            self._last_hash = event.event_hash
            self._event_count += 1

        return event.event_id

    def verify_integrity(self) -> tuple[bool, int]:
        """
        Verify log chain integrity.

        Every event's hash is recomputed and must match both the stored
        value and the next event's ``previous_hash``.

        Returns:
            Tuple of (is_valid, event_count)
        """
        if not self._log_path.exists():
            return True, 0

        previous_hash = "genesis"
        count = 0

        with open(self._log_path, "r") as f:
            for line in f:
                if not line.strip():
                    continue

                try:
                    stored = json.loads(line)
                    event = AuditEvent(
                        event_type=AuditEventType(stored["event_type"]),
                        severity=AuditSeverity(stored["severity"]),
                        timestamp=datetime.fromisoformat(stored["timestamp"]),
                        user_id=stored.get("user_id"),
                        client_ip=stored.get("client_ip"),
                        description=stored.get("description", ""),
                        details=stored.get("details") or {},
                        event_id=stored["event_id"],
                    )
                except (json.JSONDecodeError, KeyError, ValueError):
                    return False, count

                if stored.get("previous_hash") != previous_hash:
                    return False, count
                if event.compute_hash(previous_hash) != stored.get("event_hash"):
                    return False, count

                previous_hash = event.event_hash
                count += 1

        return True, count

    def get_events(
        self,
        since: datetime = None,
        event_type: AuditEventType = None,
        user_id: str = None,
        limit: int = 100,
    ) -> List[Dict]:
        """Get filtered events (read-only)."""
        events = []

        if not self._log_path.exists():
            return events

        with open(self._log_path, "r") as f:
            for line in f:
                if not line.strip():
                    continue

                event = json.loads(line)

                if since and datetime.fromisoformat(event["timestamp"]) < since:
                    continue
                if event_type and event["event_type"] != event_type.value:
                    continue
                if user_id and event.get("user_id") != user_id:
                    continue

                events.append(event)

                if len(events) >= limit:
                    break

        return events
