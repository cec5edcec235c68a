"""
Security module - audit trail for authentication and membership events.
"""

from teamvault.security.audit import (
    AuditEvent,
    AuditEventType,
    AuditSeverity,
    TamperAwareAuditLog,
)

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditSeverity",
    "TamperAwareAuditLog",
]
