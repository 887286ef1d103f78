"""
Append-only audit trail.

Entries are hash-chained when appended so edits to retained entries are
detectable; the retention sweep removes whole entries from the old end.
"""

from medguard.core.audit.log import AuditLog
from medguard.core.audit.models import AuditAction, AuditEntry, DenialReason
from medguard.core.audit.retention import RetentionPolicy, RetentionSweeper

__all__ = ["AuditAction", "AuditEntry", "AuditLog", "DenialReason", "RetentionPolicy", "RetentionSweeper"]
