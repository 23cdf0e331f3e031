"""
Audit Models for Tradebook

Every significant action in the system is logged for audit purposes.
This provides:
1. Complete traceability of every local mutation and its delivery
2. Debugging information when a sync pass goes wrong
3. A history the owner can read back (which entry failed, and why)

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
They live in the local store, so they are written even while offline.
"""

import datetime as dt
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from tradebook.models.ledger import utc_now


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Each stage of a mutation's life (local write, enqueue, delivery,
    reconciliation) has its own event type.
    """
    # Local mutations
    MUTATION_RECORDED = "mutation_recorded"
    VALIDATION_FAILED = "validation_failed"
    OUTBOX_ENQUEUED = "outbox_enqueued"
    RECYCLE_BIN_PURGED = "recycle_bin_purged"

    # Sync
    SYNC_STARTED = "sync_started"
    SYNC_ITEM_APPLIED = "sync_item_applied"
    SYNC_ITEM_FAILED = "sync_item_failed"
    SYNC_ITEM_REJECTED = "sync_item_rejected"
    SYNC_ITEM_DEFERRED = "sync_item_deferred"
    ID_RECONCILED = "id_reconciled"
    SYNC_COMPLETED = "sync_completed"
    MIRROR_REFRESHED = "mirror_refreshed"

    # Session / system
    AUTH_EXPIRED = "auth_expired"
    CONNECTIVITY_CHANGED = "connectivity_changed"
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: dt.datetime = Field(
        default_factory=utc_now,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Table or kind of entity (e.g., 'stock_transactions', 'outbox')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="ID of the entity this event relates to (pending or confirmed)"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events of one sync pass)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )

    # Additional data (event-specific)
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    @property
    def id(self) -> str:
        """Key under which the event is stored."""
        return str(self.event_id)

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.mutation_recorded("transfer_funds", [...])
        event = AuditEventBuilder.item_rejected(entry_id, "settle_direct", reason, pass_id)
    """

    @staticmethod
    def mutation_recorded(
        operation: str,
        records: list[tuple[str, str]],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        table, record_id = records[0] if records else (None, None)
        return AuditEvent(
            event_type=AuditEventType.MUTATION_RECORDED,
            entity_type=table,
            entity_id=record_id,
            correlation_id=correlation_id,
            description=f"Recorded locally: {operation}",
            details={
                "operation": operation,
                "records": [f"{t}:{i}" for t, i in records],
            },
            is_user_action=True,
        )

    @staticmethod
    def validation_failed(
        operation: str,
        issues: list[dict],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.VALIDATION_FAILED,
            severity=AuditSeverity.WARNING,
            correlation_id=correlation_id,
            description=f"Rejected before saving: {operation}",
            details={"operation": operation, "issues": issues},
            is_user_action=True,
        )

    @staticmethod
    def outbox_enqueued(
        entry_id: str,
        action_tag: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.OUTBOX_ENQUEUED,
            entity_type="outbox",
            entity_id=entry_id,
            correlation_id=correlation_id,
            description=f"Queued for sync: {action_tag}",
            details={"action": action_tag},
        )

    @staticmethod
    def sync_started(queued: int, correlation_id: UUID) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_STARTED,
            correlation_id=correlation_id,
            description=f"Sync started with {queued} queued item(s)",
            details={"queued": queued},
        )

    @staticmethod
    def item_applied(
        entry_id: str,
        action_tag: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_ITEM_APPLIED,
            entity_type="outbox",
            entity_id=entry_id,
            correlation_id=correlation_id,
            description=f"Applied remotely: {action_tag}",
            details={"action": action_tag},
        )

    @staticmethod
    def item_failed(
        entry_id: str,
        action_tag: str,
        error_message: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_ITEM_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type="outbox",
            entity_id=entry_id,
            correlation_id=correlation_id,
            description=f"Sync failed, will retry: {action_tag}",
            details={"action": action_tag},
            error_code="transient_network",
            error_message=error_message,
        )

    @staticmethod
    def item_rejected(
        entry_id: str,
        action_tag: str,
        reason: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_ITEM_REJECTED,
            severity=AuditSeverity.ERROR,
            entity_type="outbox",
            entity_id=entry_id,
            correlation_id=correlation_id,
            description=f"Remote store refused: {action_tag}",
            details={"action": action_tag},
            error_code="remote_rejection",
            error_message=reason,
        )

    @staticmethod
    def item_deferred(
        entry_id: str,
        action_tag: str,
        waiting_for: list[str],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_ITEM_DEFERRED,
            severity=AuditSeverity.WARNING,
            entity_type="outbox",
            entity_id=entry_id,
            correlation_id=correlation_id,
            description=f"Waiting for earlier records to sync: {action_tag}",
            details={"action": action_tag, "waiting_for": waiting_for},
        )

    @staticmethod
    def id_reconciled(
        table: str,
        pending_id: str,
        server_id: str,
        rewritten: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ID_RECONCILED,
            entity_type=table,
            entity_id=server_id,
            correlation_id=correlation_id,
            description=f"Confirmed {pending_id} as {server_id}",
            details={
                "pending_id": pending_id,
                "server_id": server_id,
                "references_rewritten": rewritten,
            },
        )

    @staticmethod
    def sync_completed(
        succeeded: int,
        failed: int,
        rejected: int,
        deferred: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        problems = failed + rejected + deferred
        return AuditEvent(
            event_type=AuditEventType.SYNC_COMPLETED,
            severity=AuditSeverity.WARNING if problems else AuditSeverity.INFO,
            correlation_id=correlation_id,
            description=f"Sync finished: {succeeded} applied, {problems} not applied",
            details={
                "succeeded": succeeded,
                "failed": failed,
                "rejected": rejected,
                "deferred": deferred,
            },
        )

    @staticmethod
    def mirror_refreshed(counts: dict[str, int]) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MIRROR_REFRESHED,
            description="Local mirror reloaded from the remote store",
            details={"rows": counts},
        )

    @staticmethod
    def recycle_bin_purged(counts: dict[str, int]) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECYCLE_BIN_PURGED,
            description=f"Recycle bin emptied ({sum(counts.values())} records)",
            details={"purged": counts},
            is_user_action=True,
        )

    @staticmethod
    def auth_expired(
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.AUTH_EXPIRED,
            severity=AuditSeverity.ERROR,
            correlation_id=correlation_id,
            description="Remote session expired; sign in again to resume sync",
            error_code="auth_expired",
            error_message=error_message,
        )

    @staticmethod
    def connectivity_changed(is_online: bool) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CONNECTIVITY_CHANGED,
            description="Back online" if is_online else "Went offline",
            details={"is_online": is_online},
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            correlation_id=correlation_id,
            description=f"System error: {error_type}",
            details=details or {},
            error_code=error_type,
            error_message=error_message,
        )
