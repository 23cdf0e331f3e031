"""
Audit Logger

DESIGN DECISION: Every significant action in the system is logged.
This provides:
1. Complete traceability from local write to remote application
2. Debugging capability when a queued item keeps failing
3. The owner can see why a record never reached the server

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (doesn't crash the app if logging fails)
- Supports correlation IDs to trace related events (one sync pass, one operation)
"""

import logging
from typing import Optional
from uuid import UUID, uuid4

import structlog

from tradebook.models.audit import AuditEvent, AuditEventBuilder
from tradebook.services.storage import AuditStorageInterface


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structlog (JSON lines through the stdlib logging module)."""
    logging.basicConfig(format="%(message)s", level=getattr(logging, log_level, logging.INFO))
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. The audit storage (for persistence and user visibility)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("tradebook.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity.value in ("error", "critical"):
            self._logger.error("audit_event", **log_dict)
        elif event.severity.value == "warning":
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            return await self._storage.append_event(event)

        return True

    async def log_mutation(
        self,
        operation: str,
        records: list[tuple[str, str]],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a committed local mutation."""
        await self.log(AuditEventBuilder.mutation_recorded(
            operation=operation,
            records=records,
            correlation_id=correlation_id,
        ))

    async def log_validation_failed(
        self,
        operation: str,
        issues: list[dict],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.validation_failed(
            operation=operation,
            issues=issues,
            correlation_id=correlation_id,
        ))

    async def log_enqueued(
        self,
        entry_id: str,
        action_tag: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.outbox_enqueued(
            entry_id=entry_id,
            action_tag=action_tag,
            correlation_id=correlation_id,
        ))

    async def log_sync_started(self, queued: int, correlation_id: UUID) -> None:
        await self.log(AuditEventBuilder.sync_started(queued, correlation_id))

    async def log_item_applied(
        self,
        entry_id: str,
        action_tag: str,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.item_applied(entry_id, action_tag, correlation_id))

    async def log_item_failed(
        self,
        entry_id: str,
        action_tag: str,
        error_message: str,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.item_failed(
            entry_id, action_tag, error_message, correlation_id,
        ))

    async def log_item_rejected(
        self,
        entry_id: str,
        action_tag: str,
        reason: str,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.item_rejected(
            entry_id, action_tag, reason, correlation_id,
        ))

    async def log_item_deferred(
        self,
        entry_id: str,
        action_tag: str,
        waiting_for: list[str],
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.item_deferred(
            entry_id, action_tag, waiting_for, correlation_id,
        ))

    async def log_id_reconciled(
        self,
        table: str,
        pending_id: str,
        server_id: str,
        rewritten: int,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.id_reconciled(
            table, pending_id, server_id, rewritten, correlation_id,
        ))

    async def log_sync_completed(
        self,
        succeeded: int,
        failed: int,
        rejected: int,
        deferred: int,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.sync_completed(
            succeeded, failed, rejected, deferred, correlation_id,
        ))

    async def log_auth_expired(
        self,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.auth_expired(error_message, correlation_id))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new operation (e.g., a sync pass).
    Pass it through all subsequent operations.
    """
    return uuid4()
