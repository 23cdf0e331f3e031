"""
Data Models Package

This package contains all Pydantic models used by Tradebook.
Every record, queued action and audit event conforms to these schemas.
"""

from tradebook.models.identity import (
    PENDING_PREFIX,
    Confirmed,
    Pending,
    RecordId,
    is_pending,
    new_pending_id,
    parse_record_id,
)
from tradebook.models.ledger import (
    AppState,
    Bank,
    BankTransaction,
    BankTxType,
    CashTransaction,
    CashTxType,
    Category,
    CategoryDirection,
    CategoryType,
    Contact,
    ContactType,
    InitialStockItem,
    LedgerEntry,
    LedgerStatus,
    LedgerType,
    MonetaryTransaction,
    PaymentInstallment,
    PaymentMethod,
    Record,
    RecordState,
    StockItem,
    StockTransaction,
    StockTxType,
    Table,
    ledger_status,
    money,
)
from tradebook.models.outbox import OutboxEntry, SyncAction
from tradebook.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)
from tradebook.models.validation import (
    PayloadValidationError,
    ValidationIssue,
    ValidationResult,
)

__all__ = [
    # Identity
    "PENDING_PREFIX",
    "Confirmed",
    "Pending",
    "RecordId",
    "is_pending",
    "new_pending_id",
    "parse_record_id",
    # Ledger models
    "AppState",
    "Bank",
    "BankTransaction",
    "BankTxType",
    "CashTransaction",
    "CashTxType",
    "Category",
    "CategoryDirection",
    "CategoryType",
    "Contact",
    "ContactType",
    "InitialStockItem",
    "LedgerEntry",
    "LedgerStatus",
    "LedgerType",
    "MonetaryTransaction",
    "PaymentInstallment",
    "PaymentMethod",
    "Record",
    "RecordState",
    "StockItem",
    "StockTransaction",
    "StockTxType",
    "Table",
    "ledger_status",
    "money",
    # Outbox
    "OutboxEntry",
    "SyncAction",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
    # Validation
    "PayloadValidationError",
    "ValidationIssue",
    "ValidationResult",
]
