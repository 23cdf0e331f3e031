"""
Tests for Tradebook models

Test strategy:
1. Unit tests for the record models and their invariants
2. Outbox action serialization and pending-id scanning
3. Audit and validation result models
"""

import datetime as dt
from decimal import Decimal

import pytest
from pydantic import ValidationError

from tradebook.models import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
    BankTransaction,
    BankTxType,
    CashTransaction,
    CashTxType,
    Confirmed,
    LedgerEntry,
    LedgerStatus,
    LedgerType,
    OutboxEntry,
    Pending,
    PaymentInstallment,
    PaymentMethod,
    RecordState,
    StockTransaction,
    StockTxType,
    Table,
    ValidationIssue,
    ValidationResult,
    is_pending,
    ledger_status,
    money,
    new_pending_id,
    parse_record_id,
)
from tradebook.models.ledger import COUNTERPART_FIELDS, REFERENCES_TO
from tradebook.models.outbox import (
    CreateRecord,
    CreateStockTransaction,
    SettleTotal,
    UpdateRecord,
    pending_references,
    replace_id,
)


TODAY = dt.date(2024, 3, 1)


class TestIdentity:
    """Tests for pending/confirmed ids."""

    def test_new_pending_id_is_pending(self):
        """Generated ids carry the pending prefix and are unique."""
        first, second = new_pending_id(), new_pending_id()
        assert is_pending(first)
        assert first != second

    def test_parse_pending(self):
        """A prefixed id parses to Pending and prints back unchanged."""
        parsed = parse_record_id("tmp_abc123")
        assert parsed == Pending(token="abc123")
        assert str(parsed) == "tmp_abc123"

    def test_parse_confirmed(self):
        """Anything else is a server id."""
        parsed = parse_record_id("6f1c2a")
        assert parsed == Confirmed(server_id="6f1c2a")
        assert not is_pending("6f1c2a")

    def test_parse_rejects_empty_and_bare_prefix(self):
        with pytest.raises(ValueError):
            parse_record_id("")
        with pytest.raises(ValueError):
            parse_record_id("tmp_")

    def test_is_pending_ignores_non_strings(self):
        assert not is_pending(None)
        assert not is_pending(42)


class TestMonetaryModels:
    """Tests for cash and bank transactions."""

    def test_difference_is_derived(self):
        """difference = actual - expected when not given."""
        tx = CashTransaction(
            date=TODAY,
            type=CashTxType.EXPENSE,
            category="Rent",
            expected_amount=Decimal("500"),
            actual_amount=Decimal("480"),
        )
        assert tx.difference == Decimal("-20")
        assert tx.signed_amount == Decimal("-480")

    def test_inconsistent_difference_rejected(self):
        with pytest.raises(ValidationError):
            CashTransaction(
                date=TODAY,
                type=CashTxType.INCOME,
                category="Sales",
                expected_amount=Decimal("100"),
                actual_amount=Decimal("100"),
                difference=Decimal("5"),
            )

    def test_negative_amount_rejected(self):
        with pytest.raises(ValidationError):
            CashTransaction(
                date=TODAY,
                type=CashTxType.INCOME,
                category="Sales",
                expected_amount=Decimal("-1"),
                actual_amount=Decimal("-1"),
            )

    def test_bank_transaction_requires_bank(self):
        with pytest.raises(ValidationError):
            BankTransaction(
                date=TODAY,
                type=BankTxType.DEPOSIT,
                category="Sales",
                expected_amount=Decimal("1"),
                actual_amount=Decimal("1"),
            )

    def test_bank_withdrawal_is_negative(self):
        tx = BankTransaction(
            date=TODAY,
            type=BankTxType.WITHDRAWAL,
            category="Rent",
            bank_id="bank-1",
            expected_amount=Decimal("70"),
            actual_amount=Decimal("70"),
        )
        assert tx.signed_amount == Decimal("-70")

    def test_lifecycle(self):
        """Setting deleted_at moves a record to the recycle bin."""
        tx = CashTransaction(
            date=TODAY,
            type=CashTxType.INCOME,
            category="Sales",
            expected_amount=Decimal("1"),
            actual_amount=Decimal("1"),
        )
        assert tx.lifecycle == RecordState.ACTIVE
        deleted = tx.model_copy(update={"deleted_at": dt.datetime.now(dt.timezone.utc)})
        assert deleted.lifecycle == RecordState.DELETED
        assert not deleted.is_active


class TestStockModels:
    """Tests for stock transactions."""

    def test_line_total_is_quantized(self):
        tx = StockTransaction(
            date=TODAY,
            item_name="Copper",
            type=StockTxType.PURCHASE,
            weight=Decimal("3.333"),
            price_per_kg=Decimal("3"),
            payment_method=PaymentMethod.CASH,
            expected_amount=Decimal("10"),
            actual_amount=Decimal("10"),
        )
        assert tx.line_total == Decimal("10.00")

    def test_bank_payment_requires_bank(self):
        with pytest.raises(ValidationError):
            StockTransaction(
                date=TODAY,
                item_name="Copper",
                type=StockTxType.PURCHASE,
                weight=Decimal("1"),
                price_per_kg=Decimal("1"),
                payment_method=PaymentMethod.BANK,
                expected_amount=Decimal("1"),
                actual_amount=Decimal("1"),
            )

    def test_credit_requires_contact(self):
        with pytest.raises(ValidationError):
            StockTransaction(
                date=TODAY,
                item_name="Copper",
                type=StockTxType.SALE,
                weight=Decimal("1"),
                price_per_kg=Decimal("1"),
                payment_method=PaymentMethod.CREDIT,
                expected_amount=Decimal("1"),
                actual_amount=Decimal("1"),
            )

    def test_zero_weight_rejected(self):
        with pytest.raises(ValidationError):
            StockTransaction(
                date=TODAY,
                item_name="Copper",
                type=StockTxType.SALE,
                weight=Decimal("0"),
                price_per_kg=Decimal("1"),
                payment_method=PaymentMethod.CASH,
                expected_amount=Decimal("0"),
                actual_amount=Decimal("0"),
            )

    def test_money_rounds_half_up(self):
        assert money(Decimal("2.005")) == Decimal("2.01")
        assert money(7) == Decimal("7.00")


class TestLedgerModels:
    """Tests for payables, receivables and advances."""

    def test_status_derived(self):
        entry = LedgerEntry(
            date=TODAY,
            type=LedgerType.PAYABLE,
            amount=Decimal("500"),
            paid_amount=Decimal("300"),
            contact_id="c1",
        )
        assert entry.status == LedgerStatus.PARTIALLY_PAID
        assert entry.remaining == Decimal("200")

    def test_ledger_status_boundaries(self):
        assert ledger_status(Decimal("0"), Decimal("10")) == LedgerStatus.UNPAID
        assert ledger_status(Decimal("4"), Decimal("10")) == LedgerStatus.PARTIALLY_PAID
        assert ledger_status(Decimal("10"), Decimal("10")) == LedgerStatus.PAID

    def test_inconsistent_status_rejected(self):
        with pytest.raises(ValidationError):
            LedgerEntry(
                date=TODAY,
                type=LedgerType.RECEIVABLE,
                amount=Decimal("100"),
                paid_amount=Decimal("0"),
                status=LedgerStatus.PAID,
                contact_id="c1",
            )

    def test_overpaid_rejected(self):
        with pytest.raises(ValidationError):
            LedgerEntry(
                date=TODAY,
                type=LedgerType.PAYABLE,
                amount=Decimal("100"),
                paid_amount=Decimal("101"),
                contact_id="c1",
            )

    def test_advance_is_negative_and_paid(self):
        advance = LedgerEntry(
            date=TODAY,
            type=LedgerType.ADVANCE,
            amount=Decimal("-50"),
            contact_id="c1",
        )
        assert advance.status == LedgerStatus.PAID
        assert advance.remaining == Decimal("0")

    def test_positive_advance_rejected(self):
        with pytest.raises(ValidationError):
            LedgerEntry(
                date=TODAY,
                type=LedgerType.ADVANCE,
                amount=Decimal("50"),
                contact_id="c1",
            )

    def test_revalued_rederives_status(self):
        entry = LedgerEntry(
            date=TODAY,
            type=LedgerType.PAYABLE,
            amount=Decimal("100"),
            contact_id="c1",
        )
        paid = entry.revalued(paid_amount=Decimal("100"))
        assert paid.status == LedgerStatus.PAID
        assert paid.id == entry.id
        with pytest.raises(ValueError):
            paid.revalued(amount=Decimal("50"))

    def test_installment_cannot_be_credit(self):
        with pytest.raises(ValidationError):
            PaymentInstallment(
                ledger_entry_id="e1",
                amount=Decimal("1"),
                date=TODAY,
                payment_method=PaymentMethod.CREDIT,
            )


class TestReferenceIndex:
    """Tests for the reverse-reference index."""

    def test_contacts_are_referenced_everywhere(self):
        sources = {source for source, field in REFERENCES_TO[Table.CONTACTS]}
        assert Table.CASH_TRANSACTIONS in sources
        assert Table.STOCK_TRANSACTIONS in sources
        assert Table.LEDGER_ENTRIES in sources

    def test_transfer_legs_reference_each_other(self):
        assert (Table.BANK_TRANSACTIONS, "counterpart_id") in REFERENCES_TO[Table.CASH_TRANSACTIONS]
        assert (Table.CASH_TRANSACTIONS, "counterpart_id") in REFERENCES_TO[Table.BANK_TRANSACTIONS]
        assert "counterpart_id" in COUNTERPART_FIELDS


class TestOutboxModels:
    """Tests for outbox actions."""

    def test_entry_round_trips_through_json(self):
        """The discriminator restores the concrete action type."""
        entry = OutboxEntry(action=UpdateRecord(
            table=Table.CONTACTS, record_id="c1", changes={"name": "Rahim"},
        ))
        restored = OutboxEntry.model_validate(entry.model_dump(mode="json"))
        assert isinstance(restored.action, UpdateRecord)
        assert restored.action_tag == "update_record"
        assert restored.action.idempotency_key == entry.action.idempotency_key

    def test_own_pending_ids_are_not_references(self):
        own = new_pending_id()
        action = CreateRecord(
            table=Table.CONTACTS, data={"id": own, "name": "Rahim"}, local_ids={"record": own},
        )
        assert pending_references(action) == set()

    def test_foreign_pending_ids_are_references(self):
        stock_id, contact_id = new_pending_id(), new_pending_id()
        action = CreateStockTransaction(
            stock={"id": stock_id, "contact_id": contact_id},
            local_ids={"stock": stock_id},
        )
        assert pending_references(action) == {contact_id}

    def test_pending_ids_in_keys_are_references(self):
        entry_id, financial_id = new_pending_id(), new_pending_id()
        action = SettleTotal(
            contact_id="c1",
            ledger_type=LedgerType.PAYABLE,
            amount=Decimal("10"),
            date=TODAY,
            payment_method=PaymentMethod.CASH,
            financial_table=Table.CASH_TRANSACTIONS,
            financial={"id": financial_id},
            installments=[{"id": "tmp_inst", "ledger_entry_id": entry_id}],
            local_ids={"financial": financial_id, entry_id: "tmp_inst"},
        )
        assert pending_references(action) == {entry_id}

    def test_replace_id_rewrites_values_and_keys(self):
        data = {"a": "tmp_x", "tmp_x": ["tmp_x", "other"], "n": 3}
        assert replace_id(data, "tmp_x", "srv") == {"a": "srv", "srv": ["srv", "other"], "n": 3}
        # The input is left alone
        assert data["a"] == "tmp_x"


class TestAuditModels:
    """Tests for audit-related models."""

    def test_audit_event_creation(self):
        event = AuditEvent(
            event_type=AuditEventType.MUTATION_RECORDED,
            description="record_payment committed",
        )
        assert event.severity == AuditSeverity.INFO
        assert event.id == str(event.event_id)

    def test_to_log_dict(self):
        event = AuditEventBuilder.item_rejected("entry-1", "settle_direct", "overpaid", None)
        log = event.to_log_dict()
        assert log["event_type"] == AuditEventType.SYNC_ITEM_REJECTED.value
        assert log["entity_id"] == "entry-1"

    def test_connectivity_event(self):
        event = AuditEventBuilder.connectivity_changed(True)
        assert event.event_type == AuditEventType.CONNECTIVITY_CHANGED


class TestValidationModels:
    """Tests for validation result models."""

    def test_warnings_do_not_invalidate(self):
        result = ValidationResult(stage="semantic", issues=[
            ValidationIssue(field="amount", issue_type="overpayment", message="x", severity="warning"),
        ])
        assert result.is_valid
        assert len(result.warnings) == 1

    def test_errors_invalidate(self):
        result = ValidationResult(stage="schema", issues=[
            ValidationIssue(field="amount", issue_type="invalid_value", message="x"),
        ])
        assert not result.is_valid

    def test_bad_severity_rejected(self):
        with pytest.raises(ValidationError):
            ValidationIssue(field="a", issue_type="b", message="c", severity="fatal")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
