"""
Tests for the table-backed remote store and the Google Sheets backend.

No real API calls: handlers run over the in-memory backend, and the
Sheets client is exercised only through its pure helpers and retry loop.
"""

import asyncio
import datetime as dt
from decimal import Decimal

import pytest
import requests
from google.auth.exceptions import RefreshError

from tradebook.config import GoogleSheetsSettings, SyncSettings
from tradebook.models import (
    Category,
    CategoryDirection,
    CategoryType,
    Contact,
    LedgerEntry,
    LedgerType,
    PaymentMethod,
    Table,
    new_pending_id,
)
from tradebook.models.outbox import (
    BatchImport,
    CreateRecord,
    DeleteCategory,
    EmptyRecycleBin,
    SettleDirect,
    SoftDeleteRecord,
    TransferFunds,
    UpdateRecord,
)
from tradebook.services.remote import (
    ACTIVITY_LOG,
    MUTATION_LOG,
    AuthExpiredError,
    GoogleSheetsTableClient,
    RemoteError,
    RemoteRejectionError,
    TransientNetworkError,
    translate_error,
)


TODAY = dt.date(2024, 3, 1)


def create_contact(remote, name="Rahim"):
    contact = Contact(name=name)
    action = CreateRecord(
        table=Table.CONTACTS,
        data=contact.model_dump(mode="json"),
        local_ids={"record": contact.id},
    )
    result = asyncio.run(remote.create_record(action))
    return result.created["record"].id


def cash_row(amount, **links):
    return {
        "id": new_pending_id(),
        "date": TODAY.isoformat(),
        "type": links.pop("type", "expense"),
        "category": "Funds Transfer",
        "expected_amount": amount,
        "actual_amount": amount,
        **links,
    }


class TestTableBackedRemoteStore:
    """Tests for the remote action handlers."""

    def test_create_assigns_server_id(self, remote, remote_client):
        server_id = create_contact(remote)

        [row] = remote_client.tables["contacts"]
        assert row["id"] == server_id
        assert not server_id.startswith("tmp_")
        assert row["name"] == "Rahim"

    def test_replayed_action_applied_once(self, remote, remote_client):
        """The same idempotency key returns the recorded result."""
        contact = Contact(name="Once")
        action = CreateRecord(
            table=Table.CONTACTS,
            data=contact.model_dump(mode="json"),
            local_ids={"record": contact.id},
        )

        first = asyncio.run(remote.create_record(action))
        second = asyncio.run(remote.create_record(action))

        assert first == second
        assert len(remote_client.tables["contacts"]) == 1
        assert len(remote_client.tables[MUTATION_LOG]) == 1
        assert len(remote_client.tables[ACTIVITY_LOG]) == 1

    def test_missing_reference_rejected(self, remote, remote_client):
        entry = LedgerEntry(
            date=TODAY, type=LedgerType.PAYABLE, amount=Decimal("10"), contact_id="srv-missing",
        )
        action = CreateRecord(
            table=Table.LEDGER_ENTRIES,
            data=entry.model_dump(mode="json"),
            local_ids={"record": entry.id},
        )

        with pytest.raises(RemoteRejectionError):
            asyncio.run(remote.create_record(action))
        assert remote_client.tables.get("ledger_entries", []) == []
        # A rejected action is not recorded, so it is not "applied"
        assert remote_client.tables.get(MUTATION_LOG, []) == []

    def test_invalid_row_rejected(self, remote):
        action = CreateRecord(
            table=Table.CONTACTS,
            data={"id": new_pending_id(), "name": ""},
            local_ids={},
        )
        with pytest.raises(RemoteRejectionError):
            asyncio.run(remote.create_record(action))

    def test_update_unknown_record_rejected(self, remote):
        action = UpdateRecord(table=Table.CONTACTS, record_id="srv-x", changes={"name": "X"})
        with pytest.raises(RemoteRejectionError):
            asyncio.run(remote.update_record(action))

    def test_transfer_cross_links_rewritten_in_batch(self, remote, remote_client):
        """Both legs get server ids and point at each other's server id."""
        bank_id = asyncio.run(remote.create_record(CreateRecord(
            table=Table.BANKS,
            data={"id": new_pending_id(), "name": "City Bank"},
            local_ids={},
        ))).created["record"].id
        cash = cash_row("100")
        bank = {**cash_row("100", type="deposit"), "bank_id": bank_id}
        cash["counterpart_id"], bank["counterpart_id"] = bank["id"], cash["id"]

        result = asyncio.run(remote.transfer_funds(TransferFunds(
            cash=cash, bank=bank, local_ids={"cash": cash["id"], "bank": bank["id"]},
        )))

        [cash_stored] = remote_client.tables["cash_transactions"]
        [bank_stored] = remote_client.tables["bank_transactions"]
        assert cash_stored["id"] == result.created["cash"].id
        assert cash_stored["counterpart_id"] == bank_stored["id"]
        assert bank_stored["counterpart_id"] == cash_stored["id"]

    def test_settle_direct_rejects_overpayment(self, remote, remote_client):
        contact_id = create_contact(remote)
        entry = LedgerEntry(
            date=TODAY, type=LedgerType.RECEIVABLE, amount=Decimal("50"), contact_id=contact_id,
        )
        entry_id = asyncio.run(remote.create_record(CreateRecord(
            table=Table.LEDGER_ENTRIES, data=entry.model_dump(mode="json"), local_ids={},
        ))).created["record"].id

        financial = cash_row("80", type="income", linked_ledger_id=entry_id)
        action = SettleDirect(
            ledger_entry_id=entry_id,
            amount=Decimal("80"),
            financial_table=Table.CASH_TRANSACTIONS,
            financial=financial,
            installment={
                "id": new_pending_id(),
                "ledger_entry_id": entry_id,
                "amount": "80",
                "date": TODAY.isoformat(),
                "payment_method": PaymentMethod.CASH.value,
                "monetary_tx_id": financial["id"],
            },
        )

        with pytest.raises(RemoteRejectionError):
            asyncio.run(remote.settle_direct(action))
        assert remote_client.tables.get("cash_transactions", []) == []

    def test_soft_delete_then_empty_recycle_bin(self, remote, remote_client):
        contact_id = create_contact(remote)
        asyncio.run(remote.soft_delete_record(SoftDeleteRecord(
            table=Table.CONTACTS, record_id=contact_id,
        )))
        assert remote_client.tables["contacts"][0]["deleted_at"]

        result = asyncio.run(remote.empty_recycle_bin(EmptyRecycleBin()))

        assert result.affected == 1
        assert remote_client.tables["contacts"] == []

    def test_essential_category_cannot_be_deleted(self, remote, remote_client):
        category = Category(
            id="essential-cash-credit-sales",
            name="Sales",
            type=CategoryType.CASH,
            direction=CategoryDirection.CREDIT,
            is_deletable=False,
        )
        remote_client.tables["categories"] = [category.model_dump(mode="json")]

        with pytest.raises(RemoteRejectionError):
            asyncio.run(remote.delete_category(DeleteCategory(category_id=category.id)))

    def test_deleting_missing_category_is_noop(self, remote):
        result = asyncio.run(remote.delete_category(DeleteCategory(category_id="gone")))
        assert result.affected == 0

    def test_batch_import_replaces_table(self, remote, remote_client):
        create_contact(remote, "Old")
        rows = [Contact(id=f"imp-{i}", name=f"C{i}").model_dump(mode="json") for i in range(3)]

        result = asyncio.run(remote.batch_import(BatchImport(tables={Table.CONTACTS: rows})))

        assert result.affected == 3
        assert [r["id"] for r in remote_client.tables["contacts"]] == ["imp-0", "imp-1", "imp-2"]


class TestGoogleSheetsBackend:
    """Tests for the Google Sheets client without touching the network."""

    @pytest.fixture
    def client(self, tmp_path):
        credentials = tmp_path / "credentials.json"
        credentials.write_text("{}")
        return GoogleSheetsTableClient(
            settings=GoogleSheetsSettings(
                credentials_path=str(credentials),
                spreadsheet_id="sheet-id",
            ),
            sync_settings=SyncSettings(
                retry_attempts=3,
                retry_min_wait_seconds=0,
                retry_max_wait_seconds=0,
            ),
        )

    def test_refresh_error_means_auth_expired(self):
        assert isinstance(translate_error(RefreshError("invalid_grant")), AuthExpiredError)

    def test_connection_error_is_transient(self):
        error = translate_error(requests.exceptions.ConnectionError("down"))
        assert isinstance(error, TransientNetworkError)

    def test_unknown_error_is_generic(self):
        error = translate_error(RuntimeError("odd"))
        assert type(error) is RemoteError

    def test_transient_errors_are_retried(self, client):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise requests.exceptions.Timeout("slow")
            return "ok"

        assert client._call(flaky) == "ok"
        assert len(calls) == 3

    def test_retries_are_bounded(self, client):
        calls = []

        def down():
            calls.append(1)
            raise requests.exceptions.ConnectionError("down")

        with pytest.raises(TransientNetworkError):
            client._call(down)
        assert len(calls) == 3

    def test_auth_errors_are_not_retried(self, client):
        calls = []

        def expired():
            calls.append(1)
            raise RefreshError("expired")

        with pytest.raises(AuthExpiredError):
            client._call(expired)
        assert len(calls) == 1

    def test_row_cells_round_trip(self):
        row = {"id": "srv-1", "name": "Rahim", "deleted_at": None}
        cells = GoogleSheetsTableClient._row_to_cells(row)

        assert cells[0] == "srv-1"
        assert cells[2] == ""
        assert GoogleSheetsTableClient._cells_to_row(cells) == row

    def test_blank_rows_skipped(self):
        assert GoogleSheetsTableClient._cells_to_row([]) is None
        assert GoogleSheetsTableClient._cells_to_row(["srv-1", "", "", ""]) is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
