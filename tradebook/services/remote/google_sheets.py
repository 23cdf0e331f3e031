"""
Google Sheets Remote Backend

DESIGN DECISION: Google Sheets is used as the remote authoritative store because:
1. The owner can view the books directly in Sheets
2. No server or database to run
3. Built-in backup (Google's infrastructure)
4. Easy to export/migrate later

Every table is one worksheet with four columns:
    id | updated_at | deleted_at | data_json

id and deleted_at are duplicated out of the JSON so the sheet stays
readable and the recycle bin can be filtered by eye.

TRADEOFFS:
- No transactions (handlers write in a careful order and are idempotent)
- Limited query capabilities (we filter in Python)

Errors are translated into the remote error kinds the sync processor
understands. Transient ones are retried with exponential backoff
(tenacity) before being reported.
"""

import json
from typing import Any, Callable, Optional, TypeVar

import gspread
import requests
from google.auth.exceptions import RefreshError, TransportError
from google.oauth2.service_account import Credentials
from tenacity import (
    Retrying,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from tradebook.config import GoogleSheetsSettings, SyncSettings, get_settings
from tradebook.models.ledger import utc_now
from tradebook.services.remote.interface import (
    AuthExpiredError,
    RemoteError,
    RemoteTableClient,
    TransientNetworkError,
)


SHEET_COLUMNS = ["id", "updated_at", "deleted_at", "data_json"]

SCOPES = [
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive",
]

T = TypeVar("T")


def translate_error(error: Exception) -> RemoteError:
    """Map a gspread / google-auth / requests failure to a remote error kind."""
    if isinstance(error, RefreshError):
        return AuthExpiredError(f"Google credentials rejected: {error}")
    if isinstance(error, gspread.exceptions.APIError):
        status = error.response.status_code
        if status in (401, 403):
            return AuthExpiredError(f"Google Sheets refused access ({status})")
        if status == 429 or status >= 500:
            return TransientNetworkError(f"Google Sheets unavailable ({status})")
        return RemoteError(f"Google Sheets API error ({status}): {error}")
    if isinstance(error, (TransportError, requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
        return TransientNetworkError(f"Could not reach Google Sheets: {error}")
    return RemoteError(f"Google Sheets call failed: {error}")


class GoogleSheetsTableClient(RemoteTableClient):
    """
    Remote tables stored as worksheets of one spreadsheet.

    Handles authentication lazily and retries transient failures.
    """

    def __init__(
        self,
        settings: Optional[GoogleSheetsSettings] = None,
        sync_settings: Optional[SyncSettings] = None,
    ):
        self._settings = settings or get_settings().google_sheets
        sync_settings = sync_settings or get_settings().sync
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._worksheets: dict[str, gspread.Worksheet] = {}
        self._retrying = Retrying(
            stop=stop_after_attempt(sync_settings.retry_attempts),
            wait=wait_exponential(
                multiplier=1,
                min=sync_settings.retry_min_wait_seconds,
                max=sync_settings.retry_max_wait_seconds,
            ),
            retry=retry_if_exception_type(TransientNetworkError),
            reraise=True,
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(TransientNetworkError),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=SCOPES,
                )
            except FileNotFoundError as e:
                raise AuthExpiredError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                ) from e
            self._client = gspread.authorize(credentials)

        return self._client

    def _spreadsheet_handle(self) -> gspread.Spreadsheet:
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(self._settings.spreadsheet_id)
            except gspread.SpreadsheetNotFound as e:
                raise RemoteError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                ) from e
        return self._spreadsheet

    def _worksheet(self, table: str) -> gspread.Worksheet:
        """Get or create the worksheet of a table."""
        if table not in self._worksheets:
            spreadsheet = self._spreadsheet_handle()
            try:
                sheet = spreadsheet.worksheet(table)
            except gspread.WorksheetNotFound:
                sheet = spreadsheet.add_worksheet(
                    title=table,
                    rows=self._settings.worksheet_rows,
                    cols=len(SHEET_COLUMNS),
                )
                sheet.append_row(SHEET_COLUMNS)
            self._worksheets[table] = sheet
        return self._worksheets[table]

    def _call(self, fn: Callable[..., T], *args: Any) -> T:
        """Run one Sheets operation with error translation and retries."""
        def attempt() -> T:
            try:
                return fn(*args)
            except RemoteError:
                raise
            except (
                gspread.exceptions.APIError,
                RefreshError,
                TransportError,
                requests.exceptions.RequestException,
            ) as e:
                raise translate_error(e) from e

        return self._retrying(attempt)

    @staticmethod
    def _row_to_cells(row: dict[str, Any]) -> list[str]:
        return [
            str(row["id"]),
            utc_now().isoformat(),
            row.get("deleted_at") or "",
            json.dumps(row, sort_keys=True),
        ]

    @staticmethod
    def _cells_to_row(cells: list[str]) -> Optional[dict[str, Any]]:
        def safe_get(index: int, default: str = "") -> str:
            try:
                return cells[index] if cells[index] else default
            except IndexError:
                return default

        if not safe_get(0) or not safe_get(3):
            return None
        return json.loads(safe_get(3))

    def _all_cells(self, table: str) -> list[list[str]]:
        # Skip the header row
        return self._worksheet(table).get_all_values()[1:]

    def _row_numbers(self, table: str, row_ids: set[str]) -> list[int]:
        """1-based sheet row numbers of the given ids (header is row 1)."""
        return [
            index
            for index, cells in enumerate(self._all_cells(table), start=2)
            if cells and cells[0] in row_ids
        ]

    # -------------------------------------------------------------------------
    # RemoteTableClient
    # -------------------------------------------------------------------------

    async def fetch_rows(self, table: str) -> list[dict[str, Any]]:
        all_cells = self._call(self._all_cells, table)
        rows = []
        for cells in all_cells:
            row = self._cells_to_row(cells)
            if row is not None:
                rows.append(row)
        return rows

    async def insert_rows(self, table: str, rows: list[dict[str, Any]]) -> None:
        if not rows:
            return
        sheet = self._call(self._worksheet, table)
        self._call(
            lambda: sheet.append_rows(
                [self._row_to_cells(row) for row in rows],
                value_input_option="RAW",
            )
        )

    async def update_row(self, table: str, row: dict[str, Any]) -> bool:
        numbers = self._call(self._row_numbers, table, {str(row["id"])})
        if not numbers:
            return False
        sheet = self._call(self._worksheet, table)
        number = numbers[0]
        self._call(
            lambda: sheet.update(
                range_name=f"A{number}:D{number}",
                values=[self._row_to_cells(row)],
                value_input_option="RAW",
            )
        )
        return True

    async def delete_rows(self, table: str, row_ids: list[str]) -> int:
        numbers = self._call(self._row_numbers, table, set(row_ids))
        sheet = self._call(self._worksheet, table)
        # Bottom-up so earlier deletions don't shift later row numbers
        for number in sorted(numbers, reverse=True):
            self._call(sheet.delete_rows, number)
        return len(numbers)

    async def clear_table(self, table: str) -> int:
        all_cells = self._call(self._all_cells, table)
        count = sum(1 for cells in all_cells if cells and cells[0])
        if all_cells:
            sheet = self._call(self._worksheet, table)
            self._call(sheet.batch_clear, [f"A2:D{len(all_cells) + 1}"])
        return count
