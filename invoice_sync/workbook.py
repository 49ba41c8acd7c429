"""
Excel workbook tracking via the Microsoft Graph workbook API.

Finds or creates the tracking workbook, makes sure it has the canonical
header, and appends, updates and deletes rows keyed by the invoice sequence
id in column A.

Each workbook is committed to one write mode the first time this manager
sees it in a session:

``TABLE``
    A structured table named ``Table1`` exists (or could be created). Rows are
    added through the table's row endpoints.
``WORKSHEET``
    Structured tables are unavailable for this workbook (the table API kept
    returning a 4xx), or an earlier session already initialised it that way.
    The header lives in row 1 and rows are written as raw cell ranges.

In ``TABLE`` mode an add-row call that fails with a non-transient error still
falls back to a raw range write below the table; ``find_row`` scans those rows
after the table rows, so either path stays locatable by sequence id.
"""

import io
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

from loguru import logger
from openpyxl import Workbook

from invoice_sync.errors import AlreadySynced, Conflict, GraphError, NotFound, UploadFailed
from invoice_sync.graph_client import GraphClient
from invoice_sync.models import DriveItem, InvoiceRecord
from invoice_sync.onedrive import DeleteOutcome, OneDriveService, XLSX_MIME_TYPE
from invoice_sync.retry import RetryPolicy, is_provisioning_race, is_transient

TABLE_NAME = "Table1"
HEADER_ROW = [
    "ID",
    "Customer Name",
    "Invoice Date",
    "Description",
    "Amount",
    "File Link",
    "Filename",
    "URL",
]
LAST_COLUMN = chr(ord("A") + len(HEADER_ROW) - 1)

# Error codes Graph returns when a drive item is not a readable workbook
UNRECOGNIZED_FORMAT_STATUSES = {400, 415, 422}


class WorkbookMode(Enum):
    TABLE = "table"
    WORKSHEET = "worksheet"


@dataclass
class WorkbookSession:
    """Capability probe result, cached per workbook."""
    file_id: str
    worksheet: str
    mode: WorkbookMode
    table_name: str = TABLE_NAME


@dataclass
class RowLocation:
    """Where a row lives: a zero-based table row index, or a 1-based worksheet row number."""
    in_table: bool
    index: int


def hyperlink_formula(url: str, label: str) -> str:
    def esc(value: str) -> str:
        return value.replace('"', '""')
    return f'=HYPERLINK("{esc(url)}","{esc(label)}")'


def build_row(record: InvoiceRecord, file_url: Optional[str], file_name: str) -> List[Any]:
    """Row values in header order for an invoice."""
    return [
        record.sequence_id,
        record.customer_name,
        record.invoice_date,
        record.description,
        record.invoice_amount,
        hyperlink_formula(file_url, file_name) if file_url else "",
        file_name,
        file_url or "",
    ]


def cell_matches(value: Any, sequence_id: int) -> bool:
    """True when a column-A cell holds ``sequence_id`` (Graph may return 7, 7.0 or "7")."""
    if value is None or isinstance(value, bool):
        return False
    try:
        number = float(str(value).strip())
    except ValueError:
        return False
    return number.is_integer() and int(number) == sequence_id


def _is_blank(row: List[Any]) -> bool:
    return all(cell in (None, "") for cell in row)


def blank_workbook_bytes() -> bytes:
    """An empty .xlsx with a single ``Sheet1``."""
    workbook = Workbook()
    workbook.active.title = "Sheet1"
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


class WorkbookTableManager:
    """Tracking-workbook operations over the Graph workbook API."""

    def __init__(
        self,
        graph: GraphClient,
        drive: OneDriveService,
        *,
        retry: Optional[RetryPolicy] = None,
        table_create_base_delay: float = 2.0,
        provision_delay: float = 2.0,
        table_name: str = TABLE_NAME,
    ):
        """
        Args:
            graph: Authenticated Graph transport
            drive: Drive adapter used to find, create and delete the workbook file
            retry: Retry policy for transient failures and provisioning races
            table_create_base_delay: First backoff delay for table creation
            provision_delay: Wait after creating a workbook before using the workbook API
            table_name: Name of the structured table
        """
        self.graph = graph
        self.drive = drive
        self.retry = retry or RetryPolicy()
        self.table_create_base_delay = table_create_base_delay
        self.provision_delay = provision_delay
        self.table_name = table_name
        self._sessions: Dict[str, WorkbookSession] = {}

    # ------------------------------------------------------------------
    # Paths

    @staticmethod
    def _workbook_path(file_id: str) -> str:
        return f"/me/drive/items/{file_id}/workbook"

    def _worksheet_path(self, session: WorkbookSession) -> str:
        return f"{self._workbook_path(session.file_id)}/worksheets/{quote(session.worksheet, safe='')}"

    def _table_path(self, session: WorkbookSession) -> str:
        return f"{self._workbook_path(session.file_id)}/tables/{quote(session.table_name, safe='')}"

    def _range_path(self, session: WorkbookSession, row_number: int) -> str:
        address = f"A{row_number}:{LAST_COLUMN}{row_number}"
        return f"{self._worksheet_path(session)}/range(address='{address}')"

    async def _call(self, method, path: str, *, operation: str, retryable=is_provisioning_race, **kwargs):
        return await self.retry.run(
            partial(method, path, operation=operation, **kwargs),
            operation=operation,
            is_retryable=retryable,
        )

    # ------------------------------------------------------------------
    # Workbook file

    async def find_workbook(self, file_name: str) -> Optional[DriveItem]:
        """Locate the workbook without creating it. Names containing '/' are drive paths."""
        file_name = file_name.strip("/")
        item = await self.drive.get_item(file_name)
        if item is not None or "/" in file_name:
            return item
        # Search is index-backed and can lag behind recent writes
        matches = await self.drive.search_files(file_name)
        return matches[0] if matches else None

    async def ensure_workbook(self, file_name: str) -> str:
        """
        Find the tracking workbook, creating (or replacing an invalid one) as needed.

        Args:
            file_name: Workbook name, or drive path when it contains a slash

        Returns:
            Drive item id of a usable workbook
        """
        existing = await self.find_workbook(file_name)
        if existing is not None:
            if await self._is_valid_workbook(existing):
                return existing.id

            logger.warning(f"'{existing.name}' is not a valid workbook, deleting and recreating it")
            self._sessions.pop(existing.id, None)
            if await self.drive.delete_item(existing.id) is DeleteOutcome.FAILED:
                raise Conflict(
                    f"'{file_name}' exists but is not a valid workbook and could not be replaced",
                    operation="ensure_workbook",
                )

        return await self._create_workbook(file_name)

    async def _is_valid_workbook(self, item: DriveItem) -> bool:
        if item.mime_type and item.mime_type != XLSX_MIME_TYPE:
            return False
        try:
            await self._call(
                self.graph.get,
                f"{self._workbook_path(item.id)}/worksheets",
                operation="probe_workbook",
                retryable=is_transient,
            )
        except GraphError as e:
            if e.status_code in UNRECOGNIZED_FORMAT_STATUSES:
                logger.warning(f"Workbook probe for '{item.name}' failed: {e}")
                return False
            raise
        return True

    async def _create_workbook(self, file_name: str) -> str:
        path = file_name.strip("/")
        logger.info(f"Creating new Excel file: {path}")
        try:
            item = await self.drive.upload_file(
                path, blank_workbook_bytes(), XLSX_MIME_TYPE, conflict_behavior="fail"
            )
        except UploadFailed as e:
            if e.status_code != 409:
                raise
            existing = await self.drive.get_item(path)
            if existing is None:
                raise
            logger.info(f"'{path}' appeared while creating it, using the existing workbook")
            return existing.id

        # Workbook API only sees new files after server-side provisioning
        await self.retry.sleep(self.provision_delay)
        return item.id

    # ------------------------------------------------------------------
    # Table / header

    async def ensure_table(self, file_id: str) -> WorkbookSession:
        """
        Decide the write mode for a workbook and make sure its header exists.

        The result is cached, so the probe runs once per workbook per manager.
        An existing table is never recreated.
        """
        session = self._sessions.get(file_id)
        if session is not None:
            return session

        worksheet, session = await self._detect_mode(file_id)
        if session is None:
            session = await self._create_table(
                WorkbookSession(file_id, worksheet, WorkbookMode.WORKSHEET, self.table_name)
            )

        self._sessions[file_id] = session
        return session

    async def _existing_session(self, file_id: str) -> Optional[WorkbookSession]:
        """Cached or detected session; None for a workbook nothing was ever tracked in."""
        session = self._sessions.get(file_id)
        if session is None:
            _, session = await self._detect_mode(file_id)
            if session is not None:
                self._sessions[file_id] = session
        return session

    async def _detect_mode(self, file_id: str) -> Tuple[str, Optional[WorkbookSession]]:
        """Read-only: first worksheet name, and the write mode already set up in the workbook."""
        worksheets = await self._call(
            self.graph.get, f"{self._workbook_path(file_id)}/worksheets", operation="list_worksheets"
        )
        sheets = (worksheets or {}).get("value") or []
        if not sheets:
            raise NotFound("No worksheets found in Excel file", operation="ensure_table")
        worksheet = sheets[0].get("name") or "Sheet1"

        if await self._table_exists(file_id):
            logger.info(f"{self.table_name} already exists")
            return worksheet, WorkbookSession(file_id, worksheet, WorkbookMode.TABLE, self.table_name)

        session = WorkbookSession(file_id, worksheet, WorkbookMode.WORKSHEET, self.table_name)
        first_row, rows = await self._used_range(session)
        if first_row == 1 and rows and rows[0] and rows[0][0] == HEADER_ROW[0]:
            logger.info("Workbook has a header row but no table, using worksheet mode")
            return worksheet, session
        return worksheet, None

    async def _table_exists(self, file_id: str) -> bool:
        tables = await self._call(self.graph.get, f"{self._workbook_path(file_id)}/tables", operation="list_tables")
        return any(table.get("name") == self.table_name for table in (tables or {}).get("value", []))

    async def _create_table(self, session: WorkbookSession) -> WorkbookSession:
        attempt_count = 0

        async def attempt() -> None:
            nonlocal attempt_count
            attempt_count += 1

            # A previous attempt may have created the table before failing on the header
            if attempt_count == 1 or not await self._table_exists(session.file_id):
                created = await self.graph.post(
                    f"{self._worksheet_path(session)}/tables/add",
                    json={"address": f"A1:{LAST_COLUMN}1", "hasHeaders": True},
                    operation="create_table",
                ) or {}
                created_name = created.get("name")
                if created_name and created_name != self.table_name:
                    await self.graph.patch(
                        f"{self._workbook_path(session.file_id)}/tables/{quote(created.get('id') or created_name, safe='')}",
                        json={"name": self.table_name},
                        operation="rename_table",
                    )

            await self.graph.patch(
                f"{self._table_path(session)}/headerRowRange",
                json={"values": [HEADER_ROW]},
                operation="set_table_header",
            )

        logger.info(f"Creating {self.table_name} in Excel file")
        try:
            await self.retry.run(
                attempt,
                operation="create table",
                is_retryable=is_provisioning_race,
                base_delay=self.table_create_base_delay,
            )
        except GraphError as e:
            if is_provisioning_race(e):
                raise
            logger.warning(f"Structured tables unavailable ({e}), using worksheet mode")
            await self._write_range(session, 1, HEADER_ROW, operation="write_header")
            return WorkbookSession(session.file_id, session.worksheet, WorkbookMode.WORKSHEET, self.table_name)

        logger.info(f"{self.table_name} created successfully")
        return WorkbookSession(session.file_id, session.worksheet, WorkbookMode.TABLE, self.table_name)

    # ------------------------------------------------------------------
    # Raw reads / writes

    async def _table_rows(self, session: WorkbookSession) -> List[List[Any]]:
        items = await self.retry.run(
            partial(self.graph.get_all, f"{self._table_path(session)}/rows", operation="list_table_rows"),
            operation="list_table_rows",
            is_retryable=is_provisioning_race,
        )
        return [(item.get("values") or [[]])[0] for item in items]

    async def _used_range(self, session: WorkbookSession) -> Tuple[int, List[List[Any]]]:
        """First used row number (1-based) and the used-range values."""
        data = await self._call(
            self.graph.get, f"{self._worksheet_path(session)}/usedRange", operation="get_used_range"
        ) or {}
        values = data.get("values") or []
        if all(_is_blank(row) for row in values):
            return 1, []
        return int(data.get("rowIndex", 0)) + 1, values

    async def _write_range(self, session: WorkbookSession, row_number: int, values: List[Any], operation: str) -> None:
        await self._call(
            self.graph.patch,
            self._range_path(session, row_number),
            operation=operation,
            retryable=is_transient,
            json={"values": [values]},
        )

    async def _append_to_worksheet(self, session: WorkbookSession, values: List[Any]) -> int:
        first_row, rows = await self._used_range(session)
        next_row = max(first_row + len(rows), 2)
        await self._write_range(session, next_row, values, operation="append_worksheet_row")
        logger.info(f"Appended invoice {values[0]} to worksheet row {next_row}")
        return next_row

    # ------------------------------------------------------------------
    # Row operations

    async def find_row(self, file_id: str, sequence_id: int) -> Optional[RowLocation]:
        """
        Linear scan for the row whose column A equals ``sequence_id``.

        Cost is O(rows) remote data per call. Never creates the table: a
        workbook without one (and without a header) has no rows to find.
        """
        session = await self._existing_session(file_id)
        if session is None:
            return None

        table_end = 1
        if session.mode is WorkbookMode.TABLE:
            rows = await self._table_rows(session)
            for index, row in enumerate(rows):
                if row and cell_matches(row[0], sequence_id):
                    return RowLocation(in_table=True, index=index)
            table_end = 1 + len(rows)

        first_row, values = await self._used_range(session)
        for offset, row in enumerate(values):
            row_number = first_row + offset
            if row_number <= table_end:
                continue
            if row and cell_matches(row[0], sequence_id):
                return RowLocation(in_table=False, index=row_number)
        return None

    async def append_row(self, file_id: str, values: List[Any]) -> None:
        """
        Append a new row; rejects a sequence id that already has a row.

        Raises:
            AlreadySynced: a row for this sequence id exists
        """
        sequence_id = int(values[0])
        session = await self.ensure_table(file_id)

        if await self.find_row(file_id, sequence_id) is not None:
            raise AlreadySynced(
                f"Invoice {sequence_id} already exists in Excel",
                operation="append_row",
                sequence_id=sequence_id,
            )

        if session.mode is WorkbookMode.TABLE:
            try:
                await self._call(
                    self.graph.post,
                    f"{self._table_path(session)}/rows",
                    operation="add_table_row",
                    json={"values": [values]},
                )
                logger.info(f"Appended invoice {sequence_id} to {session.table_name}")
                return
            except GraphError as e:
                if is_transient(e):
                    raise
                logger.warning(f"Table append failed, trying direct worksheet append: {e}")

        await self._append_to_worksheet(session, values)

    async def update_row(self, file_id: str, sequence_id: int, values: List[Any]) -> bool:
        """
        Overwrite the row for ``sequence_id``.

        Returns:
            False when no such row exists; the caller decides what to do instead
        """
        location = await self.find_row(file_id, sequence_id)
        if location is None:
            logger.info(f"No existing row found for invoice {sequence_id}")
            return False

        session = await self.ensure_table(file_id)
        if location.in_table:
            await self._call(
                self.graph.patch,
                f"{self._table_path(session)}/rows/itemAt(index={location.index})",
                operation="update_table_row",
                json={"values": [values]},
            )
        else:
            await self._write_range(session, location.index, values, operation="update_worksheet_row")

        logger.info(f"Updated Excel row for invoice {sequence_id}")
        return True

    async def delete_row(self, file_id: str, sequence_id: int) -> bool:
        """
        Delete the row for ``sequence_id``.

        Returns:
            True if a row was removed, False if there was nothing to remove
        """
        location = await self.find_row(file_id, sequence_id)
        if location is None:
            logger.info(f"No matching row found for deletion of invoice {sequence_id}")
            return False

        session = await self.ensure_table(file_id)
        if location.in_table:
            await self._call(
                self.graph.delete,
                f"{self._table_path(session)}/rows/itemAt(index={location.index})",
                operation="delete_table_row",
            )
        else:
            await self._call(
                self.graph.post,
                f"{self._range_path(session, location.index)}/delete",
                operation="delete_worksheet_row",
                retryable=is_transient,
                json={"shift": "Up"},
            )

        logger.info(f"Deleted Excel row for invoice {sequence_id}")
        return True
