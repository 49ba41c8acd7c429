from __future__ import annotations

import asyncio

from fakes import FakeGraph
from support import Harness, make_record, uploaded
from invoice_sync.errors import ErrorKind
from invoice_sync.models import SyncStatus
from invoice_sync.sync_service import remote_file_name
from invoice_sync.workbook import HEADER_ROW, build_row

PDF = b"%PDF-1.4 test"
FILE_NAME = "JaneDoe-Receipt-2024-03-01-1.pdf"


def test_upload_to_empty_drive(graph):
    record = make_record(1)
    harness = Harness(graph, records=[record])

    result = asyncio.run(harness.service.upload_invoice(record, PDF))

    assert result.success, result.error
    assert graph.item_at("Invoices")["folder"]
    pdf = graph.item_at(f"Invoices/{FILE_NAME}")
    assert pdf["content"] == PDF
    assert pdf["mime"] == "application/pdf"
    assert result.file_url == f"https://share.example/{pdf['id']}"

    workbook = graph.workbook_at("Invoice_Tracker.xlsx")
    assert workbook.rows[0] == HEADER_ROW
    rows = workbook.data_rows()
    assert len(rows) == 1
    assert rows[0][:5] == [1, "Jane Doe", "2024-03-01", "Dental", 120.50]
    assert rows[0][5].startswith("=HYPERLINK(")
    assert rows[0][6:] == [FILE_NAME, result.file_url]

    status = harness.records.get_invoice("inv-1").sync_status
    assert status == SyncStatus(uploaded=True, remote_file_url=result.file_url, excel_synced=True)


def test_resync_updates_existing_row_in_place(graph):
    record = make_record(1)
    harness = Harness(graph, records=[record])

    async def scenario():
        await harness.service.upload_invoice(record, PDF)
        edited = harness.records.get_invoice("inv-1").model_copy(update={"invoice_amount": 135.00})
        return await harness.service.resync_invoice(edited)

    result = asyncio.run(scenario())

    assert result.success, result.error
    rows = graph.workbook_at("Invoice_Tracker.xlsx").data_rows()
    assert len(rows) == 1
    assert rows[0][0] == 1
    assert rows[0][4] == 135.00


def test_resync_of_missing_row_appends_it(graph):
    record = uploaded(make_record(42), "https://share.example/item-9")
    harness = Harness(graph, records=[record])

    result = asyncio.run(harness.service.resync_invoice(record))

    assert result.success, result.error
    rows = graph.workbook_at("Invoice_Tracker.xlsx").data_rows()
    assert [row[0] for row in rows] == [42]
    assert harness.records.get_invoice("inv-42").sync_status.excel_synced is True


def test_resync_requires_prior_upload(harness):
    result = asyncio.run(harness.service.resync_invoice(make_record(1)))

    assert not result.success
    assert result.error_kind is ErrorKind.NOT_FOUND
    assert harness.graph.calls == []


def test_remove_when_file_already_deleted_by_user(graph):
    record = make_record(1)
    harness = Harness(graph, records=[record])

    async def scenario():
        await harness.service.upload_invoice(record, PDF)
        graph.remove(f"Invoices/{FILE_NAME}")
        return await harness.service.remove_invoice_artifacts(harness.records.get_invoice("inv-1"))

    result = asyncio.run(scenario())

    assert result.success
    assert result.warnings == []
    assert graph.workbook_at("Invoice_Tracker.xlsx").data_rows() == []


def test_remove_deletes_file_and_row(graph):
    record = make_record(1)
    harness = Harness(graph, records=[record])

    async def scenario():
        await harness.service.upload_invoice(record, PDF)
        return await harness.service.remove_invoice_artifacts(harness.records.get_invoice("inv-1"))

    result = asyncio.run(scenario())

    assert result.success
    assert graph.item_at(f"Invoices/{FILE_NAME}") is None
    assert graph.workbook_at("Invoice_Tracker.xlsx").data_rows() == []


def test_remove_reports_row_failure_as_warning(graph):
    record = make_record(1)
    harness = Harness(graph, records=[record])

    async def scenario():
        await harness.service.upload_invoice(record, PDF)
        graph.fail("DELETE", "itemAt", 500, times=10)
        return await harness.service.remove_invoice_artifacts(harness.records.get_invoice("inv-1"))

    result = asyncio.run(scenario())

    assert result.success
    assert len(result.warnings) == 1
    assert "Excel row" in result.warnings[0]


def test_remove_of_never_synced_invoice_touches_nothing(harness):
    result = asyncio.run(harness.service.remove_invoice_artifacts(make_record(1)))

    assert result.success
    assert harness.graph.calls == []


def test_remove_without_login_asks_for_auth(graph):
    record = uploaded(make_record(1), "https://share.example/item-1")
    harness = Harness(graph, records=[record], authenticated=False)

    result = asyncio.run(harness.service.remove_invoice_artifacts(record))

    assert not result.success
    assert result.error_kind is ErrorKind.AUTH_REQUIRED


def test_upload_without_login_asks_for_auth(graph):
    record = make_record(1)
    harness = Harness(graph, records=[record], authenticated=False)

    result = asyncio.run(harness.service.upload_invoice(record, PDF))

    assert not result.success
    assert result.error_kind is ErrorKind.AUTH_REQUIRED
    assert graph.calls == []
    assert harness.records.get_invoice("inv-1").sync_status == SyncStatus()


def test_upload_rejects_existing_row_and_leaves_record_alone(graph):
    record = make_record(1)
    harness = Harness(graph, records=[record])

    async def scenario():
        file_id = await harness.workbook.ensure_workbook("Invoice_Tracker.xlsx")
        await harness.workbook.ensure_table(file_id)
        await harness.workbook.append_row(file_id, build_row(record, "https://elsewhere", "x.pdf"))
        return await harness.service.upload_invoice(record, PDF)

    result = asyncio.run(scenario())

    assert not result.success
    assert result.error_kind is ErrorKind.CONFLICT
    assert len(graph.workbook_at("Invoice_Tracker.xlsx").data_rows()) == 1
    assert harness.records.get_invoice("inv-1").sync_status == SyncStatus()


def test_excel_failure_after_upload_is_partial_success(graph):
    record = make_record(1)
    harness = Harness(graph, records=[record])
    graph.fail("GET", "/workbook/worksheets", 503, times=10)

    result = asyncio.run(harness.service.upload_invoice(record, PDF))

    assert not result.success
    assert result.error_kind is ErrorKind.PARTIAL_SUCCESS
    assert result.file_url
    status = harness.records.get_invoice("inv-1").sync_status
    assert status == SyncStatus(uploaded=True, remote_file_url=result.file_url, excel_synced=False)


def test_upload_uses_configured_directory_and_workbook(graph):
    record = make_record(1, file_type="image", customer_name="O'Brien & Co.")
    harness = Harness(graph, records=[record])
    harness.storage.set(
        "app_settings",
        '{"onedrive": {"invoice_directory": "/Clinic/Receipts/", "excel_file_name": "Log.xlsx",'
        ' "excel_file_path": "Clinic"}}',
    )

    result = asyncio.run(harness.service.upload_invoice(record, PDF))

    assert result.success, result.error
    image = graph.item_at("Clinic/Receipts/OBrienCo-Receipt-2024-03-01-1.jpg")
    assert image["mime"] == "image/jpeg"
    assert graph.workbook_at("Clinic/Log.xlsx") is not None


def test_remote_file_name_falls_back_for_symbol_only_names():
    record = make_record(5, customer_name="!!!", file_type="image")

    assert remote_file_name(record) == "Invoice-Receipt-2024-03-01-5.jpg"


def test_batch_caps_error_list(graph):
    records = [make_record(i) for i in range(1, 7)]
    files = {record.id: PDF for record in records[:1]}
    harness = Harness(graph, records=records, files=files)

    result = asyncio.run(harness.service.sync_batch(records))

    assert (result.total, result.succeeded, result.failed) == (6, 1, 5)
    assert len(result.errors) == 3
    assert result.more_errors == 2
    assert result.errors[0].startswith("Invoice #2:")
    assert "... and 2 more errors" in result.summary()


def test_batch_processes_one_invoice_at_a_time_with_pause(graph):
    records = [make_record(i) for i in (1, 2, 3)]
    files = {record.id: PDF for record in records}
    pauses = []

    async def recording_sleep(seconds):
        pauses.append(seconds)

    harness = Harness(graph, records=records, files=files, sleep=recording_sleep, workbook_provision_delay=0.0)

    result = asyncio.run(harness.service.sync_batch(records))

    assert result.succeeded == 3
    assert pauses.count(0.5) == 2
    assert [row[0] for row in graph.workbook_at("Invoice_Tracker.xlsx").data_rows()] == [1, 2, 3]


def test_batch_stops_after_cancel(graph):
    records = [make_record(i) for i in (1, 2, 3)]
    files = {record.id: PDF for record in records}
    holder = {}

    async def cancelling_sleep(_seconds):
        holder["service"].cancel_batch()

    harness = Harness(graph, records=records, files=files, sleep=cancelling_sleep)
    holder["service"] = harness.service

    result = asyncio.run(harness.service.sync_batch(records))

    assert result.cancelled
    assert result.succeeded == 1
    assert not harness.service.is_batch_running


def test_sync_unsynced_filters_by_month(graph):
    records = [
        uploaded(make_record(1, invoice_date="2024-03-01"), "https://share.example/item-x"),
        make_record(2, invoice_date="2024-03-15"),
        make_record(3, invoice_date="2024-04-02"),
    ]
    files = {record.id: PDF for record in records}
    harness = Harness(graph, records=records, files=files)

    result = asyncio.run(harness.service.sync_unsynced(month="2024-03"))

    assert (result.total, result.succeeded) == (1, 1)
    assert graph.item_at("Invoices/JaneDoe-Receipt-2024-03-15-2.pdf") is not None
    assert graph.item_at("Invoices/JaneDoe-Receipt-2024-04-02-3.pdf") is None


def test_cancel_without_running_batch_is_noop(harness):
    assert harness.service.cancel_batch() is False


def test_independent_services_do_not_share_state():
    first = Harness(FakeGraph())
    second = Harness(FakeGraph(), authenticated=False)

    assert first.tokens.is_authenticated()
    assert not second.tokens.is_authenticated()
