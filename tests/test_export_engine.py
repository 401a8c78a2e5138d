"""
Tests for the export engine: bulk and streaming jobs, memory guard,
cancellation, transform fallback and cleanup
"""

import asyncio
import io
import json

import pytest
from openpyxl import load_workbook

from error_handlers import TransformError
from export_config import ExportConfig
from export_schemas import (
    ExportOptions,
    ExportRequest,
    ExportStatus,
    FieldMapping,
    FieldType,
    MultiSheetExportRequest,
    PermissionsExportRequest,
    SheetRequest,
    StreamingExportRequest,
)
from services.export_engine import AccumulatedRowsMemoryEstimator

MEMORY_MESSAGE = "Export size exceeds memory limit. Please use smaller batches or add filters."


def numbered_records(count):
    return [{"title": f"Issue {i}", "points": i, "closed": i % 2 == 0, "owner": {"name": f"user{i}"}} for i in range(count)]


class TestBulkExport:

    @pytest.mark.asyncio
    async def test_json_export_completes(self, engine, downloads, issue_fields, issue_records):
        job_id = engine.start_export(ExportRequest(
            data=issue_records, format="json", filename="issues", fields=issue_fields,
        ))

        progress = await engine.wait_for(job_id)

        assert progress.status == ExportStatus.COMPLETED
        assert progress.progress == 100
        assert progress.processed_records == 3
        assert progress.download_url.startswith("blob:exports/")
        assert len(engine.get_active_jobs()) == 1

        assert len(downloads) == 1
        payload = downloads[0]
        assert payload.filename == "issues.json"
        assert payload.content_type == "application/json"
        document = json.loads(payload.content)
        assert document["exportInfo"]["totalRecords"] == 3
        assert document["data"][0] == {"Title": "Broken login", "Points": 3, "Closed": "Yes", "Owner": "Ada"}

    @pytest.mark.asyncio
    async def test_payload_reachable_through_object_url(self, engine, storage, issue_fields, issue_records):
        job_id = engine.start_export(ExportRequest(
            data=issue_records, format="csv", filename="issues.csv", fields=issue_fields,
        ))
        progress = await engine.wait_for(job_id)

        stored = storage.get(progress.download_url)
        assert stored.job_id == job_id
        assert stored.filename == "issues.csv"
        assert stored.content.decode("utf-8").startswith('"Title"')

    @pytest.mark.asyncio
    async def test_accepts_plain_dict_request(self, engine):
        job_id = engine.start_export({
            "data": [{"a": 1}],
            "format": "CSV",
            "filename": "plain",
            "fields": [{"key": "a", "label": "A", "type": "number"}],
        })
        progress = await engine.wait_for(job_id)
        assert progress.status == ExportStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unsupported_format_fails_job(self, engine, downloads, issue_fields, issue_records):
        job_id = engine.start_export(ExportRequest(
            data=issue_records, format="pdf", filename="issues", fields=issue_fields,
        ))
        progress = await engine.wait_for(job_id)

        assert progress.status == ExportStatus.FAILED
        assert progress.error == "Unsupported export format: pdf"
        assert progress.download_url is None
        assert downloads == []

    @pytest.mark.asyncio
    async def test_download_failure_keeps_job_completed(self, make_engine, issue_fields, issue_records):
        engine = make_engine()

        def broken_trigger(payload):
            raise OSError("disk full")

        engine.download_trigger = broken_trigger
        job_id = engine.start_export(ExportRequest(
            data=issue_records, format="csv", filename="issues", fields=issue_fields,
        ))
        progress = await engine.wait_for(job_id)
        assert progress.status == ExportStatus.COMPLETED


class TestStreamingExport:

    @pytest.mark.asyncio
    async def test_pages_through_provider(self, make_engine, make_provider, issue_fields):
        engine = make_engine(ExportConfig(batch_size=2))
        calls = []
        job_id = await engine.start_streaming_export(StreamingExportRequest(
            data_provider=make_provider(numbered_records(4), calls),
            total_records=4,
            format="csv",
            filename="issues",
            fields=issue_fields,
        ))

        progress = await engine.wait_for(job_id)

        assert calls == [(0, 2), (2, 2)]
        assert progress.status == ExportStatus.COMPLETED
        assert progress.processed_records == 4
        assert progress.estimated_time_remaining == 0

    @pytest.mark.asyncio
    async def test_total_is_probed_when_missing(self, make_engine, make_provider, issue_fields, downloads):
        engine = make_engine(ExportConfig(batch_size=3))
        calls = []
        job_id = await engine.start_streaming_export(StreamingExportRequest(
            data_provider=make_provider(numbered_records(5), calls),
            format="json",
            filename="issues",
            fields=issue_fields,
        ))

        progress = await engine.wait_for(job_id)

        assert calls == [(0, 1), (0, 3), (3, 3)]
        assert progress.total_records == 5
        assert progress.processed_records == 5
        assert [row["Title"] for row in json.loads(downloads[0].content)["data"]] == [f"Issue {i}" for i in range(5)]

    @pytest.mark.asyncio
    async def test_zero_total_skips_provider(self, engine, make_provider, issue_fields):
        calls = []
        job_id = await engine.start_streaming_export(StreamingExportRequest(
            data_provider=make_provider([], calls),
            total_records=0,
            format="csv",
            filename="empty",
            fields=issue_fields,
        ))

        progress = await engine.wait_for(job_id)

        assert calls == []
        assert progress.status == ExportStatus.COMPLETED
        assert progress.processed_records == 0

    @pytest.mark.asyncio
    async def test_empty_page_stops_early(self, make_engine, issue_fields):
        engine = make_engine(ExportConfig(batch_size=2))
        records = numbered_records(3)

        async def provider(offset, limit):
            return {"data": records[offset:offset + limit], "total": 10}

        job_id = await engine.start_streaming_export(StreamingExportRequest(
            data_provider=provider, total_records=10, format="csv", filename="x", fields=issue_fields,
        ))
        progress = await engine.wait_for(job_id)

        assert progress.status == ExportStatus.COMPLETED
        assert progress.processed_records == 3

    @pytest.mark.asyncio
    async def test_stops_at_declared_total(self, make_engine, make_provider, issue_fields, downloads):
        engine = make_engine(ExportConfig(batch_size=5))
        calls = []
        job_id = await engine.start_streaming_export(StreamingExportRequest(
            data_provider=make_provider(numbered_records(10), calls),
            total_records=3,
            format="json",
            filename="issues",
            fields=issue_fields,
        ))

        progress = await engine.wait_for(job_id)

        assert calls == [(0, 5)]
        assert progress.status == ExportStatus.COMPLETED
        assert progress.processed_records == 3
        assert progress.total_records == 3
        assert [row["Title"] for row in json.loads(downloads[0].content)["data"]] == ["Issue 0", "Issue 1", "Issue 2"]

    @pytest.mark.asyncio
    async def test_provider_failure_fails_job(self, make_engine, issue_fields, downloads):
        engine = make_engine(ExportConfig(batch_size=2))

        async def provider(offset, limit):
            if offset >= 2:
                raise ConnectionError("tenant API unavailable")
            return {"data": numbered_records(2), "total": 4}

        job_id = await engine.start_streaming_export(StreamingExportRequest(
            data_provider=provider, total_records=4, format="csv", filename="x", fields=issue_fields,
        ))
        progress = await engine.wait_for(job_id)

        assert progress.status == ExportStatus.FAILED
        assert "tenant API unavailable" in progress.error
        assert "offset 2" in progress.error
        assert progress.download_url is None
        assert downloads == []

    @pytest.mark.asyncio
    async def test_probe_failure_returns_failed_job(self, engine, issue_fields):
        async def provider(offset, limit):
            raise TimeoutError("probe timed out")

        job_id = await engine.start_streaming_export(StreamingExportRequest(
            data_provider=provider, format="csv", filename="x", fields=issue_fields,
        ))

        progress = engine.get_progress(job_id)
        assert progress.status == ExportStatus.FAILED
        assert "probe timed out" in progress.error

    @pytest.mark.asyncio
    async def test_malformed_page_fails_job(self, engine, issue_fields):
        async def provider(offset, limit):
            return {"data": 5, "total": -1}

        job_id = await engine.start_streaming_export(StreamingExportRequest(
            data_provider=provider, total_records=3, format="csv", filename="x", fields=issue_fields,
        ))
        progress = await engine.wait_for(job_id)
        assert progress.status == ExportStatus.FAILED


class TestMemoryGuard:

    @pytest.mark.asyncio
    async def test_oversized_export_fails(self, make_engine, make_provider, issue_fields, downloads, storage):
        engine = make_engine(ExportConfig(batch_size=2, max_memory_mb=100), memory_estimator=lambda rows: 500)
        job_id = await engine.start_streaming_export(StreamingExportRequest(
            data_provider=make_provider(numbered_records(6)),
            total_records=6,
            format="csv",
            filename="big",
            fields=issue_fields,
        ))

        progress = await engine.wait_for(job_id)

        assert progress.status == ExportStatus.FAILED
        assert progress.error == MEMORY_MESSAGE
        assert progress.download_url is None
        assert downloads == []
        assert storage.active_urls() == []

    @pytest.mark.asyncio
    async def test_guard_waits_for_two_batches(self, make_engine, make_provider, issue_fields):
        checked = []

        def estimator(rows):
            checked.append(len(rows))
            return 0

        engine = make_engine(ExportConfig(batch_size=2), memory_estimator=estimator)
        job_id = await engine.start_streaming_export(StreamingExportRequest(
            data_provider=make_provider(numbered_records(6)),
            total_records=6, format="csv", filename="x", fields=issue_fields,
        ))
        await engine.wait_for(job_id)

        assert checked == [4, 6]

    @pytest.mark.asyncio
    async def test_high_usage_warns(self, make_engine, make_provider, issue_fields, caplog):
        engine = make_engine(ExportConfig(batch_size=2, max_memory_mb=100), memory_estimator=lambda rows: 90)
        with caplog.at_level("WARNING"):
            job_id = await engine.start_streaming_export(StreamingExportRequest(
                data_provider=make_provider(numbered_records(4)),
                total_records=4, format="csv", filename="x", fields=issue_fields,
            ))
            progress = await engine.wait_for(job_id)

        assert progress.status == ExportStatus.COMPLETED
        assert "High memory usage" in caplog.text

    def test_accumulated_rows_estimator(self):
        rows = [{"Title": "x" * 1024}] * 2048
        assert AccumulatedRowsMemoryEstimator()(rows) >= 2

    def test_accumulated_rows_estimator_from_config(self, make_engine):
        engine = make_engine(ExportConfig(batch_size=2, memory_estimator="accumulated_rows"))
        assert isinstance(engine.memory_estimator, AccumulatedRowsMemoryEstimator)


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_during_fetch(self, make_engine, issue_fields, downloads, storage):
        engine = make_engine(ExportConfig(batch_size=2))
        started = asyncio.Event()
        gate = asyncio.Event()

        async def provider(offset, limit):
            started.set()
            await gate.wait()
            return {"data": numbered_records(2), "total": 4}

        job_id = await engine.start_streaming_export(StreamingExportRequest(
            data_provider=provider, total_records=4, format="csv", filename="x", fields=issue_fields,
        ))
        await started.wait()

        assert engine.cancel_export(job_id) is True
        assert engine.cancel_export(job_id) is False
        gate.set()
        progress = await engine.wait_for(job_id)

        assert progress.status == ExportStatus.CANCELLED
        assert progress.error is None
        assert progress.download_url is None
        assert all(job.job_id != job_id for job in engine.get_active_jobs())
        assert downloads == []
        assert storage.active_urls() == []

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, engine, issue_fields, issue_records, downloads):
        job_id = engine.start_export(ExportRequest(
            data=issue_records, format="csv", filename="x", fields=issue_fields,
        ))
        assert engine.cancel_export(job_id) is True

        progress = await engine.wait_for(job_id)
        assert progress.status == ExportStatus.CANCELLED
        assert downloads == []

    @pytest.mark.asyncio
    async def test_cancel_completed_job_is_refused(self, engine, issue_fields, issue_records):
        job_id = engine.start_export(ExportRequest(
            data=issue_records, format="csv", filename="x", fields=issue_fields,
        ))
        await engine.wait_for(job_id)
        assert engine.cancel_export(job_id) is False


class TestTransformDispatch:

    @pytest.mark.asyncio
    async def test_chunked_matches_sync(self, make_engine, issue_fields):
        records = numbered_records(25)
        chunked = make_engine(ExportConfig(sync_transform_threshold=10, chunk_size=4, chunk_concurrency=2))
        inline = make_engine(ExportConfig(sync_transform_threshold=1000))

        assert await chunked.transform_data(records, issue_fields, ExportOptions()) == \
            await inline.transform_data(records, issue_fields, ExportOptions())

    @pytest.mark.asyncio
    async def test_chunk_failure_falls_back_to_sync(self, make_engine, issue_fields, monkeypatch, caplog):
        async def failing(*args, **kwargs):
            raise TransformError("worker crashed")

        monkeypatch.setattr("services.export_engine.process_in_chunks", failing)
        engine = make_engine(ExportConfig(sync_transform_threshold=2))

        with caplog.at_level("WARNING"):
            job_id = engine.start_export(ExportRequest(
                data=numbered_records(5), format="json", filename="x", fields=issue_fields,
            ))
            progress = await engine.wait_for(job_id)

        assert progress.status == ExportStatus.COMPLETED
        assert progress.processed_records == 5
        assert "falling back" in caplog.text


class TestCleanup:

    @pytest.mark.asyncio
    async def test_scheduled_cleanup_revokes_url(self, make_engine, storage, issue_fields, issue_records):
        engine = make_engine(ExportConfig(url_retention_seconds=0.01))
        job_id = engine.start_export(ExportRequest(
            data=issue_records, format="csv", filename="x", fields=issue_fields,
        ))
        progress = await engine.wait_for(job_id)
        url = progress.download_url

        await asyncio.sleep(0.05)

        assert engine.get_active_jobs() == []
        assert storage.get(url) is None
        assert engine.get_progress(job_id).status == ExportStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cleanup_stale_jobs(self, engine, storage, issue_fields, issue_records):
        job_id = engine.start_export(ExportRequest(
            data=issue_records, format="csv", filename="x", fields=issue_fields,
        ))
        await engine.wait_for(job_id)

        assert engine.cleanup_stale_jobs(max_age_seconds=3600) == 0
        assert engine.cleanup_stale_jobs(max_age_seconds=-1) == 1
        assert engine.get_active_jobs() == []
        assert storage.active_urls() == []

    @pytest.mark.asyncio
    async def test_force_cleanup(self, make_engine, storage, issue_fields, issue_records):
        engine = make_engine()
        gate = asyncio.Event()

        async def provider(offset, limit):
            await gate.wait()
            return {"data": [], "total": 0}

        done_id = engine.start_export(ExportRequest(
            data=issue_records, format="csv", filename="x", fields=issue_fields,
        ))
        await engine.wait_for(done_id)
        running_id = await engine.start_streaming_export(StreamingExportRequest(
            data_provider=provider, total_records=3, format="csv", filename="y", fields=issue_fields,
        ))
        await asyncio.sleep(0)

        assert engine.force_cleanup() == 2
        gate.set()
        await engine.wait_for(running_id)

        assert engine.get_active_jobs() == []
        assert storage.active_urls() == []
        assert engine.get_progress(running_id).status == ExportStatus.CANCELLED


class TestWorkbookExports:

    @pytest.mark.asyncio
    async def test_multi_sheet_export(self, engine, downloads, issue_fields, issue_records):
        request = MultiSheetExportRequest(
            filename="tenant",
            sheets=[
                SheetRequest(name="Issues", data=issue_records, fields=issue_fields),
                SheetRequest(
                    name="Owners",
                    data=[{"name": "Ada", "joined": "2024-01-31T12:00:00+00:00"}],
                    fields=[
                        FieldMapping(key="name", label="Name"),
                        FieldMapping(key="joined", label="Joined", type=FieldType.DATE),
                    ],
                    options={"date_format": "dd/MM/yyyy"},
                ),
            ],
        )
        job_id = engine.start_multi_sheet_export(request)
        progress = await engine.wait_for(job_id)

        assert progress.status == ExportStatus.COMPLETED
        assert progress.processed_records == 4
        workbook = load_workbook(io.BytesIO(downloads[0].content))
        assert workbook.sheetnames == ["Summary", "Issues_01", "Owners_02"]
        assert workbook["Owners_02"]["B2"].value == "31/01/2024"
        assert downloads[0].filename == "tenant.xlsx"

    @pytest.mark.asyncio
    async def test_permissions_export(self, engine, downloads, permissions_data):
        roles, role_permissions, users = permissions_data
        job_id = engine.start_permissions_export(PermissionsExportRequest(
            roles=roles, role_permissions=role_permissions, users=users, filename="permissions",
        ))
        progress = await engine.wait_for(job_id)

        assert progress.status == ExportStatus.COMPLETED
        workbook = load_workbook(io.BytesIO(downloads[0].content))
        assert len(workbook.sheetnames) == len(roles) + 2
        assert downloads[0].filename == "permissions.xlsx"
