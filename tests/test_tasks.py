from pathlib import Path
from typing import Dict, List, Sequence

import pytest
from celery.exceptions import Retry

from parts import tasks
from parts.models import Upload, UploadChunk


class FakeSyncService:
    batches: List[List[int]] = []

    def sync_parts(self, part_ids: Sequence[int]) -> Dict[str, int]:
        self.batches.append(list(part_ids))
        return {"synced": len(part_ids) - 1, "failed": 0, "not_found": 1}


@pytest.fixture
def patched_processor(monkeypatch, processor):
    monkeypatch.setattr(tasks, "UploadProcessor", lambda: processor)
    return processor


@pytest.mark.parametrize("retries, expected", [(0, 60), (1, 120), (2, 240), (3, 300), (8, 300)])
def test_aggregation_backoff_is_capped(retries: int, expected: int) -> None:
    assert tasks._aggregation_backoff(retries) == expected


@pytest.mark.django_db
def test_missing_upload_is_ignored(patched_processor, task_queue) -> None:
    assert tasks.process_upload_file_task(404) is None
    assert tasks.aggregate_upload_task(404) is None
    assert tasks.aggregate_archive_task(404) is None

    assert task_queue.calls == []


@pytest.mark.django_db
def test_process_upload_file_task_dispatches_chunks(patched_processor, task_queue, write_csv) -> None:
    patched_processor.row_threshold = 1
    result = patched_processor.process_upload(
        write_csv("parts.csv", [["A100", "Widget", "Acme", "", ""], ["B200", "Bracket", "Acme", "", ""]]),
        "parts.csv",
    )

    tasks.process_upload_file_task(result.upload_id)

    assert Upload.objects.get(pk=result.upload_id).status == Upload.Status.PROCESSING
    assert len(task_queue.named("process_chunk")) == 1


@pytest.mark.django_db
def test_process_upload_file_task_survives_redelivery(patched_processor, task_queue, write_csv) -> None:
    patched_processor.row_threshold = 1
    result = patched_processor.process_upload(
        write_csv("parts.csv", [["A100", "Widget", "Acme", "", ""], ["B200", "Bracket", "Acme", "", ""]]),
        "parts.csv",
    )

    tasks.process_upload_file_task(result.upload_id)
    tasks.process_upload_file_task(result.upload_id)

    upload = Upload.objects.get(pk=result.upload_id)
    assert upload.status == Upload.Status.PROCESSING
    assert upload.chunks.count() == 1
    assert len(task_queue.named("process_chunk")) == 1
    assert Path(upload.stored_path).exists()


@pytest.mark.django_db
def test_aggregate_upload_task_retries_while_chunks_run(patched_processor, make_upload) -> None:
    upload = make_upload(status=Upload.Status.PROCESSING)
    chunk = UploadChunk.objects.create(upload=upload, chunk_number=1, start_row=2, end_row=3, total_rows=2)

    with pytest.raises(Retry):
        tasks.aggregate_upload_task(upload.pk)

    UploadChunk.objects.filter(pk=chunk.pk).update(status=UploadChunk.Status.COMPLETED, created_parts=2)
    tasks.aggregate_upload_task(upload.pk)

    upload.refresh_from_db()
    assert upload.status == Upload.Status.COMPLETED
    assert upload.total_parts == 2


@pytest.mark.django_db
def test_aggregate_archive_task_retries_while_children_run(patched_processor, make_upload) -> None:
    parent = make_upload(status=Upload.Status.PROCESSING)
    child = make_upload(parent_upload=parent, status=Upload.Status.PROCESSING)
    UploadChunk.objects.create(upload=child, chunk_number=1, start_row=2, end_row=3, total_rows=2)

    with pytest.raises(Retry):
        tasks.aggregate_archive_task(parent.pk, "")


@pytest.mark.django_db
def test_sync_task_batches_and_logs_totals(monkeypatch, settings, make_upload) -> None:
    settings.PARTS_SYNC_BATCH_SIZE = 2
    settings.PARTS_SYNC_BATCH_DELAY_SECONDS = 0
    FakeSyncService.batches = []
    monkeypatch.setattr(tasks, "CatalogSyncService", FakeSyncService)
    upload = make_upload()

    totals = tasks.sync_parts_with_catalog_task([1, 2, 3, 4, 5], upload.pk)

    assert FakeSyncService.batches == [[1, 2], [3, 4], [5]]
    assert totals == {"synced": 2, "failed": 0, "not_found": 3}
    upload.refresh_from_db()
    assert upload.processing_logs[-1] == "Catalog sync: 2 synced, 3 not found, 0 failed"


@pytest.mark.django_db
def test_check_stuck_uploads_task_returns_count() -> None:
    assert tasks.check_stuck_uploads_task() == 0
