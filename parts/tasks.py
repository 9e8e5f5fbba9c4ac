import logging
import time
from typing import Dict, List, Optional

from celery import shared_task
from django.conf import settings

from .ingestion import UploadProcessor
from .models import Upload
from .progress import ProgressTracker
from .shopify import CatalogSyncService

logger = logging.getLogger(__name__)

AGGREGATION_MAX_BACKOFF_SECONDS = 300
ARCHIVE_RECHECK_SECONDS = 60


def _aggregation_backoff(retries: int) -> int:
    return min(60 * 2 ** retries, AGGREGATION_MAX_BACKOFF_SECONDS)


@shared_task(bind=True, name="parts.process_upload_file_task")
def process_upload_file_task(self, upload_id: int) -> None:
    """Analyze a stored upload and fan it out into chunk tasks (or unpack an archive)."""
    logger.info("Starting process_upload_file_task upload_id=%s", upload_id)
    try:
        UploadProcessor().process_stored_upload(upload_id)
    except Upload.DoesNotExist:
        logger.warning("Upload with id=%s not found.", upload_id)


@shared_task(bind=True, name="parts.process_chunk_task")
def process_chunk_task(
    self,
    chunk_id: int,
    file_path: str,
    columns: List[str],
    context_label: Optional[str] = None,
) -> None:
    UploadProcessor().process_chunk(chunk_id, file_path, columns, context_label)


@shared_task(bind=True, name="parts.aggregate_upload_task")
def aggregate_upload_task(self, upload_id: int) -> None:
    logger.info("Checking completion status for upload %s", upload_id)
    try:
        finished = UploadProcessor().aggregate_upload(upload_id)
    except Upload.DoesNotExist:
        logger.warning("Upload with id=%s not found.", upload_id)
        return

    if not finished:
        raise self.retry(
            countdown=_aggregation_backoff(self.request.retries),
            max_retries=getattr(settings, "PARTS_AGGREGATION_MAX_RETRIES", 20),
        )


@shared_task(bind=True, name="parts.aggregate_archive_task")
def aggregate_archive_task(self, upload_id: int, archive_path: Optional[str] = None) -> None:
    logger.info("Checking aggregation status for archive upload %s", upload_id)
    try:
        finished = UploadProcessor().aggregate_archive(upload_id, archive_path or None)
    except Upload.DoesNotExist:
        logger.warning("Upload with id=%s not found.", upload_id)
        return

    if not finished:
        raise self.retry(
            countdown=ARCHIVE_RECHECK_SECONDS,
            max_retries=getattr(settings, "PARTS_AGGREGATION_MAX_RETRIES", 20),
        )


@shared_task(bind=True, name="parts.sync_parts_with_catalog_task")
def sync_parts_with_catalog_task(self, part_ids: List[int], upload_id: Optional[int] = None) -> Dict[str, int]:
    """Reconcile parts with the warehouse catalog and Shopify in small batches."""
    batch_size = getattr(settings, "PARTS_SYNC_BATCH_SIZE", 20)
    delay = getattr(settings, "PARTS_SYNC_BATCH_DELAY_SECONDS", 0.25)
    logger.info("Starting catalog sync for %s parts (upload %s)", len(part_ids), upload_id)

    service = CatalogSyncService()
    totals = {"synced": 0, "failed": 0, "not_found": 0}
    for start in range(0, len(part_ids), batch_size):
        batch = part_ids[start:start + batch_size]
        results = service.sync_parts(batch)
        for key in totals:
            totals[key] += results.get(key, 0)
        if start + batch_size < len(part_ids) and delay:
            time.sleep(delay)

    logger.info(
        "Catalog sync finished for upload %s: %s synced, %s not found, %s failed",
        upload_id,
        totals["synced"],
        totals["not_found"],
        totals["failed"],
    )
    if upload_id is not None:
        upload = Upload.objects.filter(pk=upload_id).first()
        if upload is not None:
            upload.append_log(
                f"Catalog sync: {totals['synced']} synced, {totals['not_found']} not found, "
                f"{totals['failed']} failed"
            )
    return totals


@shared_task(bind=True, name="parts.check_stuck_uploads_task")
def check_stuck_uploads_task(self) -> int:
    stuck = ProgressTracker().check_stuck_uploads()
    if stuck:
        logger.warning("Found %s stuck uploads: %s", len(stuck), [item["upload_id"] for item in stuck])
    return len(stuck)
