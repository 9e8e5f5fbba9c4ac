import logging
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)


class CeleryTaskQueue:
    """Dispatch contract between the ingestion services and the Celery workers.

    Services only ever talk to this object, so tests can hand them a recording
    fake instead of a broker.
    """

    def process_file(self, upload_id: int) -> None:
        from .tasks import process_upload_file_task

        process_upload_file_task.delay(upload_id)

    def process_chunk(
        self,
        chunk_id: int,
        file_path: str,
        columns: Sequence[str],
        context_label: Optional[str] = None,
        countdown: int = 0,
    ) -> None:
        from .tasks import process_chunk_task

        process_chunk_task.apply_async(
            args=[chunk_id, file_path, list(columns), context_label],
            countdown=countdown,
        )

    def aggregate_upload(self, upload_id: int, countdown: int = 0) -> None:
        from .tasks import aggregate_upload_task

        aggregate_upload_task.apply_async(args=[upload_id], countdown=countdown)

    def aggregate_archive(self, upload_id: int, archive_path: str, countdown: int = 0) -> None:
        from .tasks import aggregate_archive_task

        aggregate_archive_task.apply_async(args=[upload_id, archive_path], countdown=countdown)

    def sync_catalog(self, part_ids: List[int], upload_id: Optional[int] = None) -> None:
        from .tasks import sync_parts_with_catalog_task

        logger.info("Queueing catalog sync for %s parts (upload %s).", len(part_ids), upload_id)
        sync_parts_with_catalog_task.delay(list(part_ids), upload_id)
