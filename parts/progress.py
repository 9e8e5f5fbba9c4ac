import logging
import math
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Sequence

from django.conf import settings
from django.core.cache import cache
from django.utils import timezone

from .models import Upload, UploadChunk

logger = logging.getLogger(__name__)

ProgressSnapshot = Dict[str, object]

STUCK_POLICY_REPORT = "report"
STUCK_POLICY_FAIL = "fail"


def round_half_up(value: float, places: int = 0) -> float:
    exponent = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(exponent, rounding=ROUND_HALF_UP))


def format_duration(seconds: float) -> str:
    """Coarse human duration: ``45s``, ``12m``, ``2h`` or ``1h 5m``."""
    if seconds < 60:
        return f"{int(round_half_up(seconds))}s"
    if seconds < 3600:
        return f"{int(round_half_up(seconds / 60))}m"
    hours = int(math.floor(seconds / 3600))
    minutes = int(round_half_up((seconds % 3600) / 60))
    if minutes == 60:
        hours, minutes = hours + 1, 0
    return f"{hours}h {minutes}m" if minutes > 0 else f"{hours}h"


def progress_cache_key(upload_id: int) -> str:
    return f"upload_progress_{upload_id}"


def chunk_progress_percentage(done: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round_half_up(done / total * 100, 1)


def chunks_per_minute(completed: Sequence[UploadChunk]) -> Optional[float]:
    started = [chunk.started_at for chunk in completed if chunk.started_at]
    finished = [chunk.completed_at for chunk in completed if chunk.completed_at]
    if not completed or not started or not finished:
        return None
    # Whole minutes only; sub-minute spans report no throughput.
    total_minutes = int(abs((max(finished) - min(started)).total_seconds()) // 60)
    if total_minutes <= 0:
        return None
    return round_half_up(len(completed) / total_minutes, 2)


class ProgressTracker:
    """Progress snapshots for polling clients, computed from persisted chunk state."""

    def __init__(
        self,
        cache_seconds: Optional[int] = None,
        poll_cache_seconds: Optional[int] = None,
    ) -> None:
        self.cache_seconds = cache_seconds or getattr(settings, "PARTS_PROGRESS_CACHE_SECONDS", 300)
        self.poll_cache_seconds = poll_cache_seconds or getattr(
            settings, "PARTS_PROGRESS_POLL_CACHE_SECONDS", 30
        )

    def get_upload_progress(self, upload_id: int) -> ProgressSnapshot:
        upload = Upload.objects.get(pk=upload_id)
        chunks = list(upload.chunks.order_by("chunk_number"))

        progress: ProgressSnapshot = {
            "upload_id": upload.pk,
            "status": upload.status,
            "filename": upload.original_filename,
            "total_parts": upload.total_parts,
            "processed_parts": upload.processed_parts,
            "processing_method": "chunked" if chunks else "standard",
            "started_at": upload.uploaded_at,
            "completed_at": upload.completed_at,
            "processing_logs": list(upload.processing_logs or []),
        }
        if chunks:
            progress.update(self._chunk_progress(chunks))
        else:
            progress.update(self._standard_progress(upload))
        return progress

    def _chunk_progress(self, chunks: List[UploadChunk]) -> ProgressSnapshot:
        by_status: Dict[str, List[UploadChunk]] = {status: [] for status in UploadChunk.Status.values}
        for chunk in chunks:
            by_status.setdefault(chunk.status, []).append(chunk)

        completed = by_status[UploadChunk.Status.COMPLETED]
        failed = by_status[UploadChunk.Status.FAILED]
        processing = by_status[UploadChunk.Status.PROCESSING]
        pending = by_status[UploadChunk.Status.PENDING]

        durations = [chunk.processing_time_seconds or 0.0 for chunk in completed]
        avg_time = sum(durations) / len(durations) if durations else None
        remaining = len(processing) + len(pending)
        eta = format_duration(avg_time * remaining) if avg_time and remaining > 0 else None

        return {
            "processing_type": "chunked",
            "overall_progress_percentage": chunk_progress_percentage(len(completed) + len(failed), len(chunks)),
            "chunks": {
                "total": len(chunks),
                "completed": len(completed),
                "failed": len(failed),
                "processing": len(processing),
                "pending": len(pending),
            },
            "performance": {
                "avg_processing_time_per_chunk": round_half_up(avg_time, 2) if avg_time else None,
                "estimated_time_remaining": eta,
                "total_processing_time": round_half_up(sum(durations), 2),
                "chunks_per_minute": chunks_per_minute(completed),
            },
            "chunk_details": [
                {
                    "chunk_number": chunk.chunk_number,
                    "status": chunk.status,
                    "start_row": chunk.start_row,
                    "end_row": chunk.end_row,
                    "total_rows": chunk.total_rows,
                    "processed_rows": chunk.processed_rows,
                    "created_parts": chunk.created_parts,
                    "updated_parts": chunk.updated_parts,
                    "failed_rows": chunk.failed_rows,
                    "progress_percentage": chunk.progress_percentage,
                    "processing_time": (
                        round_half_up(chunk.processing_time_seconds, 2)
                        if chunk.processing_time_seconds
                        else None
                    ),
                    "started_at": chunk.started_at,
                    "completed_at": chunk.completed_at,
                    "error_details": chunk.error_details or None,
                }
                for chunk in chunks
            ],
            "summary": {
                "total_created_parts": sum(chunk.created_parts for chunk in completed),
                "total_updated_parts": sum(chunk.updated_parts for chunk in completed),
                "total_failed_rows": sum(chunk.failed_rows for chunk in chunks),
            },
        }

    def _standard_progress(self, upload: Upload) -> ProgressSnapshot:
        return {
            "processing_type": "standard",
            "overall_progress_percentage": chunk_progress_percentage(
                upload.processed_parts or 0, upload.total_parts or 0
            ),
            "performance": {
                "estimated_time_remaining": None,
                "processing_speed": None,
            },
        }

    def get_uploads_progress_summary(self, upload_ids: Sequence[int]) -> List[ProgressSnapshot]:
        summaries: List[ProgressSnapshot] = []
        for upload in Upload.objects.filter(pk__in=upload_ids).prefetch_related("chunks").order_by("pk"):
            chunks = list(upload.chunks.all())
            summary: ProgressSnapshot = {
                "upload_id": upload.pk,
                "filename": upload.original_filename,
                "status": upload.status,
                "processing_method": "chunked" if chunks else "standard",
            }
            if chunks:
                completed = sum(1 for chunk in chunks if chunk.status == UploadChunk.Status.COMPLETED)
                failed = sum(1 for chunk in chunks if chunk.status == UploadChunk.Status.FAILED)
                summary["progress_percentage"] = chunk_progress_percentage(completed + failed, len(chunks))
                summary["chunks_completed"] = completed
                summary["chunks_total"] = len(chunks)
                summary["has_failures"] = failed > 0
            else:
                summary["progress_percentage"] = chunk_progress_percentage(
                    upload.processed_parts or 0, upload.total_parts or 0
                )
            summaries.append(summary)
        return summaries

    def cache_upload_progress(self, upload_id: int) -> ProgressSnapshot:
        progress = self.get_upload_progress(upload_id)
        cache.set(progress_cache_key(upload_id), progress, self.cache_seconds)
        return progress

    def get_cached_upload_progress(self, upload_id: int, force_fresh: bool = False) -> ProgressSnapshot:
        if force_fresh:
            return self.get_upload_progress(upload_id)
        return cache.get_or_set(
            progress_cache_key(upload_id),
            lambda: self.get_upload_progress(upload_id),
            self.poll_cache_seconds,
        )

    def invalidate(self, upload_id: int) -> None:
        cache.delete(progress_cache_key(upload_id))

    def update_chunk_progress(self, chunk_id: int, processed_rows: int, status: Optional[str] = None) -> None:
        chunk = UploadChunk.objects.filter(pk=chunk_id).first()
        if chunk is None:
            return
        chunk.processed_rows = processed_rows
        update_fields = ["processed_rows", "updated_at"]
        if status:
            chunk.status = status
            update_fields.append("status")
        chunk.save(update_fields=update_fields)
        self.invalidate(chunk.upload_id)

    def check_stuck_uploads(
        self,
        now: Optional[datetime] = None,
        policy: Optional[str] = None,
    ) -> List[ProgressSnapshot]:
        """Report uploads that stopped making progress.

        An upload is stuck when it has been ``processing`` without an update for
        longer than the stuck threshold and none of its chunks moved within the
        activity window. The ``fail`` policy also marks those uploads failed.
        """
        now = now or timezone.now()
        policy = (policy or getattr(settings, "PARTS_STUCK_UPLOAD_POLICY", STUCK_POLICY_REPORT)).lower()
        stuck_threshold = now - timedelta(hours=getattr(settings, "PARTS_STUCK_UPLOAD_HOURS", 2))
        activity_threshold = now - timedelta(minutes=getattr(settings, "PARTS_STUCK_ACTIVITY_MINUTES", 30))

        results: List[ProgressSnapshot] = []
        candidates = Upload.objects.filter(
            status=Upload.Status.PROCESSING, updated_at__lt=stuck_threshold
        ).order_by("pk")
        for upload in candidates:
            if upload.chunks.filter(updated_at__gte=activity_threshold).exists():
                continue

            stuck_since = upload.updated_at
            action = "marked_as_stuck"
            if policy == STUCK_POLICY_FAIL:
                upload.mark_failed(f"Marked as failed: no progress since {stuck_since.isoformat()}")
                self.invalidate(upload.pk)
                action = "marked_as_failed"
            logger.warning("Upload %s looks stuck since %s (%s)", upload.pk, stuck_since, action)
            results.append(
                {
                    "upload_id": upload.pk,
                    "filename": upload.original_filename,
                    "stuck_since": stuck_since,
                    "action": action,
                }
            )
        return results
