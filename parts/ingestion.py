import itertools
import logging
import math
import shutil
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from django.conf import settings
from django.db.models import F
from django.utils import timezone

from .archives import extract_archive
from .chunking import ChunkPlanner
from .exceptions import ChunkProcessingError, FileFormatError, IngestionError
from .images import PartImageService
from .models import Part, PartAdditionalField, Upload, UploadChunk, UploadType
from .normalization import NormalizationResult, RowNormalizer, context_label_for
from .progress import ProgressTracker
from .queue import CeleryTaskQueue
from .utils.tabular_reader import TabularFileReader

logger = logging.getLogger(__name__)

PROCESSING_METHOD_CHUNKED = "chunked"
PROCESSING_METHOD_STANDARD = "standard"

CHUNK_DISPATCH_STAGGER_SECONDS = 2
ARCHIVE_AGGREGATION_COUNTDOWN_SECONDS = 120
CANCEL_CHECK_INTERVAL = 25


@dataclass
class UploadResult:
    success: bool
    upload_id: Optional[int] = None
    batch_id: Optional[str] = None
    processing_method: Optional[str] = None
    total_parts: Optional[int] = None
    message: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {key: value for key, value in asdict(self).items() if value is not None}


def get_upload_dir() -> Path:
    configured = getattr(settings, "PARTS_UPLOAD_DIR", "")
    upload_dir = Path(configured) if configured else Path(settings.MEDIA_ROOT) / "uploads"
    upload_dir.mkdir(parents=True, exist_ok=True)
    return upload_dir


def get_temp_dir() -> Optional[Path]:
    configured = getattr(settings, "PARTS_TEMP_DIR", "")
    return Path(configured) if configured else None


def cancellation_probe(upload_id: int, every: int = CANCEL_CHECK_INTERVAL) -> Callable[[], bool]:
    """Return a callable that reports cancellation, hitting the database every ``every`` calls."""
    calls = itertools.count()

    def is_cancelled() -> bool:
        if next(calls) % every:
            return False
        return Upload.objects.filter(pk=upload_id, status=Upload.Status.CANCELLED).exists()

    return is_cancelled


def _remove_file(path: Optional[str]) -> None:
    if not path:
        return
    try:
        Path(path).unlink(missing_ok=True)
    except OSError:
        logger.warning("Could not remove %s", path, exc_info=True)


class UploadProcessor:
    """Entry point for every upload: picks a processing path and drives it to completion."""

    def __init__(
        self,
        task_queue: Optional[CeleryTaskQueue] = None,
        image_service: Optional[PartImageService] = None,
        progress: Optional[ProgressTracker] = None,
        planner: Optional[ChunkPlanner] = None,
    ) -> None:
        self.task_queue = task_queue or CeleryTaskQueue()
        self._image_service = image_service
        self.progress = progress or ProgressTracker()
        self.planner = planner or ChunkPlanner()
        self.row_threshold = getattr(settings, "PARTS_CHUNK_ROW_THRESHOLD", 100)
        self.file_size_threshold = getattr(settings, "PARTS_CHUNK_FILE_SIZE_THRESHOLD", 10 * 1024 * 1024)

    @property
    def image_service(self) -> PartImageService:
        if self._image_service is None:
            self._image_service = PartImageService()
        return self._image_service

    def should_chunk(self, file_path: Path) -> bool:
        file_path = Path(file_path)
        if file_path.stat().st_size > self.file_size_threshold:
            return True
        try:
            row_count = TabularFileReader(file_path).count_data_rows()
        except Exception:
            logger.warning("Row probe failed for %s; using chunked processing.", file_path.name, exc_info=True)
            return True
        return row_count > self.row_threshold

    def process_upload(self, file_path: Path, original_filename: str) -> UploadResult:
        """Register an upload and either queue it for chunked processing or process it inline."""
        upload_type = UploadType.from_filename(original_filename)
        upload = Upload.objects.create(
            filename=original_filename,
            original_filename=original_filename,
            upload_type=upload_type,
            batch_id=Upload.generate_batch_id(),
            status=Upload.Status.PENDING,
            processing_logs=[f"Started processing {original_filename}"],
        )
        logger.info("Processing upload %s (%s, %s)", upload.pk, original_filename, upload_type)

        stored_path: Optional[Path] = None
        try:
            if upload_type == UploadType.UNKNOWN:
                raise FileFormatError(f"Unsupported file type: {Path(original_filename).suffix or original_filename}")

            stored_path = self._store_source(upload, Path(file_path), original_filename)
            if upload_type == UploadType.ZIP or self.should_chunk(stored_path):
                self.task_queue.process_file(upload.pk)
                logger.info("Upload %s queued for chunked processing", upload.pk)
                return UploadResult(
                    success=True,
                    upload_id=upload.pk,
                    batch_id=upload.batch_id,
                    processing_method=PROCESSING_METHOD_CHUNKED,
                    message="File queued for chunked processing",
                )

            result = self.process_tabular_file(upload, stored_path, context_label_for(original_filename))
            upload.status = Upload.Status.COMPLETED
            upload.total_parts = result.total_parts
            upload.processed_parts = result.total_parts
            upload.completed_at = timezone.now()
            upload.save(update_fields=["status", "total_parts", "processed_parts", "completed_at", "updated_at"])
            _remove_file(str(stored_path))
            self._queue_catalog_sync(upload)
            return UploadResult(
                success=True,
                upload_id=upload.pk,
                batch_id=upload.batch_id,
                processing_method=PROCESSING_METHOD_STANDARD,
                total_parts=result.total_parts,
                message="File processed successfully",
            )
        except Exception as exc:
            logger.exception("Upload processing failed for %s", original_filename)
            upload.mark_failed(f"Error: {exc}")
            if stored_path is not None:
                _remove_file(str(stored_path))
            return UploadResult(success=False, upload_id=upload.pk, batch_id=upload.batch_id, error=str(exc))

    def _store_source(self, upload: Upload, file_path: Path, original_filename: str) -> Path:
        target = get_upload_dir() / f"{upload.batch_id}{Path(original_filename).suffix.lower()}"
        if file_path.resolve() != target.resolve():
            shutil.copyfile(file_path, target)
        upload.stored_path = str(target)
        upload.save(update_fields=["stored_path", "updated_at"])
        return target

    def process_tabular_file(
        self,
        upload: Upload,
        file_path: Path,
        context_label: str,
    ) -> NormalizationResult:
        columns, rows = TabularFileReader(file_path).read_all()
        return RowNormalizer(upload, columns, context_label).process_rows(rows)

    def process_stored_upload(self, upload_id: int) -> None:
        """Worker side of :meth:`process_upload` for queued uploads."""
        upload = Upload.objects.get(pk=upload_id)
        if upload.is_terminal:
            logger.info("Upload %s is already %s; nothing to do.", upload.pk, upload.status)
            return
        if upload.chunks.exists() or upload.child_uploads.exists():
            logger.info("Upload %s was already dispatched; skipping redelivery.", upload.pk)
            return

        stored_path = Path(upload.stored_path)
        if not stored_path.is_file():
            upload.mark_failed(f"Error: stored file not found at {stored_path}")
            return

        if upload.upload_type == UploadType.ZIP:
            self.process_archive(upload, stored_path)
        else:
            self.analyze_and_dispatch(upload, stored_path)

    def analyze_and_dispatch(
        self,
        upload: Upload,
        file_path: Path,
        context_label: Optional[str] = None,
    ) -> List[UploadChunk]:
        """Plan chunks for one tabular file and queue a worker task per chunk.

        Top-level uploads also get a delayed aggregation task; archive members
        are aggregated by their parent.
        """
        upload.status = Upload.Status.ANALYZING
        upload.save(update_fields=["status", "updated_at"])

        try:
            analysis = TabularFileReader(file_path).analyze()
            chunks = self.planner.plan(upload, analysis.total_data_rows)
        except Exception as exc:
            logger.exception("File analysis failed for upload %s", upload.pk)
            upload.mark_failed(f"File analysis failed: {exc}")
            _remove_file(str(file_path))
            return []

        upload.status = Upload.Status.PROCESSING
        upload.total_parts = analysis.total_data_rows
        upload.stored_path = str(file_path)
        upload.save(update_fields=["status", "total_parts", "stored_path", "updated_at"])
        upload.append_log(
            f"File analyzed: {analysis.total_data_rows} rows split into {len(chunks)} chunks "
            f"of up to {self.planner.chunk_size} rows"
        )

        label = context_label or context_label_for(upload.original_filename)
        for chunk in chunks:
            self.task_queue.process_chunk(
                chunk.pk,
                str(file_path),
                analysis.columns,
                label,
                countdown=chunk.chunk_number * CHUNK_DISPATCH_STAGGER_SECONDS,
            )

        if upload.parent_upload_id is None:
            self.task_queue.aggregate_upload(upload.pk, countdown=60 * math.ceil(len(chunks) / 10))
            logger.info("Queued aggregation for upload %s", upload.pk)
        else:
            logger.info("Upload %s is aggregated by parent %s", upload.pk, upload.parent_upload_id)

        self.progress.cache_upload_progress(upload.pk)
        return chunks

    def process_archive(self, upload: Upload, archive_path: Path) -> None:
        upload.status = Upload.Status.ANALYZING
        upload.save(update_fields=["status", "updated_at"])

        processed_files: List[str] = []
        first_context: Optional[str] = None
        child_ids: List[int] = []
        total_parts = 0
        image_count = 0
        try:
            with extract_archive(archive_path, temp_dir=get_temp_dir()) as contents:
                image_count = len(contents.image_files)
                upload.append_log(
                    f"Extracted {len(contents.tabular_files)} data files and {image_count} images "
                    f"from {upload.original_filename}"
                )

                for member in contents.tabular_files:
                    if self.should_chunk(member):
                        child = self._create_child_upload(upload, member)
                        self.analyze_and_dispatch(child, Path(child.stored_path))
                        child_ids.append(child.pk)
                        processed_files.append(f"{member.name} (chunked)")
                        continue

                    label = context_label_for(member.name)
                    try:
                        result = self.process_tabular_file(upload, member, label)
                    except IngestionError as exc:
                        logger.warning("Skipping %s in upload %s: %s", member.name, upload.pk, exc)
                        upload.append_log(f"Failed to process {member.name}: {exc}")
                        continue
                    total_parts += result.total_parts
                    processed_files.append(member.name)
                    first_context = first_context or label
                    upload.append_log(f"Processed {member.name}: {result.total_parts} parts")

                if not child_ids and contents.image_files and first_context:
                    self.image_service.process_images_for_context(upload, contents.image_files, first_context)
        except Exception as exc:
            logger.exception("Archive processing failed for upload %s", upload.pk)
            upload.mark_failed(f"Error: {exc}")
            _remove_file(str(archive_path))
            return

        if child_ids:
            upload.status = Upload.Status.PROCESSING
            upload.direct_parts = total_parts
            upload.processed_parts = total_parts
            upload.save(update_fields=["status", "direct_parts", "processed_parts", "updated_at"])
            upload.append_log(f"Dispatched chunking for {len(child_ids)} files")
            upload.append_log(f"Child upload IDs: {', '.join(str(pk) for pk in child_ids)}")
            retained_path = ""
            if image_count:
                retained_path = str(archive_path)
                upload.append_log(f"Found {image_count} images for later processing")
            else:
                _remove_file(str(archive_path))
            self.task_queue.aggregate_archive(
                upload.pk, retained_path, countdown=ARCHIVE_AGGREGATION_COUNTDOWN_SECONDS
            )
            return

        upload.status = Upload.Status.COMPLETED if processed_files else Upload.Status.FAILED
        upload.total_parts = total_parts
        upload.direct_parts = total_parts
        upload.processed_parts = total_parts
        upload.completed_at = timezone.now()
        upload.save(
            update_fields=["status", "total_parts", "direct_parts", "processed_parts", "completed_at", "updated_at"]
        )
        upload.append_log(f"Processed files: {', '.join(processed_files) or 'none'}")
        upload.append_log(f"Total parts: {total_parts}")
        upload.append_log(f"Images found: {image_count}")
        _remove_file(str(archive_path))
        self._queue_catalog_sync(upload)
        logger.info("Archive upload %s finished with %s parts", upload.pk, total_parts)

    def _create_child_upload(self, parent: Upload, member: Path) -> Upload:
        child = Upload.objects.create(
            filename=member.name,
            original_filename=member.name,
            upload_type=UploadType.from_filename(member.name),
            batch_id=Upload.generate_batch_id(),
            status=Upload.Status.ANALYZING,
            parent_upload=parent,
            processing_logs=[f"Part of ZIP: {parent.original_filename}"],
        )
        target = get_upload_dir() / f"{child.batch_id}{member.suffix.lower()}"
        shutil.copyfile(member, target)
        child.stored_path = str(target)
        child.save(update_fields=["stored_path", "updated_at"])
        logger.info("Created child upload %s for %s", child.pk, member.name)
        return child

    def process_chunk(
        self,
        chunk_id: int,
        file_path: str,
        columns: Sequence[str],
        context_label: Optional[str] = None,
    ) -> Optional[UploadChunk]:
        """Normalize the rows of one chunk. Failures stay on the chunk and never propagate."""
        chunk = UploadChunk.objects.select_related("upload").filter(pk=chunk_id).first()
        if chunk is None:
            logger.warning("Chunk %s not found.", chunk_id)
            return None
        if chunk.status == UploadChunk.Status.COMPLETED:
            logger.info("Chunk %s already completed; skipping redelivery.", chunk_id)
            return chunk

        upload = chunk.upload
        if upload.status == Upload.Status.CANCELLED:
            chunk.mark_as_failed("Upload was cancelled before this chunk started.")
            self.progress.invalidate(upload.pk)
            return chunk

        started = time.monotonic()
        chunk.mark_as_processing()
        label = context_label or context_label_for(upload.original_filename)
        try:
            result = self._normalize_chunk(chunk, upload, Path(file_path), columns, label)
            chunk.mark_as_completed(
                created_parts=result.created_parts,
                updated_parts=result.updated_parts,
                failed_rows=result.skipped_rows,
                processing_time=time.monotonic() - started,
            )
            Upload.objects.filter(pk=upload.pk).update(
                processed_parts=F("processed_parts") + result.total_parts,
                updated_at=timezone.now(),
            )
            logger.info(
                "Chunk %s of upload %s done: %s created, %s updated, %s skipped in %.2fs",
                chunk.chunk_number,
                upload.pk,
                result.created_parts,
                result.updated_parts,
                result.skipped_rows,
                chunk.processing_time_seconds,
            )
        except ChunkProcessingError as exc:
            logger.exception("Chunk %s of upload %s failed", chunk.chunk_number, upload.pk)
            chunk.mark_as_failed(str(exc), processing_time=time.monotonic() - started)
            upload.append_log(f"Chunk {chunk.chunk_number} failed: {exc}")

        self.progress.cache_upload_progress(upload.pk)
        return chunk

    def _normalize_chunk(
        self,
        chunk: UploadChunk,
        upload: Upload,
        file_path: Path,
        columns: Sequence[str],
        context_label: str,
    ) -> NormalizationResult:
        try:
            rows = TabularFileReader(file_path).read_range(chunk.start_row, chunk.end_row)
            return RowNormalizer(upload, columns, context_label).process_rows(
                rows, cancel_check=cancellation_probe(upload.pk)
            )
        except Exception as exc:
            raise ChunkProcessingError(f"Rows {chunk.start_row}-{chunk.end_row}: {exc}") from exc

    def aggregate_upload(self, upload_id: int) -> bool:
        """Finalize a chunked upload. Returns False while chunks are still in flight."""
        upload = Upload.objects.get(pk=upload_id)
        if not self._finalize_chunked_upload(upload):
            return False
        self.progress.cache_upload_progress(upload.pk)
        return True

    def _finalize_chunked_upload(self, upload: Upload) -> bool:
        chunks = list(upload.chunks.all())
        in_flight = [
            chunk
            for chunk in chunks
            if chunk.status in (UploadChunk.Status.PENDING, UploadChunk.Status.PROCESSING)
        ]
        if in_flight:
            logger.info("Upload %s still has %s chunks in flight.", upload.pk, len(in_flight))
            return False
        if upload.is_terminal:
            _remove_file(upload.stored_path)
            return True

        completed = [chunk for chunk in chunks if chunk.status == UploadChunk.Status.COMPLETED]
        failed = [chunk for chunk in chunks if chunk.status == UploadChunk.Status.FAILED]
        created = sum(chunk.created_parts for chunk in completed)
        updated = sum(chunk.updated_parts for chunk in completed)
        total = created + updated
        elapsed = sum(chunk.processing_time_seconds or 0.0 for chunk in completed)

        if not completed:
            upload.mark_failed(f"Processing failed: all {len(failed)} chunks failed")
            _remove_file(upload.stored_path)
            logger.warning("Upload %s failed: no chunk completed.", upload.pk)
            return True

        if failed:
            upload.status = Upload.Status.COMPLETED_WITH_ERRORS
            summary = (
                f"Processing completed with {len(failed)} failed chunks. Created: {created}, "
                f"Updated: {updated}, Total: {total} parts in {elapsed:.2f}s"
            )
        else:
            upload.status = Upload.Status.COMPLETED
            summary = (
                f"Processing completed successfully. Created: {created}, "
                f"Updated: {updated}, Total: {total} parts in {elapsed:.2f}s"
            )
        upload.total_parts = total
        upload.processed_parts = total
        upload.completed_at = timezone.now()
        upload.save(update_fields=["status", "total_parts", "processed_parts", "completed_at", "updated_at"])
        upload.append_log(summary)
        logger.info("Upload %s finalized as %s with %s parts.", upload.pk, upload.status, total)

        _remove_file(upload.stored_path)
        self._queue_catalog_sync(upload)
        return True

    def aggregate_archive(self, upload_id: int, archive_path: Optional[str] = None) -> bool:
        """Finalize an archive upload once every chunked member is done."""
        upload = Upload.objects.get(pk=upload_id)
        children = list(upload.child_uploads.order_by("pk"))
        for child in children:
            if not child.is_terminal:
                self._finalize_chunked_upload(child)
                child.refresh_from_db()

        pending = [child.pk for child in children if not child.is_terminal]
        if pending:
            logger.info("Archive upload %s waiting on child uploads %s", upload.pk, pending)
            return False

        if upload.is_terminal:
            logger.info("Archive upload %s is already %s; nothing to aggregate.", upload.pk, upload.status)
            _remove_file(archive_path)
            return True

        successful = [
            child
            for child in children
            if child.status in (Upload.Status.COMPLETED, Upload.Status.COMPLETED_WITH_ERRORS)
        ]
        if archive_path and Path(archive_path).is_file():
            self._match_archive_images(upload, successful, Path(archive_path))

        direct_parts = upload.direct_parts
        total = direct_parts + sum(child.processed_parts for child in children)
        failed_children = [child for child in children if child.status == Upload.Status.FAILED]
        partial = any(child.status == Upload.Status.COMPLETED_WITH_ERRORS for child in children)

        if total == 0 and failed_children:
            status = Upload.Status.FAILED
        elif failed_children or partial:
            status = Upload.Status.COMPLETED_WITH_ERRORS
        else:
            status = Upload.Status.COMPLETED

        upload.status = status
        upload.total_parts = total
        upload.processed_parts = total
        upload.completed_at = timezone.now()
        upload.save(update_fields=["status", "total_parts", "processed_parts", "completed_at", "updated_at"])
        upload.append_log(
            f"ZIP processing finalized: {len(successful)} of {len(children)} chunked files succeeded, "
            f"{total} parts"
        )
        _remove_file(archive_path)
        if direct_parts:
            self._queue_catalog_sync(upload)
        self.progress.cache_upload_progress(upload.pk)
        logger.info("Archive upload %s finalized with status %s", upload.pk, status)
        return True

    def _match_archive_images(self, upload: Upload, children: List[Upload], archive_path: Path) -> None:
        with extract_archive(archive_path, temp_dir=get_temp_dir()) as contents:
            if not contents.image_files:
                return
            for child in children:
                self.image_service.process_images_for_context(
                    child, contents.image_files, context_label_for(child.original_filename)
                )
            direct_contexts = (
                PartAdditionalField.objects.filter(
                    part__upload=upload, field_name=PartAdditionalField.CONTEXT_FIELD
                )
                .order_by("field_value")
                .values_list("field_value", flat=True)
                .distinct()
            )
            for context_label in direct_contexts:
                self.image_service.process_images_for_context(upload, contents.image_files, context_label)
        upload.append_log("Images processed from ZIP archive")

    def cancel_upload(self, upload_id: int) -> bool:
        """Mark a running upload and its archive members cancelled. Returns False when already finished."""
        upload = Upload.objects.get(pk=upload_id)
        if upload.is_terminal:
            return False

        uploads = [upload] + [child for child in upload.child_uploads.all() if not child.is_terminal]
        for target in uploads:
            target.status = Upload.Status.CANCELLED
            target.completed_at = timezone.now()
            target.save(update_fields=["status", "completed_at", "updated_at"])
            target.append_log("Upload cancelled")
            self.progress.invalidate(target.pk)
        logger.info("Cancelled upload %s", upload.pk)
        return True

    def _queue_catalog_sync(self, upload: Upload) -> None:
        if not getattr(settings, "PARTS_AUTO_CATALOG_SYNC", True):
            return
        part_ids = list(Part.objects.filter(upload=upload).order_by("pk").values_list("pk", flat=True))
        if not part_ids:
            return
        try:
            self.task_queue.sync_catalog(part_ids, upload.pk)
        except Exception as exc:
            logger.exception("Failed to queue catalog sync for upload %s", upload.pk)
            upload.append_log(f"Failed to dispatch catalog sync: {exc}")
            return
        upload.append_log(f"Catalog sync queued for {len(part_ids)} parts")
