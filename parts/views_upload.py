import logging
from pathlib import Path
from tempfile import NamedTemporaryFile

from django.conf import settings
from rest_framework import permissions, status
from rest_framework.parsers import FormParser, MultiPartParser
from rest_framework.response import Response
from rest_framework.views import APIView

from .ingestion import PROCESSING_METHOD_CHUNKED, UploadProcessor, get_upload_dir
from .models import Part, Upload, UploadChunk
from .progress import STUCK_POLICY_REPORT, ProgressTracker
from .queue import CeleryTaskQueue
from .serializers import UploadChunkSerializer, UploadIdsSerializer, UploadSerializer

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {".csv", ".xlsx", ".xls", ".zip"}
TRUTHY_VALUES = {"1", "true", "yes", "y", "t"}


def get_processor() -> UploadProcessor:
    return UploadProcessor()


def get_task_queue() -> CeleryTaskQueue:
    return CeleryTaskQueue()


def _not_found(upload_id: int) -> Response:
    return Response({"detail": f"Upload {upload_id} not found."}, status=status.HTTP_404_NOT_FOUND)


class UploadPartsFileView(APIView):
    parser_classes = [MultiPartParser, FormParser]
    permission_classes = [permissions.AllowAny]

    def post(self, request, *args, **kwargs):
        uploaded_file = request.FILES.get("file")
        if not uploaded_file:
            return Response(
                {"detail": "No file uploaded under 'file' field."},
                status=status.HTTP_400_BAD_REQUEST,
            )

        if uploaded_file.size <= 0:
            return Response(
                {"detail": "Uploaded file is empty."},
                status=status.HTTP_400_BAD_REQUEST,
            )

        max_upload_size = getattr(settings, "PARTS_MAX_UPLOAD_SIZE", 50 * 1024 * 1024)
        if uploaded_file.size > max_upload_size:
            return Response(
                {"detail": "Uploaded file exceeds the maximum allowed size."},
                status=status.HTTP_400_BAD_REQUEST,
            )

        original_name = uploaded_file.name
        extension = Path(original_name).suffix.lower()
        if extension not in ALLOWED_EXTENSIONS:
            return Response(
                {"detail": "Only .csv, .xlsx, .xls and .zip files are supported."},
                status=status.HTTP_400_BAD_REQUEST,
            )

        with NamedTemporaryFile("wb", dir=get_upload_dir(), prefix="incoming_", suffix=extension, delete=False) as destination:
            for chunk in uploaded_file.chunks():
                destination.write(chunk)
            incoming_path = Path(destination.name)

        try:
            result = get_processor().process_upload(incoming_path, original_name)
        finally:
            incoming_path.unlink(missing_ok=True)

        if not result.success:
            return Response(result.to_dict(), status=status.HTTP_422_UNPROCESSABLE_ENTITY)

        response_status = (
            status.HTTP_202_ACCEPTED
            if result.processing_method == PROCESSING_METHOD_CHUNKED
            else status.HTTP_201_CREATED
        )
        return Response(result.to_dict(), status=response_status)


class UploadProgressView(APIView):
    permission_classes = [permissions.AllowAny]

    def get(self, request, upload_id: int, *args, **kwargs):
        force_fresh = request.query_params.get("fresh", "").lower() in TRUTHY_VALUES
        try:
            progress = ProgressTracker().get_cached_upload_progress(upload_id, force_fresh=force_fresh)
        except Upload.DoesNotExist:
            return _not_found(upload_id)
        return Response(progress)


class RefreshUploadProgressView(APIView):
    permission_classes = [permissions.AllowAny]

    def post(self, request, upload_id: int, *args, **kwargs):
        try:
            progress = ProgressTracker().cache_upload_progress(upload_id)
        except Upload.DoesNotExist:
            return _not_found(upload_id)
        return Response(progress)


class UploadChunksView(APIView):
    permission_classes = [permissions.AllowAny]

    def get(self, request, upload_id: int, *args, **kwargs):
        upload = Upload.objects.filter(pk=upload_id).first()
        if upload is None:
            return _not_found(upload_id)

        chunks = list(upload.chunks.order_by("chunk_number"))
        status_counts = {value: 0 for value in UploadChunk.Status.values}
        for chunk in chunks:
            status_counts[chunk.status] = status_counts.get(chunk.status, 0) + 1

        return Response(
            {
                "upload": UploadSerializer(upload).data,
                "chunks": UploadChunkSerializer(chunks, many=True).data,
                "status_counts": status_counts,
            }
        )


class UploadsProgressSummaryView(APIView):
    permission_classes = [permissions.AllowAny]

    def post(self, request, *args, **kwargs):
        serializer = UploadIdsSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        summaries = ProgressTracker().get_uploads_progress_summary(serializer.validated_data["upload_ids"])
        return Response({"uploads": summaries})


class StuckUploadsView(APIView):
    permission_classes = [permissions.AllowAny]

    def get(self, request, *args, **kwargs):
        # Read-only report; the scheduled task applies the configured policy.
        stuck = ProgressTracker().check_stuck_uploads(policy=STUCK_POLICY_REPORT)
        return Response({"count": len(stuck), "stuck_uploads": stuck})


class CancelUploadView(APIView):
    permission_classes = [permissions.AllowAny]

    def post(self, request, upload_id: int, *args, **kwargs):
        try:
            cancelled = get_processor().cancel_upload(upload_id)
        except Upload.DoesNotExist:
            return _not_found(upload_id)

        if not cancelled:
            return Response(
                {"detail": "Upload has already finished and cannot be cancelled."},
                status=status.HTTP_409_CONFLICT,
            )
        return Response({"upload_id": upload_id, "status": Upload.Status.CANCELLED})


class UploadCatalogSyncView(APIView):
    permission_classes = [permissions.AllowAny]

    def post(self, request, upload_id: int, *args, **kwargs):
        if not Upload.objects.filter(pk=upload_id).exists():
            return _not_found(upload_id)

        part_ids = list(Part.objects.filter(upload_id=upload_id).order_by("pk").values_list("pk", flat=True))
        if not part_ids:
            return Response(
                {"detail": "Upload has no parts to sync."},
                status=status.HTTP_400_BAD_REQUEST,
            )

        get_task_queue().sync_catalog(part_ids, upload_id)
        return Response(
            {"upload_id": upload_id, "queued_parts": len(part_ids)},
            status=status.HTTP_202_ACCEPTED,
        )
