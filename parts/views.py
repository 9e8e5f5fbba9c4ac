import logging
from pathlib import Path
from tempfile import TemporaryDirectory

from rest_framework import permissions, status
from rest_framework.parsers import FormParser, MultiPartParser
from rest_framework.response import Response
from rest_framework.views import APIView

from .archives import is_image_file
from .images import PartImageService
from .ingestion import get_temp_dir
from .models import Part
from .queue import CeleryTaskQueue
from .serializers import PartIdsSerializer, PartImageSerializer

logger = logging.getLogger(__name__)


def get_image_service() -> PartImageService:
    return PartImageService()


def get_task_queue() -> CeleryTaskQueue:
    return CeleryTaskQueue()


class PartsCatalogSyncView(APIView):
    permission_classes = [permissions.AllowAny]

    def post(self, request, *args, **kwargs):
        serializer = PartIdsSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        part_ids = serializer.validated_data["part_ids"]

        existing = set(Part.objects.filter(pk__in=part_ids).values_list("pk", flat=True))
        missing = [part_id for part_id in part_ids if part_id not in existing]
        if missing:
            return Response(
                {"detail": "Some parts do not exist.", "missing_ids": missing},
                status=status.HTTP_422_UNPROCESSABLE_ENTITY,
            )

        get_task_queue().sync_catalog(part_ids)
        return Response({"queued_parts": len(part_ids)}, status=status.HTTP_202_ACCEPTED)


class PartImageView(APIView):
    parser_classes = [MultiPartParser, FormParser]
    permission_classes = [permissions.AllowAny]

    def post(self, request, part_id: int, *args, **kwargs):
        part = Part.objects.filter(pk=part_id).first()
        if part is None:
            return Response({"detail": f"Part {part_id} not found."}, status=status.HTTP_404_NOT_FOUND)

        uploaded_image = request.FILES.get("image")
        if not uploaded_image:
            return Response(
                {"detail": "No image uploaded under 'image' field."},
                status=status.HTTP_400_BAD_REQUEST,
            )

        original_name = Path(uploaded_image.name).name
        if not is_image_file(Path(original_name)):
            return Response(
                {"detail": "Only jpg, jpeg, png, gif and webp images are supported."},
                status=status.HTTP_400_BAD_REQUEST,
            )

        temp_dir = get_temp_dir()
        if temp_dir is not None:
            temp_dir.mkdir(parents=True, exist_ok=True)
        with TemporaryDirectory(prefix="parts_image_", dir=temp_dir) as work_dir:
            image_path = Path(work_dir) / original_name
            with image_path.open("wb") as destination:
                for chunk in uploaded_image.chunks():
                    destination.write(chunk)
            url = get_image_service().upload_image_for_part(part, image_path, original_name, part.context_label)

        if not url:
            return Response(
                {"detail": "Image could not be uploaded."},
                status=status.HTTP_422_UNPROCESSABLE_ENTITY,
            )
        logger.info("Uploaded image for part %s: %s", part.pk, url)
        return Response(PartImageSerializer(part).data)

    def delete(self, request, part_id: int, *args, **kwargs):
        part = Part.objects.filter(pk=part_id).first()
        if part is None:
            return Response({"detail": f"Part {part_id} not found."}, status=status.HTTP_404_NOT_FOUND)
        if not part.image_url:
            return Response({"detail": "Part has no image."}, status=status.HTTP_404_NOT_FOUND)

        deleted = get_image_service().remove_part_image(part)
        payload = PartImageSerializer(part).data
        payload["deleted"] = deleted
        return Response(payload)
