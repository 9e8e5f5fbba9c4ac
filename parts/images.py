import logging
import mimetypes
import re
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from django.utils.text import slugify
from PIL import Image, UnidentifiedImageError

from .exceptions import ExternalServiceError
from .models import Part, PartAdditionalField, Upload
from .storage import S3ObjectStorage

logger = logging.getLogger(__name__)

UNKNOWN_CONTEXT = "unknown"
MIN_TOKEN_LENGTH = 3

# Ordered from most to least specific; the first usable token wins.
PART_NUMBER_PATTERNS = [
    re.compile(r"(\d{7,})"),
    re.compile(r"(\d{5,})"),
    re.compile(r"([A-Z0-9]{5,})"),
    re.compile(r"([A-Z]\d{4,})"),
    re.compile(r"(\d{4,}[A-Z])"),
    re.compile(r"_([A-Z0-9\-_.]+)_"),
    re.compile(r"\-([A-Z0-9\-_.]+)\-"),
    re.compile(r"^([A-Z0-9\-_.]+)"),
    re.compile(r"([A-Z0-9\-_.]{3,})"),
]

ImagePaths = Union[Sequence[Path], Mapping[Path, str]]


def extract_part_number_from_filename(filename: str) -> Optional[str]:
    stem = Path(filename).stem.upper()
    for pattern in PART_NUMBER_PATTERNS:
        match = pattern.search(stem)
        if not match:
            continue
        candidate = match.group(1).strip("-_.")
        if len(candidate) >= MIN_TOKEN_LENGTH:
            return candidate
    return None


def build_object_key(context_label: Optional[str], original_filename: str) -> str:
    """``parts/{slug(context)}/{slug(stem)}.{extension}``"""
    context_slug = slugify(context_label or UNKNOWN_CONTEXT) or UNKNOWN_CONTEXT
    path = Path(original_filename)
    filename_slug = slugify(path.stem) or "image"
    extension = path.suffix.lower().lstrip(".")
    return f"parts/{context_slug}/{filename_slug}.{extension}"


def inspect_image(image_path: Path) -> Optional[str]:
    """Return the MIME type of a decodable image, or None when it is not one."""
    try:
        with Image.open(image_path) as image:
            image.verify()
            image_format = image.format
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
        return None
    return Image.MIME.get(image_format or "") or mimetypes.guess_type(str(image_path))[0]


def _image_items(image_paths: ImagePaths) -> List[Tuple[Path, str]]:
    if isinstance(image_paths, Mapping):
        return [(Path(path), name) for path, name in image_paths.items()]
    return [(Path(path), Path(path).name) for path in image_paths]


class PartImageService:
    """Match loose image files to parts and publish them to object storage."""

    def __init__(self, storage: Optional[S3ObjectStorage] = None) -> None:
        self.storage = storage or S3ObjectStorage()

    def upload_image_for_parts(
        self,
        part_ids: Sequence[int],
        image_path: Path,
        original_filename: str,
        context_label: Optional[str] = None,
    ) -> Optional[str]:
        """Upload one image and point every part in ``part_ids`` at it.

        Returns the public URL, or None when the file is not a usable image or
        the upload failed.
        """
        image_path = Path(image_path)
        if not part_ids:
            return None
        if not self.storage.bucket:
            logger.error("S3 bucket is not configured; cannot upload %s", original_filename)
            return None
        if not image_path.is_file():
            logger.error("Image file not found: %s", image_path)
            return None

        content_type = inspect_image(image_path)
        if content_type is None:
            logger.error("Invalid image file: %s", original_filename)
            return None

        if not context_label:
            context_label = (
                PartAdditionalField.objects.filter(
                    part_id__in=part_ids, field_name=PartAdditionalField.CONTEXT_FIELD
                )
                .values_list("field_value", flat=True)
                .first()
            )
        key = build_object_key(context_label, original_filename)

        try:
            url = self.storage.put_file(key, image_path, content_type)
        except ExternalServiceError:
            logger.exception("Failed to upload %s for parts %s", original_filename, list(part_ids))
            return None

        Part.objects.filter(pk__in=part_ids).update(image_url=url)
        return url

    def upload_image_for_part(
        self,
        part: Part,
        image_path: Path,
        original_filename: str,
        context_label: Optional[str] = None,
    ) -> Optional[str]:
        if part.image_url:
            self.delete_image(part.image_url)
        url = self.upload_image_for_parts([part.pk], image_path, original_filename, context_label)
        if url:
            part.image_url = url
        return url

    def delete_image(self, image_url: str) -> bool:
        key = self.storage.key_from_url(image_url)
        if not key:
            return False
        try:
            if not self.storage.exists(key):
                return False
            self.storage.delete(key)
        except ExternalServiceError:
            logger.exception("Error deleting image %s", image_url)
            return False
        return True

    def remove_part_image(self, part: Part) -> bool:
        if not part.image_url:
            return False
        deleted = self.delete_image(part.image_url)
        part.image_url = None
        part.save(update_fields=["image_url", "updated_at"])
        return deleted

    def match_and_upload_images(self, parts: Iterable[Part], image_paths: ImagePaths) -> Dict[str, int]:
        """Heuristic matching for images that arrive without a filename column."""
        results = {"matched": 0, "uploaded": 0, "failed": 0}
        if not self.storage.bucket:
            logger.error("S3 bucket is not configured; skipping image matching.")
            return results

        parts_by_number: Dict[str, Part] = {}
        parts_by_description: Dict[str, Part] = {}
        for part in parts:
            if part.part_number:
                parts_by_number[part.part_number.strip().lower()] = part
            if part.description:
                parts_by_description[part.description.strip().lower()] = part

        for image_path, original_filename in _image_items(image_paths):
            matched_part = self._match_part(original_filename, parts_by_number, parts_by_description)
            if matched_part is None:
                logger.debug("No part matches image %s", original_filename)
                continue

            results["matched"] += 1
            if self.upload_image_for_part(matched_part, image_path, original_filename):
                results["uploaded"] += 1
            else:
                results["failed"] += 1

        logger.info(
            "Image matching finished: %s matched, %s uploaded, %s failed.",
            results["matched"],
            results["uploaded"],
            results["failed"],
        )
        return results

    def _match_part(
        self,
        original_filename: str,
        parts_by_number: Dict[str, Part],
        parts_by_description: Dict[str, Part],
    ) -> Optional[Part]:
        extracted = extract_part_number_from_filename(original_filename)
        if extracted and extracted.lower() in parts_by_number:
            return parts_by_number[extracted.lower()]

        lowered = original_filename.lower()
        for part_number, part in parts_by_number.items():
            if part_number in lowered:
                return part

        readable_stem = re.sub(r"[_\-]+", " ", Path(lowered).stem).strip()
        return parts_by_description.get(readable_stem)

    def process_images_for_context(
        self,
        upload: Upload,
        image_paths: ImagePaths,
        context_label: str,
    ) -> Dict[str, int]:
        """Attach images to the parts of ``upload`` whose rows named them.

        The join is an exact, case-insensitive match between the image filename
        and the filename column captured during row normalization. One image
        can serve many parts.
        """
        results = {"matched": 0, "uploaded": 0, "replaced": 0, "skipped": 0}
        try:
            part_ids = list(
                Part.objects.filter(
                    upload=upload,
                    additional_fields__field_name=PartAdditionalField.CONTEXT_FIELD,
                    additional_fields__field_value=context_label,
                )
                .order_by("pk")
                .values_list("pk", flat=True)
                .distinct()
            )
            if not part_ids:
                logger.warning("No parts found for context '%s' on upload %s", context_label, upload.pk)
                return results

            part_ids_by_image: Dict[str, List[int]] = {}
            image_fields = (
                PartAdditionalField.objects.filter(
                    part_id__in=part_ids, field_name=PartAdditionalField.IMAGE_FILENAME_FIELD
                )
                .order_by("part_id")
                .values_list("part_id", "field_value")
            )
            for part_id, image_filename in image_fields:
                if image_filename:
                    part_ids_by_image.setdefault(image_filename.strip().lower(), []).append(part_id)

            available_images: Dict[str, Tuple[Path, str]] = {}
            for image_path, original_filename in _image_items(image_paths):
                available_images.setdefault(original_filename.lower(), (image_path, original_filename))

            for image_filename, grouped_ids in part_ids_by_image.items():
                if image_filename not in available_images:
                    results["skipped"] += len(grouped_ids)
                    logger.debug("Image %s not found among uploaded files", image_filename)
                    continue

                image_path, original_filename = available_images[image_filename]
                results["matched"] += len(grouped_ids)

                old_urls = set(
                    Part.objects.filter(pk__in=grouped_ids, image_url__isnull=False)
                    .exclude(image_url="")
                    .values_list("image_url", flat=True)
                )
                for old_url in old_urls:
                    if self.delete_image(old_url):
                        results["replaced"] += 1

                url = self.upload_image_for_parts(grouped_ids, image_path, original_filename, context_label)
                if url:
                    results["uploaded"] += len(grouped_ids)
                    logger.info("Uploaded %s for %s parts: %s", original_filename, len(grouped_ids), url)
                else:
                    results["skipped"] += len(grouped_ids)

            upload.append_log(
                f"Images for '{context_label}': {results['matched']} matched, "
                f"{results['uploaded']} updated, {results['replaced']} replaced"
            )
        except Exception:
            logger.exception("Error processing images for context '%s' on upload %s", context_label, upload.pk)
        return results
