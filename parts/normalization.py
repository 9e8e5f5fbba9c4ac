import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from django.db import transaction

from .exceptions import ProcessingCancelled, UpsertTransactionError
from .models import Part, PartAdditionalField, Upload
from .utils.tabular_reader import is_empty_row

logger = logging.getLogger(__name__)

CORE_FIELDS = ("part_number", "description", "manufacturer")

CORE_FIELD_SYNONYMS: Dict[str, tuple] = {
    "part_number": ("part_number", "part number", "partnumber", "part_no", "part no", "part-number"),
    "description": ("description", "desc", "product_description", "product description", "product_desc"),
    "manufacturer": ("manufacturer", "manufacture", "vendor", "brand", "mfg", "mfr"),
}

IMAGE_FILENAME_HEADER = "img_page_path"

CancelCheck = Callable[[], bool]


@dataclass
class NormalizationResult:
    total_parts: int = 0
    created_parts: int = 0
    updated_parts: int = 0
    skipped_rows: int = 0
    processed_rows: int = 0

    def merge(self, other: "NormalizationResult") -> None:
        self.total_parts += other.total_parts
        self.created_parts += other.created_parts
        self.updated_parts += other.updated_parts
        self.skipped_rows += other.skipped_rows
        self.processed_rows += other.processed_rows


def context_label_for(filename: str) -> str:
    """The upsert scope of a source file: its name without the extension."""
    return Path(filename).stem


def find_header_index(columns: Sequence[str], field_name: str) -> Optional[int]:
    synonyms = CORE_FIELD_SYNONYMS.get(field_name, (field_name,))
    for index, column in enumerate(columns):
        if (column or "").strip().lower() in synonyms:
            return index
    logger.warning(
        "Could not find header for field '%s'. Available headers: %s",
        field_name,
        ", ".join(column for column in columns if column),
    )
    return None


def find_image_column_index(columns: Sequence[str]) -> Optional[int]:
    for index, column in enumerate(columns):
        if (column or "").strip().lower() == IMAGE_FILENAME_HEADER:
            return index
    return None


def value_from_row(row: Sequence[object], index: Optional[int]) -> Optional[str]:
    if index is None or index >= len(row) or row[index] is None:
        return None
    value = str(row[index]).strip()
    return value or None


class RowNormalizer:
    """Upsert the rows of one tabular source into parts scoped by its context label.

    A part is identified by (part number, manufacturer, context label). Matching
    parts are re-pointed at the current upload and get their additional fields
    rebuilt from scratch; anything else is created. The whole batch commits or
    rolls back as one transaction.
    """

    def __init__(self, upload: Upload, columns: Sequence[str], context_label: str) -> None:
        self.upload = upload
        self.columns = [(column or "").strip() for column in columns]
        self.context_label = context_label
        self.core_indices = {field: find_header_index(self.columns, field) for field in CORE_FIELDS}
        self.image_column_index = find_image_column_index(self.columns)

    def process_rows(
        self,
        rows: Sequence[Sequence[object]],
        cancel_check: Optional[CancelCheck] = None,
    ) -> NormalizationResult:
        result = NormalizationResult()
        try:
            with transaction.atomic():
                for row in rows:
                    if cancel_check is not None and cancel_check():
                        raise ProcessingCancelled(f"Upload {self.upload.pk} was cancelled.")
                    result.processed_rows += 1
                    if is_empty_row(row):
                        continue
                    created = self._upsert_row(row)
                    if created is None:
                        result.skipped_rows += 1
                    elif created:
                        result.created_parts += 1
                    else:
                        result.updated_parts += 1
        except ProcessingCancelled:
            raise
        except Exception as exc:
            logger.exception(
                "Rolled back %s rows from context '%s' for upload %s",
                len(rows),
                self.context_label,
                self.upload.pk,
            )
            raise UpsertTransactionError(f"Failed to upsert parts for '{self.context_label}': {exc}") from exc

        result.total_parts = result.created_parts + result.updated_parts
        logger.info(
            "Context '%s': %s parts (%s created, %s updated, %s skipped).",
            self.context_label,
            result.total_parts,
            result.created_parts,
            result.updated_parts,
            result.skipped_rows,
        )
        return result

    def _upsert_row(self, row: Sequence[object]) -> Optional[bool]:
        """Return True when a part was created, False when updated, None when skipped."""
        part_number = value_from_row(row, self.core_indices["part_number"])
        if not part_number:
            return None
        description = value_from_row(row, self.core_indices["description"])
        manufacturer = value_from_row(row, self.core_indices["manufacturer"])

        part = (
            Part.objects.filter(
                part_number=part_number,
                manufacturer=manufacturer,
                additional_fields__field_name=PartAdditionalField.CONTEXT_FIELD,
                additional_fields__field_value=self.context_label,
            )
            .order_by("pk")
            .first()
        )

        created = part is None
        if created:
            part = Part.objects.create(
                upload=self.upload,
                batch_id=self.upload.batch_id,
                part_number=part_number,
                description=description,
                manufacturer=manufacturer,
                is_active=True,
            )
        else:
            part.description = description
            part.upload = self.upload
            part.batch_id = self.upload.batch_id
            part.is_active = True
            part.save(update_fields=["description", "upload", "batch_id", "is_active", "updated_at"])
            part.additional_fields.all().delete()

        PartAdditionalField.objects.bulk_create(self._additional_fields(part, row))
        return created

    def _additional_fields(self, part: Part, row: Sequence[object]) -> List[PartAdditionalField]:
        fields = [
            PartAdditionalField(
                part=part,
                field_name=PartAdditionalField.CONTEXT_FIELD,
                field_value=self.context_label,
            )
        ]
        core_indices = {index for index in self.core_indices.values() if index is not None}
        for index, header in enumerate(self.columns):
            if not header or index in core_indices:
                continue
            value = value_from_row(row, index)
            if value is None:
                continue
            fields.append(PartAdditionalField(part=part, field_name=header, field_value=value))

        image_filename = value_from_row(row, self.image_column_index)
        if image_filename:
            fields.append(
                PartAdditionalField(
                    part=part,
                    field_name=PartAdditionalField.IMAGE_FILENAME_FIELD,
                    field_value=image_filename,
                )
            )
        return fields
