import logging
from dataclasses import dataclass
from typing import List, Optional

from django.conf import settings
from django.db import transaction

from .models import Upload, UploadChunk
from .utils.row_filter import HEADER_ROW

logger = logging.getLogger(__name__)

FIRST_DATA_ROW = HEADER_ROW + 1


@dataclass(frozen=True)
class RowRange:
    chunk_number: int
    start_row: int
    end_row: int

    @property
    def total_rows(self) -> int:
        return self.end_row - self.start_row + 1


def plan_row_ranges(total_data_rows: int, chunk_size: int) -> List[RowRange]:
    """Split ``total_data_rows`` data rows into contiguous inclusive ranges.

    Ranges use absolute sheet row numbers, so the first range starts at row 2
    and the last one ends at ``total_data_rows + 1``.
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1.")
    if total_data_rows <= 0:
        return []

    last_row = total_data_rows + 1
    ranges: List[RowRange] = []
    for chunk_number, start_row in enumerate(range(FIRST_DATA_ROW, last_row + 1, chunk_size), start=1):
        end_row = min(start_row + chunk_size - 1, last_row)
        ranges.append(RowRange(chunk_number=chunk_number, start_row=start_row, end_row=end_row))
    return ranges


class ChunkPlanner:
    def __init__(self, chunk_size: Optional[int] = None) -> None:
        self.chunk_size = chunk_size or getattr(settings, "PARTS_CHUNK_SIZE", 250)

    def plan(self, upload: Upload, total_data_rows: int) -> List[UploadChunk]:
        """Persist one pending chunk per row range and return them in order."""
        ranges = plan_row_ranges(total_data_rows, self.chunk_size)
        with transaction.atomic():
            UploadChunk.objects.bulk_create(
                [
                    UploadChunk(
                        upload=upload,
                        chunk_number=row_range.chunk_number,
                        start_row=row_range.start_row,
                        end_row=row_range.end_row,
                        total_rows=row_range.total_rows,
                        status=UploadChunk.Status.PENDING,
                    )
                    for row_range in ranges
                ]
            )

        logger.info(
            "Planned %s chunks of up to %s rows for upload %s (%s data rows).",
            len(ranges),
            self.chunk_size,
            upload.pk,
            total_data_rows,
        )
        return list(upload.chunks.order_by("chunk_number"))
