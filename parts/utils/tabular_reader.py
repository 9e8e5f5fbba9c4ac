import csv
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from itertools import islice
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple
from zipfile import BadZipFile

import xlrd
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from xlrd.xldate import XLDateError

from ..exceptions import EmptyFileError, FileFormatError, FileReadError
from .row_filter import HEADER_ROW, ChunkReadFilter

logger = logging.getLogger(__name__)

DATE_FORMAT = "%Y-%m-%d"

XLSX_EXTENSIONS = {".xlsx", ".xlsm"}
XLS_EXTENSIONS = {".xls"}
CSV_EXTENSIONS = {".csv"}

Row = List[object]


@dataclass(frozen=True)
class FileAnalysis:
    columns: List[str]
    headers: List[str]
    total_data_rows: int


def is_empty_row(values: Sequence[object]) -> bool:
    for value in values:
        if value is None:
            continue
        if isinstance(value, str) and value.strip() == "":
            continue
        return False
    return True


def _format_date(value: object) -> object:
    try:
        return value.strftime(DATE_FORMAT)
    except (AttributeError, ValueError):
        return str(value)


def _convert_value(value: object) -> object:
    if isinstance(value, (datetime, date)):
        return _format_date(value)
    # Spreadsheet engines hand back whole numbers as floats (12345.0).
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


class TabularFileReader:
    """Stream rows out of an XLSX, XLS or CSV file.

    Every public call reopens the file, so a reader can be shared between the
    analysis step and any number of chunk reads without holding a cursor open.
    """

    def __init__(self, file_path: Path, encoding: str = "utf-8-sig") -> None:
        self.file_path = Path(file_path)
        self.encoding = encoding
        self.extension = self.file_path.suffix.lower()
        if self.extension not in XLSX_EXTENSIONS | XLS_EXTENSIONS | CSV_EXTENSIONS:
            raise FileFormatError(f"Unsupported file type '{self.extension or self.file_path.name}'.")

    def analyze(self) -> FileAnalysis:
        """Read the header row and count data rows without loading cell data."""
        with self._open_source() as source:
            header = next(self._iter_rows(source, max_row=HEADER_ROW), None) or []
            highest_row = self._highest_row(source)

        columns = ["" if value is None else str(_convert_value(value)).strip() for value in header]
        headers = [column for column in columns if column]

        if highest_row < 2:
            raise EmptyFileError(f"{self.file_path.name} contains no data rows.")
        if not headers:
            raise EmptyFileError(f"{self.file_path.name} has no header row.")

        total_data_rows = highest_row - 1
        logger.debug(
            "Analyzed %s: %s columns, %s data rows.",
            self.file_path.name,
            len(headers),
            total_data_rows,
        )
        return FileAnalysis(columns=columns, headers=headers, total_data_rows=total_data_rows)

    def count_data_rows(self) -> int:
        with self._open_source() as source:
            return max(self._highest_row(source) - 1, 0)

    def read_range(self, start_row: int, end_row: int) -> List[Row]:
        """Return the non-empty rows between ``start_row`` and ``end_row`` inclusive."""
        row_filter = ChunkReadFilter(start_row, end_row)
        rows: List[Row] = []
        with self._open_source() as source:
            first_row = max(start_row, HEADER_ROW + 1)
            rows_in_range = self._iter_rows(source, min_row=first_row, max_row=end_row)
            for row_number, values in enumerate(rows_in_range, start=first_row):
                if row_number == HEADER_ROW or not row_filter.should_read(row_number):
                    continue
                converted = [_convert_value(value) for value in values]
                if is_empty_row(converted):
                    continue
                rows.append(converted)
        return rows

    def read_all(self) -> Tuple[List[str], List[Row]]:
        analysis = self.analyze()
        return analysis.columns, self.read_range(HEADER_ROW + 1, analysis.total_data_rows + 1)

    @contextmanager
    def _open_source(self):
        if not self.file_path.is_file():
            raise FileReadError(f"File not found at {self.file_path}")

        if self.extension in XLSX_EXTENSIONS:
            try:
                workbook = load_workbook(self.file_path, read_only=True, data_only=True)
            except (InvalidFileException, BadZipFile, KeyError) as exc:
                raise FileFormatError(f"Unable to read workbook {self.file_path.name}: {exc}") from exc
            except OSError as exc:
                raise FileReadError(f"Unable to open {self.file_path.name}: {exc}") from exc
            try:
                sheet = workbook.worksheets[0]
                if sheet.max_row is not None and sheet.max_row <= 1:
                    # Some writers store a bogus "A1" dimension; rows must then be discovered by streaming.
                    sheet.reset_dimensions()
                yield sheet
            finally:
                workbook.close()
        elif self.extension in XLS_EXTENSIONS:
            try:
                book = xlrd.open_workbook(str(self.file_path), on_demand=True)
            except xlrd.XLRDError as exc:
                raise FileFormatError(f"Unable to read workbook {self.file_path.name}: {exc}") from exc
            except OSError as exc:
                raise FileReadError(f"Unable to open {self.file_path.name}: {exc}") from exc
            try:
                yield book
            finally:
                book.release_resources()
        else:
            try:
                with self.file_path.open(newline="", encoding=self.encoding) as handle:
                    yield handle
            except (UnicodeDecodeError, csv.Error) as exc:
                raise FileFormatError(f"Unable to parse CSV {self.file_path.name}: {exc}") from exc

    def _iter_rows(
        self, source, min_row: int = 1, max_row: Optional[int] = None
    ) -> Iterator[Sequence[object]]:
        if self.extension in XLSX_EXTENSIONS:
            return source.iter_rows(min_row=min_row, max_row=max_row, values_only=True)
        if self.extension in XLS_EXTENSIONS:
            return self._iter_xls_rows(source, min_row, max_row)
        source.seek(0)
        return islice(csv.reader(source), min_row - 1, max_row)

    def _iter_xls_rows(self, book, min_row: int, max_row: Optional[int]) -> Iterator[List[object]]:
        sheet = book.sheet_by_index(0)
        last_row = sheet.nrows if max_row is None else min(max_row, sheet.nrows)
        for index in range(min_row - 1, last_row):
            values: List[object] = []
            for cell in sheet.row(index):
                if cell.ctype == xlrd.XL_CELL_EMPTY:
                    values.append(None)
                elif cell.ctype == xlrd.XL_CELL_DATE:
                    try:
                        values.append(xlrd.xldate_as_datetime(cell.value, book.datemode))
                    except (XLDateError, ValueError, OverflowError):
                        values.append(str(cell.value))
                else:
                    values.append(cell.value)
            yield values

    def _highest_row(self, source) -> int:
        if self.extension in XLSX_EXTENSIONS and source.max_row is not None:
            return source.max_row
        if self.extension in XLS_EXTENSIONS:
            return source.sheet_by_index(0).nrows

        # Unsized worksheets and CSV files need one streaming pass.
        highest = 0
        for row_number, values in enumerate(self._iter_rows(source), start=1):
            if not is_empty_row(values):
                highest = row_number
        return highest
