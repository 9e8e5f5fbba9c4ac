import re
import zipfile
from datetime import datetime

import pytest
from openpyxl.worksheet._read_only import ReadOnlyWorksheet
from openpyxl.worksheet.worksheet import Worksheet

from parts.exceptions import EmptyFileError, FileFormatError, FileReadError
from parts.utils.tabular_reader import TabularFileReader


def test_analyze_csv_reports_columns_and_row_count(write_csv) -> None:
    path = write_csv("parts.csv", [["A1", "One", "Acme", "", "red"], ["A2", "Two", "Acme", "", "blue"]])

    analysis = TabularFileReader(path).analyze()

    assert analysis.columns == ["part_number", "description", "manufacturer", "img_page_path", "color"]
    assert analysis.total_data_rows == 2


def test_header_only_file_is_empty(write_csv) -> None:
    path = write_csv("empty.csv", [])

    with pytest.raises(EmptyFileError):
        TabularFileReader(path).analyze()


def test_zero_byte_file_is_empty(input_dir) -> None:
    path = input_dir / "blank.csv"
    path.write_text("")

    with pytest.raises(EmptyFileError):
        TabularFileReader(path).analyze()


def test_read_range_returns_only_requested_rows(write_csv) -> None:
    rows = [[f"P{index}", f"Part {index}", "Acme", "", ""] for index in range(1, 8)]
    path = write_csv("parts.csv", rows)

    chunk = TabularFileReader(path).read_range(4, 6)

    assert [row[0] for row in chunk] == ["P3", "P4", "P5"]


def test_read_range_skips_blank_rows(write_csv) -> None:
    path = write_csv("parts.csv", [["P1", "", "", "", ""], ["", "", "", "", ""], ["P3", "", "", "", ""]])

    columns, rows = TabularFileReader(path).read_all()

    assert columns[0] == "part_number"
    assert [row[0] for row in rows] == ["P1", "P3"]


def test_xlsx_values_are_normalized(write_xlsx) -> None:
    path = write_xlsx(
        "parts.xlsx",
        [[80447527.0, "Valve", "Acme", None, datetime(2024, 3, 5)], ["B-2", "Filter", "Bolt", None, "green"]],
    )
    reader = TabularFileReader(path)

    assert reader.analyze().total_data_rows == 2
    rows = reader.read_range(2, 3)
    assert rows[0][0] == 80447527
    assert rows[0][4] == "2024-03-05"
    assert rows[1][:3] == ["B-2", "Filter", "Bolt"]


def test_unsupported_extension_is_rejected(input_dir) -> None:
    with pytest.raises(FileFormatError):
        TabularFileReader(input_dir / "notes.txt")


def test_missing_file_raises_read_error(input_dir) -> None:
    with pytest.raises(FileReadError):
        TabularFileReader(input_dir / "missing.csv").analyze()


def test_corrupt_workbook_raises_format_error(input_dir) -> None:
    path = input_dir / "broken.xlsx"
    path.write_bytes(b"not a workbook")

    with pytest.raises(FileFormatError):
        TabularFileReader(path).analyze()


def test_xlsx_range_read_starts_at_the_chunk(write_xlsx, monkeypatch: pytest.MonkeyPatch) -> None:
    rows = [[f"P{index}", f"Part {index}", "Acme", None, "red"] for index in range(1, 8)]
    path = write_xlsx("parts.xlsx", rows)
    requested = []

    def recording_iter_rows(sheet, *args, **kwargs):
        requested.append((kwargs.get("min_row"), kwargs.get("max_row")))
        return Worksheet.iter_rows(sheet, *args, **kwargs)

    monkeypatch.setattr(ReadOnlyWorksheet, "iter_rows", recording_iter_rows)

    chunk = TabularFileReader(path).read_range(5, 7)

    assert [row[0] for row in chunk] == ["P4", "P5", "P6"]
    assert requested == [(5, 7)]


def test_xlsx_with_stale_dimension_is_still_read(write_xlsx, input_dir) -> None:
    source = write_xlsx(
        "source.xlsx",
        [["P1", "One", "Acme", None, "red"], ["P2", "Two", "Acme", None, "blue"], ["P3", "Three", "Bolt", None, "green"]],
    )
    path = input_dir / "stale.xlsx"
    replaced = 0
    with zipfile.ZipFile(source) as original, zipfile.ZipFile(path, "w") as patched:
        for item in original.infolist():
            data = original.read(item.filename)
            if item.filename == "xl/worksheets/sheet1.xml":
                data, replaced = re.subn(rb'<dimension ref="[^"]*"\s*/>', b'<dimension ref="A1"/>', data)
            patched.writestr(item, data)
    assert replaced == 1
    reader = TabularFileReader(path)

    analysis = reader.analyze()

    assert analysis.columns == ["part_number", "description", "manufacturer", "img_page_path", "color"]
    assert analysis.total_data_rows == 3
    assert reader.read_range(3, 4) == [["P2", "Two", "Acme", None, "blue"], ["P3", "Three", "Bolt", None, "green"]]


def test_xls_analyze_reads_header_and_row_count(write_xls) -> None:
    path = write_xls(
        "parts.xls",
        [["A100", "Valve", "Acme", None, "red"], ["B200", "Filter", "Bolt", None, "green"]],
    )

    analysis = TabularFileReader(path).analyze()

    assert analysis.columns == ["part_number", "description", "manufacturer", "img_page_path", "color"]
    assert analysis.headers == analysis.columns
    assert analysis.total_data_rows == 2


def test_xls_values_are_normalized(write_xls) -> None:
    path = write_xls(
        "parts.xls",
        [
            [80447527, "Valve", "Acme", None, datetime(2024, 3, 15)],
            ["B-2", "Filter", "Bolt", None, "green"],
            ["C-3", "Clamp", "Bolt", None, 12.5],
        ],
    )
    reader = TabularFileReader(path)

    first, second = reader.read_range(2, 3)
    assert first == [80447527, "Valve", "Acme", None, "2024-03-15"]
    assert second == ["B-2", "Filter", "Bolt", None, "green"]
    assert reader.read_range(4, 4) == [["C-3", "Clamp", "Bolt", None, 12.5]]
    columns, rows = reader.read_all()
    assert columns[0] == "part_number"
    assert [row[0] for row in rows] == [80447527, "B-2", "C-3"]


def test_corrupt_xls_raises_format_error(input_dir) -> None:
    path = input_dir / "broken.xls"
    path.write_bytes(b"not a workbook")

    with pytest.raises(FileFormatError):
        TabularFileReader(path).analyze()
