HEADER_ROW = 1


class ChunkReadFilter:
    """Decide which worksheet rows are materialized while streaming a chunk.

    Rows are 1-based. The header row is always admitted so the column layout is
    known for every chunk; otherwise a row is read only when it falls inside the
    inclusive ``[start_row, end_row]`` range.
    """

    __slots__ = ("_start_row", "_end_row")

    def __init__(self, start_row: int, end_row: int) -> None:
        self._start_row = start_row
        self._end_row = end_row

    @property
    def start_row(self) -> int:
        return self._start_row

    @property
    def end_row(self) -> int:
        return self._end_row

    def should_read(self, row_number: int) -> bool:
        if row_number == HEADER_ROW:
            return True
        return self._start_row <= row_number <= self._end_row

    def __repr__(self) -> str:
        return f"ChunkReadFilter(start_row={self._start_row}, end_row={self._end_row})"
