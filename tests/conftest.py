import csv
import struct
import zipfile
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import boto3
import pytest
from botocore.stub import Stubber
from django.core.cache import cache
from openpyxl import Workbook
from PIL import Image

from parts.chunking import ChunkPlanner
from parts.images import PartImageService
from parts.ingestion import UploadProcessor
from parts.models import Upload, UploadType
from parts.storage import S3ObjectStorage

PARTS_HEADER = ["part_number", "description", "manufacturer", "img_page_path", "color"]

# Excel serial day 0 for the 1900 date system.
EXCEL_EPOCH = datetime(1899, 12, 30)


def _biff_record(code: int, data: bytes = b"") -> bytes:
    return struct.pack("<HH", code, len(data)) + data


def _biff_bof(stream_type: int) -> bytes:
    return _biff_record(0x0809, struct.pack("<HHHHII", 0x0600, stream_type, 0, 0, 0, 0))


def _biff_cell(row: int, col: int, value: object) -> bytes:
    if isinstance(value, datetime):
        serial = float((value - EXCEL_EPOCH).days)
        return _biff_record(0x0203, struct.pack("<HHHd", row, col, 1, serial))
    if isinstance(value, (int, float)):
        return _biff_record(0x0203, struct.pack("<HHHd", row, col, 0, float(value)))
    text = str(value).encode("latin-1")
    return _biff_record(0x0204, struct.pack("<HHHHB", row, col, 0, len(text), 0) + text)


def build_biff8_workbook(rows: Sequence[Sequence[object]], sheet_name: str = "Sheet1") -> bytes:
    """Serialize ``rows`` as a bare BIFF8 workbook stream, which xlrd reads as an .xls file.

    XF 0 is the general number format and XF 1 is the built-in date format 14.
    """
    eof = _biff_record(0x000A)
    xfs = b"".join(
        _biff_record(0x00E0, struct.pack("<HHHBBBBIiH", 0, format_key, 0, 0, 0, 0, 0, 0, 0, 0))
        for format_key in (0, 14)
    )
    name = sheet_name.encode("latin-1")
    globals_head = _biff_bof(0x0005) + xfs
    sheet_offset = len(globals_head) + 4 + 8 + len(name) + len(eof)
    boundsheet = _biff_record(0x0085, struct.pack("<iBBBB", sheet_offset, 0, 0, len(name), 0) + name)
    cells = b"".join(
        _biff_cell(row_index, col_index, value)
        for row_index, row in enumerate(rows)
        for col_index, value in enumerate(row)
        if value is not None
    )
    return globals_head + boundsheet + eof + _biff_bof(0x0010) + cells + eof


class FakeStorage:
    """In-memory stand-in for S3ObjectStorage."""

    def __init__(self, bucket: str = "test-bucket") -> None:
        self.bucket = bucket
        self.objects: Dict[str, str] = {}
        self.deleted: List[str] = []

    def put_file(self, key, file_path, content_type, cache_control="max-age=31536000"):
        self.objects[key] = content_type
        return self.url_for(key)

    def exists(self, key):
        return key in self.objects

    def delete(self, key):
        self.objects.pop(key, None)
        self.deleted.append(key)

    def url_for(self, key):
        return f"https://{self.bucket}.s3.us-east-1.amazonaws.com/{key}"

    def key_from_url(self, url):
        prefix = self.url_for("")
        if not url or not url.startswith(prefix):
            return None
        return url[len(prefix):] or None


class RecordingTaskQueue:
    """Task queue that records dispatches instead of sending them to a broker."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []

    def process_file(self, upload_id):
        self.calls.append(("process_file", upload_id))

    def process_chunk(self, chunk_id, file_path, columns, context_label=None, countdown=0):
        self.calls.append(("process_chunk", chunk_id, file_path, list(columns), context_label, countdown))

    def aggregate_upload(self, upload_id, countdown=0):
        self.calls.append(("aggregate_upload", upload_id, countdown))

    def aggregate_archive(self, upload_id, archive_path, countdown=0):
        self.calls.append(("aggregate_archive", upload_id, archive_path, countdown))

    def sync_catalog(self, part_ids, upload_id=None):
        self.calls.append(("sync_catalog", list(part_ids), upload_id))

    def named(self, name: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == name]


@pytest.fixture(autouse=True)
def parts_settings(settings, tmp_path):
    settings.CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
            "LOCATION": "parts-tests",
        }
    }
    settings.MEDIA_ROOT = tmp_path / "media"
    settings.PARTS_UPLOAD_DIR = ""
    settings.PARTS_TEMP_DIR = ""
    settings.PARTS_AUTO_CATALOG_SYNC = True
    settings.AWS_STORAGE_BUCKET_NAME = "test-bucket"
    settings.SHOPIFY_SHOP_DOMAIN = ""
    settings.SHOPIFY_ACCESS_TOKEN = ""
    yield settings
    cache.clear()


@pytest.fixture
def input_dir(tmp_path) -> Path:
    path = tmp_path / "input"
    path.mkdir(exist_ok=True)
    return path


@pytest.fixture
def write_csv(input_dir):
    def _write(name: str, rows: Sequence[Sequence[object]], header: Optional[Sequence[str]] = None) -> Path:
        path = input_dir / name
        with path.open("w", newline="", encoding="utf-8") as handle:
            writer = csv.writer(handle)
            writer.writerow(header if header is not None else PARTS_HEADER)
            writer.writerows(rows)
        return path

    return _write


@pytest.fixture
def write_xlsx(input_dir):
    def _write(name: str, rows: Sequence[Sequence[object]], header: Optional[Sequence[str]] = None) -> Path:
        workbook = Workbook()
        sheet = workbook.active
        sheet.append(list(header if header is not None else PARTS_HEADER))
        for row in rows:
            sheet.append(list(row))
        path = input_dir / name
        workbook.save(path)
        return path

    return _write


@pytest.fixture
def write_xls(input_dir):
    def _write(name: str, rows: Sequence[Sequence[object]], header: Optional[Sequence[str]] = None) -> Path:
        path = input_dir / name
        path.write_bytes(build_biff8_workbook([list(header if header is not None else PARTS_HEADER), *rows]))
        return path

    return _write


@pytest.fixture
def make_image(input_dir):
    def _make(name: str, color: str = "red") -> Path:
        path = input_dir / name
        Image.new("RGB", (8, 8), color).save(path)
        return path

    return _make


@pytest.fixture
def make_zip(input_dir):
    def _make(name: str, members: Dict[str, object]) -> Path:
        """``members`` maps archive names to a source Path or raw bytes."""
        path = input_dir / name
        with zipfile.ZipFile(path, "w") as archive:
            for member_name, source in members.items():
                if isinstance(source, Path):
                    archive.write(source, member_name)
                else:
                    archive.writestr(member_name, source)
        return path

    return _make


@pytest.fixture
def make_upload():
    def _make(**overrides) -> Upload:
        values = {
            "filename": "parts.csv",
            "original_filename": "parts.csv",
            "upload_type": UploadType.CSV,
            "batch_id": Upload.generate_batch_id(),
            "status": Upload.Status.PENDING,
        }
        values.update(overrides)
        return Upload.objects.create(**values)

    return _make


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def image_service(storage) -> PartImageService:
    return PartImageService(storage=storage)


@pytest.fixture
def task_queue() -> RecordingTaskQueue:
    return RecordingTaskQueue()


@pytest.fixture
def processor(task_queue, image_service) -> UploadProcessor:
    return UploadProcessor(
        task_queue=task_queue,
        image_service=image_service,
        planner=ChunkPlanner(chunk_size=2),
    )


@pytest.fixture
def s3_stubber():
    """A real boto3 S3 client with its responses queued through botocore's Stubber."""
    client = boto3.client(
        "s3",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )
    with Stubber(client) as stubber:
        yield stubber


@pytest.fixture
def stubbed_storage(s3_stubber) -> S3ObjectStorage:
    return S3ObjectStorage(
        bucket="test-bucket", region="us-east-1", public_base_url="", client=s3_stubber.client
    )
