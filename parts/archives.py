import logging
import zipfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Iterator, List, Optional

from .exceptions import FileFormatError, FileReadError

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp"}
TABULAR_EXTENSIONS = {".csv", ".xlsx", ".xlsm", ".xls"}

SKIPPED_NAME_FRAGMENTS = ("__MACOSX", "Thumbs.db", "Desktop.ini", ".DS_Store")


def should_skip_file(path: Path) -> bool:
    """Operating system artifacts never carry catalog data."""
    name = path.name
    if name.startswith("._") or name.startswith("."):
        return True
    text = str(path)
    return any(fragment in text for fragment in SKIPPED_NAME_FRAGMENTS)


def is_image_file(path: Path) -> bool:
    return path.suffix.lower() in IMAGE_EXTENSIONS


def is_tabular_file(path: Path) -> bool:
    return path.suffix.lower() in TABULAR_EXTENSIONS


@dataclass
class ArchiveContents:
    root: Path
    tabular_files: List[Path] = field(default_factory=list)
    image_files: List[Path] = field(default_factory=list)
    skipped_files: List[Path] = field(default_factory=list)


@contextmanager
def extract_archive(archive_path: Path, temp_dir: Optional[Path] = None) -> Iterator[ArchiveContents]:
    """Extract ``archive_path`` into a private temporary directory.

    The directory and everything in it are removed when the block exits,
    whether or not processing succeeded.
    """
    archive_path = Path(archive_path)
    if not archive_path.is_file():
        raise FileReadError(f"Archive not found at {archive_path}")

    if temp_dir is not None:
        Path(temp_dir).mkdir(parents=True, exist_ok=True)

    with TemporaryDirectory(prefix="parts_zip_", dir=temp_dir) as extract_dir:
        root = Path(extract_dir)
        try:
            with zipfile.ZipFile(archive_path) as archive:
                archive.extractall(root)
        except zipfile.BadZipFile as exc:
            raise FileFormatError(f"Cannot open ZIP file {archive_path.name}: {exc}") from exc

        contents = ArchiveContents(root=root)
        for path in sorted(root.rglob("*")):
            if not path.is_file():
                continue
            if should_skip_file(path.relative_to(root)):
                contents.skipped_files.append(path)
            elif is_tabular_file(path):
                contents.tabular_files.append(path)
            elif is_image_file(path):
                contents.image_files.append(path)
            else:
                contents.skipped_files.append(path)

        logger.info(
            "Extracted %s: %s tabular files, %s images, %s skipped.",
            archive_path.name,
            len(contents.tabular_files),
            len(contents.image_files),
            len(contents.skipped_files),
        )
        yield contents
