from pathlib import Path

import pytest

from parts.archives import extract_archive, should_skip_file
from parts.exceptions import FileFormatError, FileReadError


@pytest.mark.parametrize(
    "name, skipped",
    [
        ("parts.csv", False),
        ("catalog/images/a100.jpg", False),
        (".hidden.csv", True),
        ("._parts.csv", True),
        ("__MACOSX/parts.csv", True),
        ("images/Thumbs.db", True),
        ("Desktop.ini", True),
        (".DS_Store", True),
    ],
)
def test_should_skip_file(name: str, skipped: bool) -> None:
    assert should_skip_file(Path(name)) is skipped


def test_extract_archive_classifies_members(make_zip, make_image, write_csv) -> None:
    image = make_image("a100.jpg")
    data = write_csv("ctx1.csv", [["A100", "Widget", "Acme", "a100.jpg", "red"]])
    archive = make_zip(
        "bundle.zip",
        {
            "nested/ctx1.csv": data,
            "a100.jpg": image,
            "__MACOSX/._ctx1.csv": b"junk",
            ".DS_Store": b"junk",
            "readme.txt": b"hello",
        },
    )

    with extract_archive(archive) as contents:
        root = contents.root
        assert [path.name for path in contents.tabular_files] == ["ctx1.csv"]
        assert [path.name for path in contents.image_files] == ["a100.jpg"]
        assert len(contents.skipped_files) == 3
        assert root.is_dir()

    assert not root.exists()


def test_extract_directory_is_removed_on_error(make_zip, write_csv) -> None:
    archive = make_zip("bundle.zip", {"ctx1.csv": write_csv("ctx1.csv", [])})
    roots = []

    with pytest.raises(RuntimeError):
        with extract_archive(archive) as contents:
            roots.append(contents.root)
            raise RuntimeError("boom")

    assert roots and not roots[0].exists()


def test_corrupt_archive_raises_format_error(input_dir) -> None:
    archive = input_dir / "broken.zip"
    archive.write_bytes(b"definitely not a zip")

    with pytest.raises(FileFormatError):
        with extract_archive(archive):
            pass


def test_missing_archive_raises_read_error(input_dir) -> None:
    with pytest.raises(FileReadError):
        with extract_archive(input_dir / "missing.zip"):
            pass
