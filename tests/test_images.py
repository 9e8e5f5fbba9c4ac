import pytest

from parts.images import PartImageService, build_object_key, extract_part_number_from_filename, inspect_image
from parts.models import Part, PartAdditionalField
from parts.normalization import RowNormalizer

COLUMNS = ["part_number", "description", "manufacturer", "img_page_path", "color"]


def _part(upload, part_number: str, description: str = "", context: str = "catalog") -> Part:
    part = Part.objects.create(
        upload=upload, batch_id=upload.batch_id, part_number=part_number, description=description or None
    )
    PartAdditionalField.objects.create(part=part, field_name=PartAdditionalField.CONTEXT_FIELD, field_value=context)
    return part


@pytest.mark.parametrize(
    "filename, expected",
    [
        ("ACME_80447527_front.jpg", "80447527"),
        ("valve-12345.png", "12345"),
        ("X9ABCDE.webp", "X9ABCDE"),
        ("a.jpg", None),
    ],
)
def test_extract_part_number_from_filename(filename: str, expected) -> None:
    assert extract_part_number_from_filename(filename) == expected


def test_build_object_key_slugifies_context_and_name() -> None:
    assert build_object_key("Spring Catalog", "Front View.JPG") == "parts/spring-catalog/front-view.jpg"
    assert build_object_key(None, "a100.png") == "parts/unknown/a100.png"


def test_inspect_image_rejects_non_images(make_image, input_dir) -> None:
    fake = input_dir / "fake.jpg"
    fake.write_bytes(b"not an image")

    assert inspect_image(make_image("real.png")) == "image/png"
    assert inspect_image(fake) is None


@pytest.mark.django_db
def test_match_prefers_extracted_token(make_upload, make_image, image_service, storage) -> None:
    upload = make_upload()
    target = _part(upload, "80447527")
    other = _part(upload, "ACME")

    results = image_service.match_and_upload_images([target, other], [make_image("ACME_80447527_front.jpg")])

    assert results == {"matched": 1, "uploaded": 1, "failed": 0}
    target.refresh_from_db()
    other.refresh_from_db()
    assert target.image_url == storage.url_for("parts/catalog/acme_80447527_front.jpg")
    assert other.image_url is None


@pytest.mark.django_db
def test_match_falls_back_to_substring(make_upload, make_image, image_service) -> None:
    upload = make_upload()
    part = _part(upload, "ab-1")

    results = image_service.match_and_upload_images([part], [make_image("photo_ab-1.png")])

    assert results["matched"] == 1
    part.refresh_from_db()
    assert part.image_url


@pytest.mark.django_db
def test_unmatched_images_are_ignored(make_upload, make_image, image_service, storage) -> None:
    upload = make_upload()
    part = _part(upload, "ZZZ999")

    results = image_service.match_and_upload_images([part], [make_image("unrelated.png")])

    assert results == {"matched": 0, "uploaded": 0, "failed": 0}
    assert storage.objects == {}


@pytest.mark.django_db
def test_process_images_for_context_fans_out_one_upload(make_upload, make_image, image_service, storage) -> None:
    upload = make_upload()
    rows = [
        ["A100", "Widget", "Acme", "A100.JPG", "red"],
        ["A200", "Widget XL", "Acme", "a100.jpg", "red"],
        ["B300", "Bolt", "Acme", "missing.jpg", "red"],
    ]
    RowNormalizer(upload, COLUMNS, "ctx1").process_rows(rows)

    results = image_service.process_images_for_context(upload, [make_image("a100.jpg")], "ctx1")

    assert results == {"matched": 2, "uploaded": 2, "replaced": 0, "skipped": 1}
    assert list(storage.objects) == ["parts/ctx1/a100.jpg"]
    urls = set(Part.objects.filter(part_number__in=["A100", "A200"]).values_list("image_url", flat=True))
    assert urls == {storage.url_for("parts/ctx1/a100.jpg")}
    assert Part.objects.get(part_number="B300").image_url is None
    upload.refresh_from_db()
    assert upload.processing_logs[-1] == "Images for 'ctx1': 2 matched, 2 updated, 0 replaced"


@pytest.mark.django_db
def test_process_images_for_context_replaces_previous_image(make_upload, make_image, image_service, storage) -> None:
    upload = make_upload()
    RowNormalizer(upload, COLUMNS, "ctx1").process_rows([["A100", "Widget", "Acme", "a100.jpg", ""]])
    storage.objects["parts/ctx1/old.jpg"] = "image/jpeg"
    Part.objects.update(image_url=storage.url_for("parts/ctx1/old.jpg"))

    results = image_service.process_images_for_context(upload, [make_image("a100.jpg")], "ctx1")

    assert results["replaced"] == 1
    assert "parts/ctx1/old.jpg" in storage.deleted


@pytest.mark.django_db
def test_upload_rejects_invalid_image(make_upload, input_dir, image_service, storage) -> None:
    upload = make_upload()
    part = _part(upload, "A100")
    broken = input_dir / "a100.jpg"
    broken.write_bytes(b"garbage")

    assert image_service.upload_image_for_parts([part.pk], broken, "a100.jpg") is None
    assert storage.objects == {}


@pytest.mark.django_db
def test_upload_without_bucket_is_skipped(make_upload, make_image, image_service, storage) -> None:
    storage.bucket = ""
    part = _part(make_upload(), "A100")

    assert image_service.upload_image_for_parts([part.pk], make_image("a100.jpg"), "a100.jpg") is None


@pytest.mark.django_db
def test_upload_image_for_part_uses_part_context(make_upload, make_image, image_service, storage) -> None:
    part = _part(make_upload(), "A100", context="Winter Sheet")

    url = image_service.upload_image_for_part(part, make_image("A100.png"), "A100.png")

    assert url == storage.url_for("parts/winter-sheet/a100.png")
    part.refresh_from_db()
    assert part.image_url == url


@pytest.mark.django_db
def test_remove_part_image(make_upload, image_service, storage) -> None:
    part = _part(make_upload(), "A100")
    storage.objects["parts/catalog/a100.png"] = "image/png"
    part.image_url = storage.url_for("parts/catalog/a100.png")
    part.save()

    assert image_service.remove_part_image(part) is True
    part.refresh_from_db()
    assert part.image_url is None
    assert storage.objects == {}


def test_delete_image_ignores_foreign_urls(image_service) -> None:
    assert image_service.delete_image("https://elsewhere.example.com/a.png") is False


@pytest.mark.django_db
def test_context_upload_failure_does_not_stop_remaining_images(
    make_upload, make_image, stubbed_storage, s3_stubber
) -> None:
    upload = make_upload()
    rows = [
        ["A100", "Widget", "Acme", "a100.jpg", ""],
        ["B200", "Bracket", "Acme", "b200.jpg", ""],
    ]
    RowNormalizer(upload, COLUMNS, "ctx1").process_rows(rows)
    s3_stubber.add_client_error("put_object", service_error_code="AccessDenied", http_status_code=403)
    s3_stubber.add_response("put_object", {})
    service = PartImageService(storage=stubbed_storage)

    results = service.process_images_for_context(upload, [make_image("a100.jpg"), make_image("b200.jpg")], "ctx1")

    assert results == {"matched": 2, "uploaded": 1, "replaced": 0, "skipped": 1}
    assert Part.objects.get(part_number="A100").image_url is None
    assert Part.objects.get(part_number="B200").image_url == stubbed_storage.url_for("parts/ctx1/b200.jpg")
    s3_stubber.assert_no_pending_responses()


@pytest.mark.django_db
def test_manual_upload_failure_is_counted(make_upload, make_image, stubbed_storage, s3_stubber) -> None:
    upload = make_upload()
    first = _part(upload, "80447527")
    second = _part(upload, "80447528")
    s3_stubber.add_client_error("put_object", service_error_code="AccessDenied", http_status_code=403)
    s3_stubber.add_response("put_object", {})
    service = PartImageService(storage=stubbed_storage)

    results = service.match_and_upload_images(
        [first, second], [make_image("ACME_80447527_front.jpg"), make_image("ACME_80447528_front.jpg")]
    )

    assert results == {"matched": 2, "uploaded": 1, "failed": 1}
    first.refresh_from_db()
    second.refresh_from_db()
    assert first.image_url is None
    assert second.image_url == stubbed_storage.url_for("parts/catalog/acme_80447528_front.jpg")
