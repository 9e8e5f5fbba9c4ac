import uuid
from pathlib import Path
from typing import Optional

from django.db import models, transaction
from django.utils import timezone


class UploadType(models.TextChoices):
    ZIP = "zip", "ZIP archive"
    EXCEL = "excel", "Excel workbook"
    CSV = "csv", "CSV file"
    UNKNOWN = "unknown", "Unknown"

    @classmethod
    def from_filename(cls, filename: str) -> "UploadType":
        extension = Path(filename).suffix.lower().lstrip(".")
        if extension == "zip":
            return cls.ZIP
        if extension in {"xlsx", "xlsm", "xls"}:
            return cls.EXCEL
        if extension == "csv":
            return cls.CSV
        return cls.UNKNOWN


class Upload(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        ANALYZING = "analyzing", "Analyzing"
        PROCESSING = "processing", "Processing"
        COMPLETED = "completed", "Completed"
        COMPLETED_WITH_ERRORS = "completed_with_errors", "Completed with errors"
        FAILED = "failed", "Failed"
        CANCELLED = "cancelled", "Cancelled"

    TERMINAL_STATUSES = (
        Status.COMPLETED,
        Status.COMPLETED_WITH_ERRORS,
        Status.FAILED,
        Status.CANCELLED,
    )

    filename = models.CharField(max_length=255)
    original_filename = models.CharField(max_length=255)
    upload_type = models.CharField(
        max_length=16, choices=UploadType.choices, default=UploadType.UNKNOWN
    )
    batch_id = models.CharField(max_length=64, unique=True)
    status = models.CharField(
        max_length=32, choices=Status.choices, default=Status.PENDING
    )
    total_parts = models.IntegerField(null=True, blank=True)
    processed_parts = models.IntegerField(default=0)
    direct_parts = models.IntegerField(default=0)
    processing_logs = models.JSONField(blank=True, default=list)
    parent_upload = models.ForeignKey(
        "self",
        null=True,
        blank=True,
        on_delete=models.CASCADE,
        related_name="child_uploads",
    )
    stored_path = models.CharField(max_length=1024, blank=True, default="")
    uploaded_at = models.DateTimeField(default=timezone.now)
    completed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "updated_at"], name="parts_upload_status_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.original_filename} ({self.batch_id})"

    @staticmethod
    def generate_batch_id() -> str:
        return uuid.uuid4().hex

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    def _fresh_logs(self) -> list:
        logs = (
            Upload.objects.select_for_update()
            .filter(pk=self.pk)
            .values_list("processing_logs", flat=True)
            .first()
        )
        return list(logs or [])

    def append_log(self, message: str) -> None:
        """Append to the processing log without clobbering entries from other workers."""
        with transaction.atomic():
            self.processing_logs = self._fresh_logs() + [message]
            self.updated_at = timezone.now()
            Upload.objects.filter(pk=self.pk).update(
                processing_logs=self.processing_logs, updated_at=self.updated_at
            )

    def mark_failed(self, message: str) -> None:
        with transaction.atomic():
            self.status = self.Status.FAILED
            self.processing_logs = self._fresh_logs() + [message]
            self.completed_at = timezone.now()
            self.save(update_fields=["status", "processing_logs", "completed_at", "updated_at"])


class UploadChunk(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        PROCESSING = "processing", "Processing"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"

    upload = models.ForeignKey(Upload, on_delete=models.CASCADE, related_name="chunks")
    chunk_number = models.PositiveIntegerField()
    start_row = models.PositiveIntegerField()
    end_row = models.PositiveIntegerField()
    total_rows = models.PositiveIntegerField()
    status = models.CharField(
        max_length=32, choices=Status.choices, default=Status.PENDING
    )
    processed_rows = models.PositiveIntegerField(default=0)
    created_parts = models.PositiveIntegerField(default=0)
    updated_parts = models.PositiveIntegerField(default=0)
    failed_rows = models.PositiveIntegerField(default=0)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    processing_time_seconds = models.FloatField(null=True, blank=True)
    error_details = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["chunk_number"]
        constraints = [
            models.UniqueConstraint(
                fields=["upload", "chunk_number"], name="unique_chunk_number_per_upload"
            ),
        ]
        indexes = [
            models.Index(fields=["upload", "status"], name="parts_chunk_status_idx"),
        ]

    def __str__(self) -> str:
        return f"Chunk {self.chunk_number} of upload #{self.upload_id} ({self.status})"

    @property
    def progress_percentage(self) -> float:
        if self.total_rows <= 0:
            return 0.0
        return round(self.processed_rows / self.total_rows * 100, 2)

    def mark_as_processing(self) -> None:
        self.status = self.Status.PROCESSING
        self.started_at = timezone.now()
        self.save(update_fields=["status", "started_at", "updated_at"])

    def mark_as_completed(
        self,
        created_parts: int,
        updated_parts: int,
        failed_rows: int,
        processing_time: float,
    ) -> None:
        self.status = self.Status.COMPLETED
        self.processed_rows = self.total_rows
        self.created_parts = created_parts
        self.updated_parts = updated_parts
        self.failed_rows = failed_rows
        self.processing_time_seconds = processing_time
        self.completed_at = timezone.now()
        self.save(
            update_fields=[
                "status",
                "processed_rows",
                "created_parts",
                "updated_parts",
                "failed_rows",
                "processing_time_seconds",
                "completed_at",
                "updated_at",
            ]
        )

    def mark_as_failed(self, error: str, processing_time: Optional[float] = None) -> None:
        self.status = self.Status.FAILED
        self.error_details = error
        self.failed_rows = self.total_rows
        self.processing_time_seconds = processing_time
        self.completed_at = timezone.now()
        self.save(
            update_fields=[
                "status",
                "error_details",
                "failed_rows",
                "processing_time_seconds",
                "completed_at",
                "updated_at",
            ]
        )


class Part(models.Model):
    upload = models.ForeignKey(Upload, on_delete=models.CASCADE, related_name="parts")
    batch_id = models.CharField(max_length=64)
    part_number = models.CharField(max_length=255)
    description = models.TextField(blank=True, null=True)
    manufacturer = models.CharField(max_length=255, blank=True, null=True)
    is_active = models.BooleanField(default=True)
    image_url = models.URLField(max_length=1024, blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["part_number", "manufacturer"], name="parts_part_number_mfr_idx"),
            models.Index(fields=["batch_id"], name="parts_part_batch_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.part_number} ({self.manufacturer or 'no manufacturer'})"

    def get_field(self, field_name: str) -> Optional[str]:
        return (
            self.additional_fields.filter(field_name=field_name)
            .values_list("field_value", flat=True)
            .first()
        )

    @property
    def context_label(self) -> Optional[str]:
        return self.get_field(PartAdditionalField.CONTEXT_FIELD)


class PartAdditionalField(models.Model):
    CONTEXT_FIELD = "_excel_context"
    IMAGE_FILENAME_FIELD = "_image_filename_from_csv"
    NETSUITE_ITEM_ID_FIELD = "_netsuite_item_id"

    part = models.ForeignKey(Part, on_delete=models.CASCADE, related_name="additional_fields")
    field_name = models.CharField(max_length=255)
    field_value = models.TextField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["field_name"], name="parts_field_name_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.field_name}={self.field_value}"


class PartShopifyData(models.Model):
    class ProductStatus(models.TextChoices):
        ACTIVE = "active", "Active"
        ARCHIVED = "archived", "Archived"
        DRAFT = "draft", "Draft"

    part = models.OneToOneField(Part, on_delete=models.CASCADE, related_name="shopify_data")
    shopify_id = models.CharField(max_length=64, blank=True, null=True)
    handle = models.CharField(max_length=255, blank=True, null=True)
    title = models.CharField(max_length=512, blank=True, null=True)
    vendor = models.CharField(max_length=255, blank=True, null=True)
    product_type = models.CharField(max_length=255, blank=True, null=True)
    status = models.CharField(
        max_length=16, choices=ProductStatus.choices, blank=True, null=True
    )
    featured_image_url = models.URLField(max_length=1024, blank=True, null=True)
    storefront_url = models.URLField(max_length=1024, blank=True, null=True)
    admin_url = models.URLField(max_length=1024, blank=True, null=True)
    all_images = models.JSONField(blank=True, default=list)
    variant_data = models.JSONField(blank=True, default=list)
    last_synced_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self) -> str:
        return f"Shopify data for part #{self.part_id}"
