import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Upload",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("filename", models.CharField(max_length=255)),
                ("original_filename", models.CharField(max_length=255)),
                (
                    "upload_type",
                    models.CharField(
                        choices=[
                            ("zip", "ZIP archive"),
                            ("excel", "Excel workbook"),
                            ("csv", "CSV file"),
                            ("unknown", "Unknown"),
                        ],
                        default="unknown",
                        max_length=16,
                    ),
                ),
                ("batch_id", models.CharField(max_length=64, unique=True)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("analyzing", "Analyzing"),
                            ("processing", "Processing"),
                            ("completed", "Completed"),
                            ("completed_with_errors", "Completed with errors"),
                            ("failed", "Failed"),
                            ("cancelled", "Cancelled"),
                        ],
                        default="pending",
                        max_length=32,
                    ),
                ),
                ("total_parts", models.IntegerField(blank=True, null=True)),
                ("processed_parts", models.IntegerField(default=0)),
                ("direct_parts", models.IntegerField(default=0)),
                ("processing_logs", models.JSONField(blank=True, default=list)),
                ("stored_path", models.CharField(blank=True, default="", max_length=1024)),
                ("uploaded_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "parent_upload",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="child_uploads",
                        to="parts.upload",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="UploadChunk",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("chunk_number", models.PositiveIntegerField()),
                ("start_row", models.PositiveIntegerField()),
                ("end_row", models.PositiveIntegerField()),
                ("total_rows", models.PositiveIntegerField()),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                        ],
                        default="pending",
                        max_length=32,
                    ),
                ),
                ("processed_rows", models.PositiveIntegerField(default=0)),
                ("created_parts", models.PositiveIntegerField(default=0)),
                ("updated_parts", models.PositiveIntegerField(default=0)),
                ("failed_rows", models.PositiveIntegerField(default=0)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("processing_time_seconds", models.FloatField(blank=True, null=True)),
                ("error_details", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "upload",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="chunks",
                        to="parts.upload",
                    ),
                ),
            ],
            options={
                "ordering": ["chunk_number"],
            },
        ),
        migrations.CreateModel(
            name="Part",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("batch_id", models.CharField(max_length=64)),
                ("part_number", models.CharField(max_length=255)),
                ("description", models.TextField(blank=True, null=True)),
                ("manufacturer", models.CharField(blank=True, max_length=255, null=True)),
                ("is_active", models.BooleanField(default=True)),
                ("image_url", models.URLField(blank=True, max_length=1024, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "upload",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="parts",
                        to="parts.upload",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="PartAdditionalField",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("field_name", models.CharField(max_length=255)),
                ("field_value", models.TextField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "part",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="additional_fields",
                        to="parts.part",
                    ),
                ),
            ],
        ),
        migrations.CreateModel(
            name="PartShopifyData",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("shopify_id", models.CharField(blank=True, max_length=64, null=True)),
                ("handle", models.CharField(blank=True, max_length=255, null=True)),
                ("title", models.CharField(blank=True, max_length=512, null=True)),
                ("vendor", models.CharField(blank=True, max_length=255, null=True)),
                ("product_type", models.CharField(blank=True, max_length=255, null=True)),
                (
                    "status",
                    models.CharField(
                        blank=True,
                        choices=[("active", "Active"), ("archived", "Archived"), ("draft", "Draft")],
                        max_length=16,
                        null=True,
                    ),
                ),
                ("featured_image_url", models.URLField(blank=True, max_length=1024, null=True)),
                ("storefront_url", models.URLField(blank=True, max_length=1024, null=True)),
                ("admin_url", models.URLField(blank=True, max_length=1024, null=True)),
                ("all_images", models.JSONField(blank=True, default=list)),
                ("variant_data", models.JSONField(blank=True, default=list)),
                ("last_synced_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "part",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="shopify_data",
                        to="parts.part",
                    ),
                ),
            ],
        ),
        migrations.AddIndex(
            model_name="upload",
            index=models.Index(fields=["status", "updated_at"], name="parts_upload_status_idx"),
        ),
        migrations.AddIndex(
            model_name="uploadchunk",
            index=models.Index(fields=["upload", "status"], name="parts_chunk_status_idx"),
        ),
        migrations.AddConstraint(
            model_name="uploadchunk",
            constraint=models.UniqueConstraint(
                fields=("upload", "chunk_number"), name="unique_chunk_number_per_upload"
            ),
        ),
        migrations.AddIndex(
            model_name="part",
            index=models.Index(fields=["part_number", "manufacturer"], name="parts_part_number_mfr_idx"),
        ),
        migrations.AddIndex(
            model_name="part",
            index=models.Index(fields=["batch_id"], name="parts_part_batch_idx"),
        ),
        migrations.AddIndex(
            model_name="partadditionalfield",
            index=models.Index(fields=["field_name"], name="parts_field_name_idx"),
        ),
    ]
