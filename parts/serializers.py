from rest_framework import serializers

from .models import Part, Upload, UploadChunk


class UploadSerializer(serializers.ModelSerializer):
    class Meta:
        model = Upload
        fields = [
            "id",
            "original_filename",
            "upload_type",
            "batch_id",
            "status",
            "total_parts",
            "processed_parts",
            "parent_upload",
            "uploaded_at",
            "completed_at",
        ]
        read_only_fields = fields


class UploadChunkSerializer(serializers.ModelSerializer):
    progress_percentage = serializers.FloatField(read_only=True)

    class Meta:
        model = UploadChunk
        fields = [
            "id",
            "chunk_number",
            "start_row",
            "end_row",
            "total_rows",
            "status",
            "processed_rows",
            "created_parts",
            "updated_parts",
            "failed_rows",
            "progress_percentage",
            "processing_time_seconds",
            "started_at",
            "completed_at",
            "error_details",
        ]
        read_only_fields = fields


class PartImageSerializer(serializers.ModelSerializer):
    class Meta:
        model = Part
        fields = ["id", "part_number", "manufacturer", "image_url"]
        read_only_fields = fields


class UploadIdsSerializer(serializers.Serializer):
    upload_ids = serializers.ListField(child=serializers.IntegerField(min_value=1), allow_empty=False)


class PartIdsSerializer(serializers.Serializer):
    part_ids = serializers.ListField(child=serializers.IntegerField(min_value=1), allow_empty=False)

    def validate_part_ids(self, value):
        # Keep the caller's order but drop repeats.
        return list(dict.fromkeys(value))
