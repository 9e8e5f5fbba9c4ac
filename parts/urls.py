from django.urls import path

from .views import PartImageView, PartsCatalogSyncView
from .views_upload import (
    CancelUploadView,
    RefreshUploadProgressView,
    StuckUploadsView,
    UploadCatalogSyncView,
    UploadChunksView,
    UploadPartsFileView,
    UploadProgressView,
    UploadsProgressSummaryView,
)

urlpatterns = [
    path("uploads/", UploadPartsFileView.as_view(), name="parts-upload"),
    path("uploads/stuck/", StuckUploadsView.as_view(), name="parts-upload-stuck"),
    path("uploads/progress/summary/", UploadsProgressSummaryView.as_view(), name="parts-upload-progress-summary"),
    path("uploads/<int:upload_id>/progress/", UploadProgressView.as_view(), name="parts-upload-progress"),
    path(
        "uploads/<int:upload_id>/progress/refresh/",
        RefreshUploadProgressView.as_view(),
        name="parts-upload-progress-refresh",
    ),
    path("uploads/<int:upload_id>/chunks/", UploadChunksView.as_view(), name="parts-upload-chunks"),
    path("uploads/<int:upload_id>/cancel/", CancelUploadView.as_view(), name="parts-upload-cancel"),
    path("uploads/<int:upload_id>/sync/", UploadCatalogSyncView.as_view(), name="parts-upload-sync"),
    path("parts/sync/", PartsCatalogSyncView.as_view(), name="parts-sync"),
    path("parts/<int:part_id>/image/", PartImageView.as_view(), name="parts-image"),
]
