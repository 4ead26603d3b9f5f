from django.contrib import admin

from .models import Connection, FileTransferLog, SyncJob, TransferJob
from .queue.models import LaneState, QueueEntry
from .sync.models import SyncRun


@admin.register(Connection)
class ConnectionAdmin(admin.ModelAdmin):
    list_display = [
        "alias",
        "provider_type",
        "owner_id",
        "status",
        "last_contact_at",
        "is_active",
        "created_at",
    ]
    list_filter = ["provider_type", "status", "is_active"]
    search_fields = ["alias", "owner_id"]
    readonly_fields = ["status", "error_message", "last_contact_at"]


@admin.register(TransferJob)
class TransferJobAdmin(admin.ModelAdmin):
    list_display = [
        "id",
        "owner_id",
        "source_path",
        "destination_path",
        "status",
        "progress_percentage",
        "files_completed",
        "files_failed",
        "files_total",
        "created_at",
    ]
    list_filter = ["status"]
    search_fields = ["owner_id", "source_path", "destination_path"]
    readonly_fields = [
        "files_total",
        "files_completed",
        "files_failed",
        "bytes_total",
        "bytes_transferred",
        "progress_percentage",
        "transfer_speed",
        "eta_seconds",
        "current_file",
        "queue_entry_id",
        "started_at",
        "completed_at",
    ]
    raw_id_fields = ["source_connection", "destination_connection"]


@admin.register(SyncJob)
class SyncJobAdmin(admin.ModelAdmin):
    list_display = [
        "__str__",
        "owner_id",
        "mode",
        "schedule",
        "is_enabled",
        "last_run_status",
        "last_run_at",
        "next_run_at",
    ]
    list_filter = ["mode", "is_enabled", "last_run_status", "conflict_policy"]
    list_editable = ["is_enabled"]
    search_fields = ["name", "owner_id"]
    readonly_fields = ["last_run_at", "next_run_at", "last_run_status", "last_run_message", "sync_state"]
    raw_id_fields = ["source_connection", "destination_connection"]


@admin.register(SyncRun)
class SyncRunAdmin(admin.ModelAdmin):
    list_display = [
        "id",
        "sync_job",
        "trigger",
        "status",
        "started_at",
        "completed_at",
        "uploads",
        "downloads",
        "deletes",
        "failures",
    ]
    list_filter = ["status", "trigger", "started_at"]
    search_fields = ["sync_job__name"]
    readonly_fields = ["started_at", "completed_at"]

    def get_queryset(self, request):
        return super().get_queryset(request).select_related("sync_job")


@admin.register(FileTransferLog)
class FileTransferLogAdmin(admin.ModelAdmin):
    list_display = ["id", "operation", "path", "size", "status", "created_at"]
    list_filter = ["status", "operation", "created_at"]
    search_fields = ["path", "error_message"]
    raw_id_fields = ["transfer_job", "sync_run"]


@admin.register(QueueEntry)
class QueueEntryAdmin(admin.ModelAdmin):
    list_display = [
        "id",
        "lane",
        "kind",
        "state",
        "priority",
        "attempts_made",
        "max_attempts",
        "available_at",
        "finished_at",
    ]
    list_filter = ["lane", "kind", "state"]
    search_fields = ["owner_id", "error_message"]
    readonly_fields = ["started_at", "heartbeat_at", "finished_at", "progress", "result"]


@admin.register(LaneState)
class LaneStateAdmin(admin.ModelAdmin):
    list_display = ["lane", "is_paused", "updated_at"]
    list_editable = ["is_paused"]
