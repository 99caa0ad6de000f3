from django.contrib import admin

from .models import ConflictRecord, StoredEntry, SyncPass, SyncPassEvent


@admin.register(StoredEntry)
class StoredEntryAdmin(admin.ModelAdmin):
    list_display = ["key", "updated_at"]
    search_fields = ["key"]
    readonly_fields = ["updated_at"]


@admin.register(SyncPass)
class SyncPassAdmin(admin.ModelAdmin):
    list_display = [
        "id",
        "status",
        "forced",
        "started_at",
        "completed_at",
        "synced",
        "retried",
        "failed",
        "conflicts",
        "held",
    ]
    list_filter = ["status", "forced", "started_at"]
    readonly_fields = ["started_at", "completed_at", "duration_seconds"]


@admin.register(SyncPassEvent)
class SyncPassEventAdmin(admin.ModelAdmin):
    list_display = ["id", "sync_pass", "event_type", "timestamp", "table", "operation_id"]
    list_filter = ["event_type", "timestamp"]
    search_fields = ["operation_id", "table", "message"]
    readonly_fields = ["timestamp"]
    raw_id_fields = ["sync_pass"]


@admin.register(ConflictRecord)
class ConflictRecordAdmin(admin.ModelAdmin):
    list_display = ["operation_id", "created_at", "resolved_at"]
    list_filter = ["resolved_at"]
    search_fields = ["operation_id"]
    readonly_fields = ["created_at"]
