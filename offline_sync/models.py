from django.core.serializers.json import DjangoJSONEncoder
from django.db import models


class PassStatus(models.TextChoices):
    RUNNING = "running", "Running"
    COMPLETED = "completed", "Completed"
    PARTIAL = "partial", "Partial Success"
    FAILED = "failed", "Failed"


class PassEventType(models.TextChoices):
    SYNCED = "synced", "Synced"
    CONFLICT = "conflict", "Synced After Conflict"
    HELD = "held", "Held For Manual Resolution"
    RETRY = "retry", "Retry Scheduled"
    FAILED = "failed", "Failed"
    CANCELLED = "cancelled", "Cancelled In Flight"


class StoredEntry(models.Model):
    """
    Durable key/value row backing the operation queue.

    Values are opaque JSON text written by the queue.
    """

    key = models.CharField(max_length=255, primary_key=True)
    value = models.TextField()
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.key


class SyncPass(models.Model):
    """
    Records each sync pass for audit and debugging.

    Tracks how many operations a pass synced, retried, dropped or held.
    """

    started_at = models.DateTimeField(auto_now_add=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    forced = models.BooleanField(default=False)

    status = models.CharField(
        max_length=20, choices=PassStatus.choices, default=PassStatus.RUNNING
    )

    # Statistics
    synced = models.PositiveIntegerField(default=0)
    retried = models.PositiveIntegerField(default=0)
    failed = models.PositiveIntegerField(default=0)
    conflicts = models.PositiveIntegerField(default=0)
    held = models.PositiveIntegerField(default=0)
    duration_seconds = models.FloatField(default=0.0)

    error_message = models.TextField(blank=True)

    class Meta:
        indexes = [
            models.Index(fields=["-started_at"]),
            models.Index(fields=["status"]),
        ]
        ordering = ["-started_at"]

    def __str__(self):
        kind = "Forced" if self.forced else "Scheduled"
        return f"{kind} sync pass {self.pk} - {self.get_status_display()}"


class SyncPassEvent(models.Model):
    """Outcome of one operation within a pass."""

    sync_pass = models.ForeignKey(
        SyncPass, on_delete=models.CASCADE, related_name="events"
    )
    timestamp = models.DateTimeField(auto_now_add=True)
    event_type = models.CharField(max_length=20, choices=PassEventType.choices)

    operation_id = models.CharField(max_length=64)
    table = models.CharField(max_length=255, blank=True)
    action = models.CharField(max_length=10, blank=True)
    attempt = models.PositiveIntegerField(default=0)
    message = models.TextField(blank=True)

    class Meta:
        indexes = [
            models.Index(fields=["sync_pass", "timestamp"]),
            models.Index(fields=["operation_id"]),
        ]
        ordering = ["timestamp"]

    def __str__(self):
        return f"{self.get_event_type_display()}: {self.table} {self.operation_id}"


class ConflictRecord(models.Model):
    """A conflict held for a human or application-level decision."""

    operation_id = models.CharField(max_length=64, unique=True)
    conflicting_fields = models.JSONField(default=list)
    local_payload = models.JSONField(default=dict, encoder=DjangoJSONEncoder)
    remote_snapshot = models.JSONField(default=dict, encoder=DjangoJSONEncoder)
    created_at = models.DateTimeField(auto_now_add=True)
    resolved_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        indexes = [
            models.Index(fields=["resolved_at"]),
        ]
        ordering = ["-created_at"]

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def __str__(self):
        state = "resolved" if self.is_resolved else "open"
        return f"Conflict on {self.operation_id} ({state})"
