from django.contrib import admin, messages
from django.utils import timezone

from .models import Order, ReconciliationIssue
from .provisioning import requeue


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("tran_id", "session_id", "status", "amount", "currency", "sync_attempts", "sync_escalated", "created_at", "updated_at")
    search_fields = ("tran_id", "session_id", "val_id")
    list_filter = ("status", "sync_escalated", "currency", "created_at")
    ordering = ("-created_at",)
    actions = ["requeue_provisioning"]

    # State changes go through the reconciliation engine only.
    def get_readonly_fields(self, request, obj=None):
        return [f.name for f in self.model._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    @admin.action(description="Retry provisioning now (resets attempt budget)")
    def requeue_provisioning(self, request, queryset):
        done = sum(1 for order in queryset if requeue(order))
        self.message_user(request, f"Requeued {done} of {queryset.count()} orders.", messages.SUCCESS if done else messages.WARNING)


@admin.register(ReconciliationIssue)
class ReconciliationIssueAdmin(admin.ModelAdmin):
    list_display = ("kind", "order", "resolved", "created_at", "resolved_at")
    list_filter = ("kind", "resolved", "created_at")
    search_fields = ("order__tran_id", "order__session_id", "detail")
    readonly_fields = ("order", "kind", "detail", "payload", "created_at", "resolved_at")
    actions = ["mark_resolved"]

    def has_delete_permission(self, request, obj=None):
        return False

    @admin.action(description="Mark as resolved")
    def mark_resolved(self, request, queryset):
        updated = queryset.filter(resolved=False).update(resolved=True, resolved_at=timezone.now())
        self.message_user(request, f"Resolved {updated} issues.")
