from django.conf import settings
from django.db import models
from django.db.models import F
from django.utils import timezone

PENDING = "PENDING"
VALIDATED = "VALIDATED"
SUCCESS = "SUCCESS"
SYNC_PENDING = "SYNC_PENDING"
FAILED = "FAILED"
CANCELLED = "CANCELLED"

TERMINAL_STATUSES = {SUCCESS, FAILED, CANCELLED}

# Allowed next states per status. Terminal states have none.
TRANSITIONS = {
    PENDING: {VALIDATED, FAILED, CANCELLED},
    VALIDATED: {SUCCESS, SYNC_PENDING},
    SYNC_PENDING: {SUCCESS},
    SUCCESS: set(),
    FAILED: set(),
    CANCELLED: set(),
}


class OrderQuerySet(models.QuerySet):
    def compare_and_set(self, order, expected_status: str, **changes) -> bool:
        """Conditionally write ``changes`` to ``order``.

        The UPDATE only matches while the row still has the version and status
        the caller read, and bumps ``version`` on success. Returns False when a
        concurrent writer got there first; the caller re-reads and decides again.
        """
        new_status = changes.get("status")
        if new_status and new_status != expected_status and not Order.transition_allowed(expected_status, new_status):
            raise ValueError(f"Illegal transition {expected_status} -> {new_status}")
        changes["version"] = F("version") + 1
        changes["updated_at"] = timezone.now()
        updated = self.filter(pk=order.pk, version=order.version, status=expected_status).update(**changes)
        return updated == 1

    def due_for_sync(self, now):
        return self.filter(status=SYNC_PENDING, sync_escalated=False, next_sync_at__lte=now).order_by("next_sync_at")


class Order(models.Model):
    STATUS_CHOICES = [
        (PENDING, "PENDING"),
        (VALIDATED, "VALIDATED"),
        (SUCCESS, "SUCCESS"),
        (SYNC_PENDING, "SYNC_PENDING"),
        (FAILED, "FAILED"),
        (CANCELLED, "CANCELLED"),
    ]

    session_id = models.CharField(max_length=64, unique=True)
    tran_id = models.CharField(max_length=64, unique=True)
    val_id = models.CharField(max_length=64, blank=True, default="", db_index=True)

    user = models.ForeignKey(settings.AUTH_USER_MODEL, null=True, blank=True, on_delete=models.PROTECT, related_name="payment_orders")
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=8, default="BDT")
    customer = models.JSONField(default=dict, blank=True)
    items = models.JSONField(default=list, blank=True)
    product = models.JSONField(default=dict, blank=True)

    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=PENDING, db_index=True)
    version = models.PositiveIntegerField(default=0)

    gateway_session = models.JSONField(blank=True, null=True)
    payment_info = models.JSONField(blank=True, null=True)
    external_api_response = models.JSONField(blank=True, null=True)

    sync_attempts = models.PositiveIntegerField(default=0)
    next_sync_at = models.DateTimeField(blank=True, null=True, db_index=True)
    last_sync_error = models.TextField(blank=True, default="")
    sync_escalated = models.BooleanField(default=False)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = OrderQuerySet.as_manager()

    class Meta:
        ordering = ("-created_at",)

    def __str__(self):
        return f"{self.tran_id} ({self.status})"

    @classmethod
    def from_db(cls, db, field_names, values):
        instance = super().from_db(db, field_names, values)
        instance._loaded_tran_id = instance.__dict__.get("tran_id")
        return instance

    def save(self, *args, **kwargs):
        loaded = getattr(self, "_loaded_tran_id", None)
        if loaded and self.tran_id != loaded:
            raise ValueError(f"tran_id is immutable (was {loaded}, got {self.tran_id})")
        super().save(*args, **kwargs)
        self._loaded_tran_id = self.tran_id

    @staticmethod
    def transition_allowed(current: str, target: str) -> bool:
        return target in TRANSITIONS.get(current, set())

    def can_transition(self, target: str) -> bool:
        return self.transition_allowed(self.status, target)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def recorded_outcome(self) -> str:
        """Payment outcome this Order already reflects, or "" while still PENDING."""
        if self.status in (VALIDATED, SYNC_PENDING, SUCCESS):
            return "SUCCESSFUL"
        if self.status in (FAILED, CANCELLED):
            return self.status
        return ""


class ReconciliationIssue(models.Model):
    CONFLICTING_FINALIZATION = "CONFLICTING_FINALIZATION"
    PROVISIONING_ESCALATED = "PROVISIONING_ESCALATED"
    KIND_CHOICES = [
        (CONFLICTING_FINALIZATION, "Conflicting finalization"),
        (PROVISIONING_ESCALATED, "Provisioning escalated"),
    ]

    order = models.ForeignKey(Order, on_delete=models.PROTECT, related_name="issues")
    kind = models.CharField(max_length=32, choices=KIND_CHOICES, db_index=True)
    detail = models.TextField(blank=True, default="")
    payload = models.JSONField(blank=True, null=True)
    resolved = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    resolved_at = models.DateTimeField(blank=True, null=True)

    class Meta:
        ordering = ("-created_at",)

    def __str__(self):
        return f"{self.kind} {self.order.tran_id}"
