"""Provisioning of paid orders against the external licensing API.

``provision`` is called synchronously by the reconciliation engine right after
a successful payment is validated. When it fails the order is parked in
SYNC_PENDING and ``retry_sync_pending`` (run by the ``retry_provisioning``
management command) retries it with exponential backoff until it succeeds or
the attempt budget runs out and the order is escalated.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone as dt_timezone

import jwt
import requests
from django.utils import timezone

from . import broadcast, emails
from .conf import payments_setting
from .exceptions import LockContention, ProvisioningFailed
from .locks import acquire_all, notification_keys
from .models import Order, ReconciliationIssue, SUCCESS, SYNC_PENDING, VALIDATED

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
RESCHEDULED = "rescheduled"
ESCALATED = "escalated"
SKIPPED = "skipped"


@dataclass
class ProvisioningResult:
    ok: bool
    response: dict | None = None
    error: str = ""


@dataclass
class SweepReport:
    checked: int = 0
    succeeded: int = 0
    rescheduled: int = 0
    escalated: int = 0
    skipped: int = 0
    parked: int = 0

    def count(self, outcome: str) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)


def auth_header() -> str:
    """Bearer token for the provisioning API: a short-lived HS256 JWT."""
    now = datetime.now(dt_timezone.utc)
    payload = {
        "iss": "paysync",
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=5)).timestamp()),
    }
    token = jwt.encode(payload, payments_setting("PROVISIONING_SECRET"), algorithm="HS256")
    return "Bearer " + token


def _payload(order: Order) -> dict:
    return {
        "tran_id": order.tran_id,
        "session_id": order.session_id,
        "val_id": order.val_id,
        "amount": str(order.amount),
        "currency": order.currency,
        "customer": order.customer,
        "items": order.items,
        "product": order.product,
    }


def _post(order: Order) -> dict:
    url = payments_setting("PROVISIONING_URL")
    if not url:
        raise ProvisioningFailed("PROVISIONING_URL is not configured")
    headers = {
        "Authorization": auth_header(),
        "Content-Type": "application/json",
        # Lets the provider drop a repeat after a crash between its reply and our write.
        "Idempotency-Key": order.tran_id,
    }
    try:
        r = requests.post(url, json=_payload(order), headers=headers, timeout=payments_setting("PROVISIONING_TIMEOUT"))
    except requests.RequestException as e:
        raise ProvisioningFailed(f"Request failed: {e}") from e

    if not 200 <= r.status_code < 300:
        raise ProvisioningFailed(f"HTTP {r.status_code}: {r.text[:500]}")
    try:
        return r.json()
    except ValueError:
        return {"raw": r.text}


def provision(order: Order) -> ProvisioningResult:
    """Issue the order's license/keys. Never raises; failures come back in the result."""
    try:
        data = _post(order)
    except ProvisioningFailed as e:
        logger.warning("Provisioning failed for tran_id=%s: %s", order.tran_id, e)
        return ProvisioningResult(False, error=str(e))
    logger.info("Provisioned tran_id=%s", order.tran_id)
    return ProvisioningResult(True, response=data)


def backoff(attempt: int) -> int:
    """Seconds to wait before the retry that follows ``attempt`` failed attempts."""
    base = payments_setting("SYNC_BACKOFF_BASE")
    return min(base * 2 ** max(attempt - 1, 0), payments_setting("SYNC_BACKOFF_MAX"))


def failure_changes(attempts: int, error: str, now) -> dict:
    """Field updates for an order whose ``attempts``-th provisioning try failed."""
    escalate = attempts >= payments_setting("SYNC_MAX_ATTEMPTS")
    return {
        "status": SYNC_PENDING,
        "sync_attempts": attempts,
        "last_sync_error": (error or "")[:2000],
        "next_sync_at": None if escalate else now + timedelta(seconds=backoff(attempts)),
        "sync_escalated": escalate,
    }


def escalate(order: Order) -> ReconciliationIssue:
    issue = ReconciliationIssue.objects.create(
        order=order,
        kind=ReconciliationIssue.PROVISIONING_ESCALATED,
        detail=f"Provisioning failed {order.sync_attempts} times; retries stopped.",
        payload={"attempts": order.sync_attempts, "error": order.last_sync_error},
    )
    logger.error("Provisioning escalated for tran_id=%s after %s attempts", order.tran_id, order.sync_attempts)
    emails.send_issue_alert(issue)
    return issue


def _retry_locked(order: Order, now) -> str:
    order.refresh_from_db()
    if order.status != SYNC_PENDING or order.sync_escalated:
        return SKIPPED

    result = provision(order)
    if result.ok:
        done = Order.objects.compare_and_set(
            order, SYNC_PENDING,
            status=SUCCESS,
            external_api_response=result.response,
            last_sync_error="",
            next_sync_at=None,
        )
        return SUCCEEDED if done else SKIPPED

    changes = failure_changes(order.sync_attempts + 1, result.error, now)
    if not Order.objects.compare_and_set(order, SYNC_PENDING, **changes):
        return SKIPPED
    order.refresh_from_db()
    if order.sync_escalated:
        escalate(order)
        return ESCALATED
    logger.info("Provisioning retry %s for tran_id=%s failed; next at %s", order.sync_attempts, order.tran_id, order.next_sync_at)
    return RESCHEDULED


def retry_order(order: Order, now=None) -> str:
    """One provisioning retry for a SYNC_PENDING order, under its transaction lock."""
    now = now or timezone.now()
    try:
        with acquire_all(*notification_keys(order.tran_id)):
            outcome = _retry_locked(order, now)
    except LockContention:
        logger.info("tran_id=%s busy; retry skipped", order.tran_id)
        return SKIPPED
    if outcome == SUCCEEDED:
        order.refresh_from_db()
        logger.info("Provisioning retry succeeded for tran_id=%s", order.tran_id)
        broadcast.publish_status(order)
    return outcome


def park_stale_validated(now=None) -> int:
    """Move VALIDATED orders whose engine run died mid-provisioning into SYNC_PENDING."""
    now = now or timezone.now()
    cutoff = now - timedelta(seconds=payments_setting("STALE_VALIDATED_AFTER"))
    parked = 0
    for order in Order.objects.filter(status=VALIDATED, updated_at__lt=cutoff):
        try:
            with acquire_all(*notification_keys(order.tran_id)):
                order.refresh_from_db()
                if order.status != VALIDATED:
                    continue
                if Order.objects.compare_and_set(
                    order, VALIDATED,
                    status=SYNC_PENDING,
                    next_sync_at=now,
                    last_sync_error="Interrupted before provisioning finished",
                ):
                    parked += 1
                    logger.warning("Parked stale VALIDATED order tran_id=%s", order.tran_id)
        except LockContention:
            continue
    return parked


def retry_sync_pending(now=None, limit: int = 50) -> SweepReport:
    now = now or timezone.now()
    report = SweepReport(parked=park_stale_validated(now))
    for order in Order.objects.due_for_sync(now)[:limit]:
        report.checked += 1
        report.count(retry_order(order, now))
    return report


def requeue(order: Order) -> bool:
    """Give an escalated order a fresh attempt budget, due immediately."""
    order.refresh_from_db()
    if order.status != SYNC_PENDING:
        return False
    return Order.objects.compare_and_set(
        order, SYNC_PENDING,
        sync_escalated=False,
        sync_attempts=0,
        next_sync_at=timezone.now(),
    )
