"""Reconciliation of gateway notifications (IPN) into Order state.

This is the only code path that moves an Order out of PENDING. Per
notification:

  1. resolve the session id to an Order
  2. take the idempotency locks for tran_id / val_id; if busy, the delivery is
     a duplicate and we answer with whatever is persisted
  3. validate the notification with the gateway (no local writes on failure)
  4. compare the validated outcome against the Order and apply it with a
     version-checked write
  5. on a successful payment, provision synchronously and finalize as SUCCESS
     or SYNC_PENDING
  6. release the locks and broadcast the final status

The browser redirect never reaches this module.
"""

import logging
from dataclasses import dataclass

from django.utils import timezone

from . import broadcast, emails
from .conf import payments_setting
from .exceptions import ConflictingFinalization, LockContention, ValidationFailed
from .integrations.sslcommerz import SUCCESSFUL, GatewayError, ValidationResult, validate_notification
from .locks import acquire_all, notification_keys
from .models import Order, ReconciliationIssue, PENDING, SUCCESS, VALIDATED
from .provisioning import escalate, failure_changes, provision
from .sessions import resolve_order

logger = logging.getLogger(__name__)

APPLIED = "APPLIED"
CONFIRMED = "CONFIRMED"
DUPLICATE = "DUPLICATE"


@dataclass(frozen=True)
class ReconcileResult:
    session_id: str
    tran_id: str
    status: str
    outcome: str

    @classmethod
    def of(cls, order: Order, outcome: str) -> "ReconcileResult":
        return cls(order.session_id, order.tran_id, order.status, outcome)


def apply_notification(session_id: str, notification: dict) -> ReconcileResult:
    """Drive one IPN delivery through the state machine.

    Raises UnresolvedSession, ValidationFailed or ConflictingFinalization; a
    concurrent duplicate is not an error and returns outcome DUPLICATE.
    """
    val_id = str(notification.get("val_id") or "")
    order = resolve_order(session_id, tran_id=str(notification.get("tran_id") or ""))

    try:
        with acquire_all(*notification_keys(order.tran_id, val_id)):
            order, outcome = _reconcile_locked(order, notification)
    except LockContention as e:
        logger.info("Notification for tran_id=%s already in flight (%s); answering from store", order.tran_id, e.key)
        order.refresh_from_db()
        return ReconcileResult.of(order, DUPLICATE)

    broadcast.publish_status(order)
    return ReconcileResult.of(order, outcome)


def _reconcile_locked(order: Order, notification: dict) -> tuple:
    try:
        validation = validate_notification(
            notification,
            tran_id=order.tran_id,
            amount=order.amount,
            currency=order.currency,
        )
    except GatewayError as e:
        logger.warning("Validation failed for tran_id=%s: %s", order.tran_id, e)
        raise ValidationFailed(str(e)) from e

    for _ in range(payments_setting("CAS_RETRIES") + 1):
        order.refresh_from_db()
        recorded = order.recorded_outcome
        if recorded:
            if recorded != validation.outcome:
                _flag_conflict(order, validation)
            if validation.val_id and order.val_id and validation.val_id != order.val_id:
                logger.warning(
                    "tran_id=%s confirmed again under val_id=%s (recorded %s)",
                    order.tran_id, validation.val_id, order.val_id,
                )
            logger.info("tran_id=%s already %s; confirmation only", order.tran_id, order.status)
            return order, CONFIRMED

        target = VALIDATED if validation.outcome == SUCCESSFUL else validation.outcome
        if Order.objects.compare_and_set(
            order, PENDING,
            status=target,
            val_id=validation.val_id,
            payment_info=validation.raw,
        ):
            order.refresh_from_db()
            logger.info("tran_id=%s PENDING -> %s", order.tran_id, target)
            break
        logger.info("Concurrent write on tran_id=%s; re-reading", order.tran_id)
    else:
        order.refresh_from_db()
        logger.warning("tran_id=%s kept changing underneath us; answering with %s", order.tran_id, order.status)
        return order, DUPLICATE

    if order.status == VALIDATED:
        _provision_and_finalize(order)
        order.refresh_from_db()
    return order, APPLIED


def _provision_and_finalize(order: Order) -> None:
    result = provision(order)
    if result.ok:
        changes = {"status": SUCCESS, "external_api_response": result.response}
    else:
        logger.warning("Provisioning failed for tran_id=%s; parking in SYNC_PENDING: %s", order.tran_id, result.error)
        changes = failure_changes(1, result.error, timezone.now())
    if not Order.objects.compare_and_set(order, VALIDATED, **changes):
        logger.error("tran_id=%s left VALIDATED while we held its lock", order.tran_id)
        return
    if changes.get("sync_escalated"):
        order.refresh_from_db()
        escalate(order)


def _flag_conflict(order: Order, validation: ValidationResult) -> None:
    payload = {
        "recorded_status": order.status,
        "recorded_val_id": order.val_id,
        "reported_outcome": validation.outcome,
        "reported_val_id": validation.val_id,
        "validator_response": validation.raw,
    }
    already_open = ReconciliationIssue.objects.filter(
        order=order,
        kind=ReconciliationIssue.CONFLICTING_FINALIZATION,
        resolved=False,
        payload__reported_outcome=validation.outcome,
    ).exists()
    if not already_open:
        issue = ReconciliationIssue.objects.create(
            order=order,
            kind=ReconciliationIssue.CONFLICTING_FINALIZATION,
            detail=f"Order is {order.status} but the gateway now reports {validation.outcome}.",
            payload=payload,
        )
        emails.send_issue_alert(issue)
    logger.error(
        "Conflicting finalization for tran_id=%s: recorded %s, gateway reports %s",
        order.tran_id, order.status, validation.outcome,
    )
    raise ConflictingFinalization(order.tran_id, order.recorded_outcome, validation.outcome)
