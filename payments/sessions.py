"""Short-lived session records linking a client-visible session id to an Order.

The cache entry is only an accelerator: once it expires the Order row (unique
on ``session_id``) still answers every lookup.
"""

import logging

from django.core.cache import cache
from django.utils import timezone

from .conf import payments_setting
from .exceptions import UnresolvedSession
from .models import Order

logger = logging.getLogger(__name__)

SESSION_PREFIX = "payments:session:"


def _key(session_id: str) -> str:
    return SESSION_PREFIX + session_id


def create_session(order: Order) -> dict:
    record = {
        "order_id": order.pk,
        "tran_id": order.tran_id,
        "created_at": timezone.now().isoformat(),
    }
    cache.set(_key(order.session_id), record, timeout=payments_setting("SESSION_TTL"))
    return record


def get_session(session_id: str) -> dict | None:
    return cache.get(_key(session_id))


def find_order(session_id: str, tran_id: str = "") -> Order | None:
    record = get_session(session_id)
    if record:
        order = Order.objects.filter(pk=record["order_id"]).first()
        if order is not None:
            return order
    order = Order.objects.filter(session_id=session_id).first()
    if order is None and tran_id:
        order = Order.objects.filter(tran_id=tran_id).first()
        if order is not None:
            logger.info("Session %s unknown; resolved by tran_id %s", session_id, tran_id)
    return order


def resolve_order(session_id: str, tran_id: str = "") -> Order:
    order = find_order(session_id, tran_id=tran_id)
    if order is None:
        raise UnresolvedSession(f"No order for session {session_id!r} (tran_id={tran_id!r})")
    return order
