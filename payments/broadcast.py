"""Real-time payment status updates over Redis pub/sub.

Fire-and-forget: a subscriber that is not listening when a message goes out
never sees it, so clients must fall back to the status endpoint.
"""

import json
import logging

import redis

from .clients import get_client
from .conf import payments_setting

logger = logging.getLogger(__name__)

STATUS_EVENT = "paymentStatusUpdate"


def channel_name(session_id: str) -> str:
    return f"{payments_setting('CHANNEL_PREFIX')}{session_id}"


def publish(session_id: str, event: str, data: dict) -> bool:
    channel = channel_name(session_id)
    message = json.dumps({"event": event, "data": data}, default=str)
    try:
        receivers = get_client().publish(channel, message)
    except redis.RedisError:
        logger.exception("Broadcast of %s to %s failed", event, channel)
        return False
    logger.debug("Published %s to %s (%s receivers)", event, channel, receivers)
    return True


def status_payload(order) -> dict:
    return {"sessionId": order.session_id, "tran_id": order.tran_id, "status": order.status}


def publish_status(order) -> bool:
    return publish(order.session_id, STATUS_EVENT, status_payload(order))
