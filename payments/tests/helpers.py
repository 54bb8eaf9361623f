import json
from decimal import Decimal
from unittest.mock import MagicMock, patch

from django.core.cache import cache

from payments.models import Order


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else json.dumps(payload)

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


def make_order(**kwargs):
    defaults = {
        "session_id": "S1",
        "tran_id": "T1",
        "amount": Decimal("100.00"),
        "currency": "BDT",
        "customer": {"name": "Alice", "email": "alice@example.com"},
        "items": [{"name": "Pro license", "qty": 1}],
        "product": {"name": "Pro license", "sku": "PRO-1Y"},
    }
    defaults.update(kwargs)
    return Order.objects.create(**defaults)


def gateway_record(tran_id="T1", val_id="V1", status="VALID", amount="100.00", currency="BDT"):
    return {
        "status": status,
        "tran_id": tran_id,
        "val_id": val_id,
        "amount": amount,
        "currency_type": currency,
        "currency_amount": amount,
        "bank_tran_id": "BANK" + tran_id,
    }


def ipn(tran_id="T1", val_id="V1", status="VALID", amount="100.00", currency="BDT"):
    return {
        "tran_id": tran_id,
        "val_id": val_id,
        "status": status,
        "amount": amount,
        "currency": currency,
    }


class ReconciliationTestMixin:
    """Fresh cache per test, broadcast captured instead of going to Redis."""

    def setUp(self):
        super().setUp()
        cache.clear()
        self.addCleanup(cache.clear)
        self.redis = MagicMock()
        patcher = patch("payments.broadcast.get_client", return_value=self.redis)
        patcher.start()
        self.addCleanup(patcher.stop)

    def broadcasts(self):
        """Published (channel, message) pairs in order."""
        return [(c.args[0], json.loads(c.args[1])) for c in self.redis.publish.call_args_list]

    def broadcast_payloads(self):
        return [message["data"] for _, message in self.broadcasts()]

    def validator_returns(self, record):
        return patch("payments.integrations.sslcommerz.requests.get", return_value=FakeResponse(200, record))

    def provisioning_returns(self, status_code=200, payload=None):
        if payload is None and status_code == 200:
            payload = {"license_key": "KEY-123"}
        return patch("payments.provisioning.requests.post", return_value=FakeResponse(status_code, payload, text="" if payload is None else None))


# IPN exactly as the gateway signs it for store password "testpass".
GATEWAY_SIGNED_IPN = {
    "tran_id": "T1",
    "val_id": "V1",
    "status": "VALID",
    "amount": "100.00",
    "currency": "BDT",
    "verify_key": "tran_id,val_id,status,amount",
    "verify_sign": "4685d64f98cdb633c8e8c434f9e1b1dc",
}
