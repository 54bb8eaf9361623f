import hashlib
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

import requests
from django.conf import settings
from requests import RequestException

logger = logging.getLogger(__name__)

SESSION_PATH = "/gwprocess/v4/api.php"
VALIDATION_PATH = "/validator/api/validationserverAPI.php"
TRANSACTION_QUERY_PATH = "/validator/api/merchantTransIDvalidationAPI.php"

SUCCESSFUL = "SUCCESSFUL"
FAILED = "FAILED"
CANCELLED = "CANCELLED"

# Gateway record status -> payment outcome
OUTCOMES = {
    "VALID": SUCCESSFUL,
    "VALIDATED": SUCCESSFUL,
    "FAILED": FAILED,
    "CANCELLED": CANCELLED,
    "UNATTEMPTED": CANCELLED,
    "EXPIRED": CANCELLED,
}


class GatewayError(Exception): pass


@dataclass
class ValidationResult:
    outcome: str
    tran_id: str
    val_id: str = ""
    amount: Decimal | None = None
    currency: str = ""
    raw: dict = field(default_factory=dict)


def _conf(key, default=None):
    return getattr(settings, "SSLCOMMERZ", {}).get(key, default)


def _url(path: str) -> str:
    return _conf("BASE_URL", "").rstrip("/") + path


def _credentials() -> dict:
    store_id = _conf("STORE_ID")
    store_passwd = _conf("STORE_PASSWORD")
    if not store_id or not store_passwd:
        raise GatewayError("Missing SSLCOMMERZ STORE_ID/STORE_PASSWORD")
    return {"store_id": store_id, "store_passwd": store_passwd}


def _amount(value) -> Decimal:
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError):
        raise GatewayError(f"Invalid amount value: {value!r}")


def _get(path: str, params: dict) -> dict:
    try:
        resp = requests.get(_url(path), params={**params, **_credentials(), "format": "json"}, timeout=_conf("TIMEOUT", 20))
    except RequestException as e:
        raise GatewayError(f"Gateway request failed: {e}")
    if resp.status_code != 200:
        raise GatewayError(f"Gateway returned HTTP {resp.status_code}: {resp.text[:300]}")
    try:
        return resp.json()
    except ValueError:
        raise GatewayError(f"Gateway returned non-JSON body: {resp.text[:300]}")


def create_session(*, session_id, tran_id, amount, currency, customer, product_name,
                   product_category="general", num_of_item=1) -> dict:
    """Open a hosted checkout session; returns the gateway response with ``GatewayPageURL``."""
    customer = customer or {}
    payload = {
        **_credentials(),
        "total_amount": f"{_amount(amount):.2f}",
        "currency": currency,
        "tran_id": tran_id,
        "success_url": _conf("SUCCESS_URL", "").format(session_id=session_id),
        "fail_url": _conf("FAIL_URL", "").format(session_id=session_id),
        "cancel_url": _conf("CANCEL_URL", "").format(session_id=session_id),
        "ipn_url": _conf("IPN_URL", "").format(session_id=session_id),
        "cus_name": customer.get("name") or "Customer",
        "cus_email": customer.get("email") or "",
        "cus_phone": customer.get("phone") or "",
        "cus_add1": customer.get("address") or "N/A",
        "cus_city": customer.get("city") or "N/A",
        "cus_country": customer.get("country") or "Bangladesh",
        "shipping_method": "NO",
        "product_name": product_name or "Order",
        "product_category": product_category,
        "product_profile": "non-physical-goods",
        "num_of_item": num_of_item,
        "value_a": session_id,
    }
    try:
        resp = requests.post(_url(SESSION_PATH), data=payload, timeout=_conf("TIMEOUT", 20))
    except RequestException as e:
        raise GatewayError(f"Gateway request failed: {e}")
    try: data = resp.json()
    except ValueError: data = {"raw": resp.text}
    if resp.status_code == 200 and str(data.get("status", "")).upper() == "SUCCESS" and data.get("GatewayPageURL"):
        return data
    reason = data.get("failedreason") or f"HTTP {resp.status_code}"
    raise GatewayError(f"Create session failed: {reason}. Response: {json.dumps(data)[:800]}")


def verify_signature(notification: dict) -> bool:
    """Check the IPN ``verify_sign`` hash.

    The gateway lists the signed fields in ``verify_key``; the hash is the md5
    of those fields plus md5(store password), sorted by name and joined as ``k=v``
    pairs separated by ``&``.
    """
    verify_sign = notification.get("verify_sign") or ""
    verify_key = notification.get("verify_key") or ""
    if not verify_sign or not verify_key:
        return False
    store_passwd = _conf("STORE_PASSWORD") or ""
    fields = {k: str(notification.get(k, "")) for k in verify_key.split(",") if k}
    fields["store_passwd"] = hashlib.md5(store_passwd.encode("utf-8")).hexdigest()
    message = "&".join(f"{k}={fields[k]}" for k in sorted(fields))
    expected = hashlib.md5(message.encode("utf-8")).hexdigest()
    return expected == verify_sign


def _pick_record(data: dict) -> dict:
    # Transaction query returns every attempt; a validated one wins.
    elements = data.get("element") or []
    if not elements:
        raise GatewayError(f"No transaction record: {data.get('APIConnect') or data.get('status') or 'empty response'}")
    for element in elements:
        if str(element.get("status", "")).upper() in ("VALID", "VALIDATED"):
            return element
    return elements[0]


def validate_notification(notification: dict, *, tran_id: str, amount, currency: str) -> ValidationResult:
    """Confirm an IPN against the gateway's server-side records.

    ``tran_id``, ``amount`` and ``currency`` are what the Order expects. The
    gateway record is authoritative; the IPN body only tells us what to look
    up. Raises GatewayError on transport errors, signature mismatch, unknown
    status, or when the record does not match the Order.
    """
    if notification.get("verify_sign") or _conf("REQUIRE_SIGNATURE", True):
        if not verify_signature(notification):
            raise GatewayError("IPN signature mismatch")

    claimed = str(notification.get("tran_id") or "")
    if claimed != tran_id:
        raise GatewayError(f"tran_id mismatch: expected {tran_id}, got {claimed or 'nothing'}")

    val_id = str(notification.get("val_id") or "")
    if val_id:
        record = _get(VALIDATION_PATH, {"val_id": val_id})
    else:
        record = _pick_record(_get(TRANSACTION_QUERY_PATH, {"tran_id": tran_id}))

    status = str(record.get("status", "")).upper()
    outcome = OUTCOMES.get(status)
    if outcome is None:
        raise GatewayError(f"Unrecognised gateway status {status or 'missing'} for {tran_id}")

    if str(record.get("tran_id") or tran_id) != tran_id:
        raise GatewayError(f"Gateway record belongs to {record.get('tran_id')}, not {tran_id}")

    result = ValidationResult(
        outcome=outcome,
        tran_id=tran_id,
        val_id=str(record.get("val_id") or val_id),
        currency=str(record.get("currency_type") or record.get("currency") or "").upper(),
        raw=record,
    )
    if outcome == SUCCESSFUL:
        reported = record.get("currency_amount", record.get("amount"))
        result.amount = _amount(reported)
        if result.amount != _amount(amount):
            raise GatewayError(f"Amount mismatch for {tran_id}: expected {_amount(amount)}, gateway {result.amount}")
        if result.currency and result.currency != currency.upper():
            raise GatewayError(f"Currency mismatch for {tran_id}: expected {currency}, gateway {result.currency}")
    logger.info("Gateway validated %s: %s (val_id=%s)", tran_id, outcome, result.val_id or "-")
    return result
