import json
import logging
from decimal import Decimal, InvalidOperation

from django.contrib.auth.decorators import login_required
from django.http import HttpResponseBadRequest, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from . import sessions
from .broadcast import channel_name
from .exceptions import ConflictingFinalization, UnresolvedSession, ValidationFailed
from .integrations.sslcommerz import GatewayError, create_session as gateway_create_session
from .models import Order, CANCELLED, FAILED, SUCCESS
from .reconciliation import apply_notification
from .utils import gen_session_id, gen_tran_id

logger = logging.getLogger(__name__)

DISPLAY = {SUCCESS: "success", FAILED: "failed", CANCELLED: "cancelled"}


def _json_body(request):
    try: return json.loads(request.body.decode("utf-8"))
    except Exception: return None


def _customer_for(request, overrides) -> dict:
    user = request.user
    customer = {
        "id": user.pk,
        "name": user.get_full_name() or user.get_username(),
        "email": user.email or "",
        "phone": "",
    }
    if isinstance(overrides, dict):
        customer.update({k: v for k, v in overrides.items() if k != "id" and v})
    return customer


@csrf_exempt
@login_required
@require_POST
def init_payment_view(request):
    body = _json_body(request)
    if not isinstance(body, dict):
        return HttpResponseBadRequest("Invalid JSON body")

    try:
        amount = Decimal(str(body.get("amount", ""))).quantize(Decimal("0.01"))
    except (InvalidOperation, TypeError, ValueError):
        return HttpResponseBadRequest("Invalid amount")
    if amount <= 0:
        return HttpResponseBadRequest("Amount must be > 0")

    items = body.get("items") or []
    product = body.get("product") or {}
    if not isinstance(items, list) or not isinstance(product, dict):
        return HttpResponseBadRequest("items must be a list and product an object")

    order = Order.objects.create(
        session_id=gen_session_id(),
        tran_id=gen_tran_id(),
        user=request.user,
        amount=amount,
        currency=str(body.get("currency") or "BDT").upper(),
        customer=_customer_for(request, body.get("customer")),
        items=items,
        product=product,
    )
    sessions.create_session(order)

    try:
        data = gateway_create_session(
            session_id=order.session_id,
            tran_id=order.tran_id,
            amount=order.amount,
            currency=order.currency,
            customer=order.customer,
            product_name=product.get("name") or ", ".join(str(i.get("name", "")) for i in items if isinstance(i, dict)) or "Order",
            product_category=product.get("category") or "general",
            num_of_item=max(len(items), 1),
        )
    except GatewayError as e:
        logger.error("Checkout session failed for tran_id=%s: %s", order.tran_id, e)
        Order.objects.filter(pk=order.pk).update(gateway_session={"error": str(e)})
        return JsonResponse({"ok": False, "error": str(e), "sessionId": order.session_id}, status=502)

    Order.objects.filter(pk=order.pk).update(gateway_session=data)
    logger.info("Checkout session opened for tran_id=%s session=%s", order.tran_id, order.session_id)
    return JsonResponse({
        "ok": True,
        "sessionId": order.session_id,
        "tran_id": order.tran_id,
        "redirect_url": data["GatewayPageURL"],
        "channel": channel_name(order.session_id),
    })


@csrf_exempt
@require_http_methods(["GET", "POST"])
def payment_return_view(request, session_id: str, result: str):
    """Landing page for the browser after checkout. Read-only.

    Whatever the gateway says in the redirect is ignored; the page shows the
    stored status and tells the client which channel to listen on.
    """
    status = "UNKNOWN"
    try:
        order = sessions.find_order(session_id)
        if order is not None:
            status = order.status
    except Exception:
        logger.exception("Status lookup failed on %s redirect for session=%s", result, session_id)
    return JsonResponse({
        "sessionId": session_id,
        "redirect": result,
        "status": status,
        "display": DISPLAY.get(status, "processing"),
        "channel": channel_name(session_id),
    })


def _ipn_body(request) -> dict:
    if request.content_type == "application/json":
        body = _json_body(request)
        return body if isinstance(body, dict) else {}
    return request.POST.dict()


@csrf_exempt
@require_POST
def ipn_view(request, session_id: str):
    notification = _ipn_body(request)
    try:
        result = apply_notification(session_id, notification)
    except UnresolvedSession as e:
        logger.warning("IPN for unknown session=%s: %s", session_id, e)
        return JsonResponse({"ok": False, "error": "unknown session"}, status=404)
    except ValidationFailed as e:
        return JsonResponse({"ok": False, "error": f"validation failed: {e}"}, status=400)
    except ConflictingFinalization as e:
        # Acknowledged so the gateway stops redelivering; a human takes it from here.
        return JsonResponse({"ok": False, "error": "conflict", "tran_id": e.tran_id}, status=200)

    return JsonResponse({
        "ok": True,
        "tran_id": result.tran_id,
        "status": result.status,
        "outcome": result.outcome,
    })


@require_GET
def payment_status_view(request, session_id: str):
    try:
        order = sessions.find_order(session_id)
    except Exception:
        logger.exception("Status lookup failed for session=%s", session_id)
        return JsonResponse({"ok": False, "status": "UNKNOWN", "display": "processing"}, status=503)
    if order is None:
        return JsonResponse({"ok": False, "error": "unknown session"}, status=404)
    return JsonResponse({
        "status": order.status,
        "tran_id": order.tran_id,
        "amount": str(order.amount),
        "currency": order.currency,
    })
