import logging
from typing import List

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.template.loader import render_to_string

logger = logging.getLogger(__name__)


def admin_recipients() -> List[str]:
    """Who gets reconciliation alerts: PAYMENTS_ADMIN_EMAILS (comma separated), else ADMINS."""
    raw = getattr(settings, "PAYMENTS_ADMIN_EMAILS", "") or ""
    if raw:
        candidates = raw.split(",")
    else:
        # ("Name", "email") pairs or, on newer Django, bare addresses
        candidates = [a if isinstance(a, str) else a[1] for a in getattr(settings, "ADMINS", [])]
    recipients: List[str] = []
    for email in (c.strip() for c in candidates):
        if email and email.lower() not in {r.lower() for r in recipients}:
            recipients.append(email)
    return recipients


def send_issue_alert(issue) -> None:
    """Tell payment admins about a reconciliation issue that needs a human.

    Never raises; the issue row is already persisted and visible in admin.
    """
    try:
        admins = admin_recipients()
        if not admins:
            logger.warning("No admin recipients configured for %s on %s", issue.kind, issue.order.tran_id)
            return
        order = issue.order
        context = {
            "kind": issue.get_kind_display(),
            "detail": issue.detail,
            "tran_id": order.tran_id,
            "session_id": order.session_id,
            "val_id": order.val_id,
            "status": order.status,
            "amount": order.amount,
            "currency": order.currency,
            "sync_attempts": order.sync_attempts,
            "last_sync_error": order.last_sync_error,
        }
        from_email = getattr(settings, "DEFAULT_FROM_EMAIL", None) or getattr(settings, "EMAIL_HOST_USER", None)
        subject = f"[payments] {context['kind']}: {order.tran_id} ({order.status})"
        text = render_to_string("emails/reconciliation_issue_admin.txt", context)
        html = render_to_string("emails/reconciliation_issue_admin.html", context)
        msg = EmailMultiAlternatives(subject, text, from_email, admins)
        msg.attach_alternative(html, "text/html")
        msg.send(fail_silently=getattr(settings, "EMAIL_FAIL_SILENTLY", True))
    except Exception:
        logger.exception("Failed to send reconciliation alert for issue=%s", getattr(issue, "pk", None))
