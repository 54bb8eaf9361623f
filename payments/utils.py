import secrets

from django.utils import timezone


def gen_tran_id():
    # e.g. PSY2410181530221A2B3C, unique per checkout attempt
    return f"PSY{timezone.now().strftime('%y%m%d%H%M%S')}{secrets.token_hex(3).upper()}"


def gen_session_id():
    return secrets.token_urlsafe(24)
