from django.conf import settings

DEFAULTS = {
    "SESSION_TTL": 900,
    "LOCK_TTL": 60,
    "LOCK_BACKEND": "redis",
    "PROVISIONING_URL": "",
    "PROVISIONING_SECRET": "",
    "PROVISIONING_TIMEOUT": 15.0,
    "SYNC_MAX_ATTEMPTS": 6,
    "SYNC_BACKOFF_BASE": 60,
    "SYNC_BACKOFF_MAX": 3600,
    "CAS_RETRIES": 3,
    "STALE_VALIDATED_AFTER": 300,
    "REDIS_URL": "redis://localhost:6379/0",
    "CHANNEL_PREFIX": "payment:",
}


def payments_setting(name: str):
    """Read ``settings.PAYMENTS[name]`` falling back to the defaults above."""
    return getattr(settings, "PAYMENTS", {}).get(name, DEFAULTS[name])
