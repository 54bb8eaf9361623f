import redis

from .conf import payments_setting

_client: redis.Redis | None = None


def get_client() -> redis.Redis:
    """Process-wide Redis connection for pub/sub and lock leases."""
    global _client
    if _client is None:
        _client = redis.Redis.from_url(
            payments_setting("REDIS_URL"),
            socket_timeout=2,
            socket_connect_timeout=2,
        )
    return _client
