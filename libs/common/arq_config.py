"""Redis connection settings for the orders worker (arq)."""

from arq.connections import RedisSettings
from libs.common.config import get_settings

# The worker is useless without Redis; keep retrying through a Redis restart.
_CONN_RETRIES = 10


def get_redis_settings() -> RedisSettings:
    """Build arq RedisSettings from REDIS_URL.

    ``rediss://`` URLs switch on TLS, as used by managed Redis offerings.
    """
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    redis_settings.conn_timeout = 5
    redis_settings.conn_retries = _CONN_RETRIES
    return redis_settings
