import redis

from bell_dispatch.core.config import settings

# Shared connection pool; redis-py clients are safe to use across threads
pool = redis.ConnectionPool.from_url(
    settings.REDIS_URL,
    decode_responses=True,
    socket_timeout=10,          # Bound every blocking call inside a cycle
    socket_connect_timeout=5,
    health_check_interval=30,
)


def get_redis() -> redis.Redis:
    return redis.Redis(connection_pool=pool)
