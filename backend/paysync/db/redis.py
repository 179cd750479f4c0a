"""Redis client and the run lock used by the expiry sweep"""
import logging

import redis
from redis.lock import Lock

logger = logging.getLogger(__name__)

SWEEP_LOCK_KEY = "paysync:lock:expiry-sweep"


def build_redis_client(url: str):
    """Create the Redis client once at process start (no connection until first use)"""
    return redis.from_url(url, decode_responses=True)


def sweep_lock(client, timeout: int = 900) -> Lock:
    """Non-blocking lock on SWEEP_LOCK_KEY.

    The lock holds a random token, so releasing after ``timeout`` has passed
    (and another run has taken the key) raises ``LockNotOwnedError`` instead
    of deleting the other run's lock.
    """
    return client.lock(SWEEP_LOCK_KEY, timeout=timeout, blocking=False)
