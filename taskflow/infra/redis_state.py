from __future__ import annotations

import os
from collections.abc import Callable
from functools import lru_cache

from redis import Redis

from taskflow.infra.logging_setup import get_logger

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")

logger = get_logger(__name__)


@lru_cache(maxsize=1)
def get_redis() -> Redis:
    return Redis.from_url(REDIS_URL, decode_responses=True)


NEXT_ABOVE_FLOOR = """
local value = redis.call("INCR", KEYS[1])
local floor = tonumber(ARGV[1])
if value <= floor then
    value = floor + 1
    redis.call("SET", KEYS[1], value)
end
return value
"""


def next_counter_value(key: str, floor: Callable[[], int]) -> int:
    """Increment ``key`` and return a value strictly above ``floor()``.

    The counter is raised past the floor inside one Lua script, so a key left
    behind by an earlier run never hands out a value at or below the items
    that already exist.
    """
    return int(get_redis().eval(NEXT_ABOVE_FLOOR, 1, key, floor()))


def check_redis_ready() -> bool:
    try:
        return bool(get_redis().ping())
    except Exception:
        logger.warning("redis readiness check failed", exc_info=True)
        return False
