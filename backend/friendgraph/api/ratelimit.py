import logging
import time
import uuid

import redis
from fastapi import Depends

from friendgraph.api.deps import get_current_user
from friendgraph.core.settings import settings
from friendgraph.models.user import User

log = logging.getLogger(__name__)

_redis: redis.Redis | None = None


class RateLimited(Exception):
    def __init__(self, code: str, retry_after: int, limit: int, window: int):
        super().__init__(code)
        self.code = code
        self.retry_after = retry_after
        self.limit = limit
        self.window = window


def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis


def check_rate_limit(
    r: redis.Redis,
    key: str,
    max_requests: int,
    window_seconds: int,
    now: float | None = None,
) -> tuple[bool, int, int]:
    """Sliding-window counter over a sorted set of attempt timestamps.

    Returns ``(allowed, remaining, retry_after)``. Rejected attempts are
    recorded too, so hammering a full window keeps it full.
    """
    now = time.time() if now is None else now
    window_start = now - window_seconds

    pipe = r.pipeline()
    pipe.zremrangebyscore(key, 0, window_start)
    # Members must be unique or two calls in the same tick collapse into one.
    pipe.zadd(key, {f"{now}:{uuid.uuid4().hex}": now})
    pipe.zcard(key)
    pipe.expire(key, window_seconds + 1)
    results = pipe.execute()
    request_count = results[2]

    if request_count > max_requests:
        oldest = r.zrange(key, 0, 0, withscores=True)
        if oldest:
            retry_after = int(oldest[0][1] + window_seconds - now) + 1
        else:
            retry_after = window_seconds
        return False, 0, max(1, retry_after)

    return True, max_requests - request_count, 0


def rate_limit(scope: str, limit_setting: str, code: str):
    """Per-user limit as a route dependency; the limit is read from settings per call."""

    def dependency(
        me: User = Depends(get_current_user),
        r: redis.Redis = Depends(get_redis),
    ) -> None:
        if not settings.RATE_LIMIT_ENABLED:
            return

        max_requests = getattr(settings, limit_setting)
        window = settings.RATE_LIMIT_WINDOW_SECONDS
        key = f"ratelimit:{scope}:user:{me.id}"
        try:
            allowed, _remaining, retry_after = check_rate_limit(r, key, max_requests, window)
        except redis.RedisError as e:
            # Fail open.
            log.error("Rate limit check failed: %s", e, exc_info=True)
            return

        if not allowed:
            log.warning("Rate limit exceeded: key=%s, limit=%d/%ds", key, max_requests, window)
            raise RateLimited(code, retry_after, max_requests, window)

    return dependency


friend_request_limit = rate_limit(
    "friend_requests", "FRIEND_REQUEST_RATE_LIMIT", "FRIEND_REQUEST_RATE_LIMIT"
)
friend_action_limit = rate_limit(
    "friend_actions", "FRIEND_ACTION_RATE_LIMIT", "FRIEND_ACTIONS_RATE_LIMIT"
)
