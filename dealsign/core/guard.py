# ------------------------------------------------------------------------
# File: guard.py
# Location: dealsign/core/guard.py
# Description:
#     Abuse controls shared by the public consent/status/sign endpoints:
#     sliding-window rate limiting per (operation class, client IP) and
#     structural validation of public identifiers and document URLs.
#
#     The in-process limiter only protects a single worker process. With
#     several Gunicorn workers or hosts, set RATE_LIMIT_REDIS_URL so all
#     processes share one counter store.
# ------------------------------------------------------------------------

import re
import threading
import time
import uuid
from collections import defaultdict, deque

from dealsign.config import parse_rate
from dealsign.core.errors import InvalidRequest, RateLimited
from dealsign.db.models import SIGNATURE_ID_PREFIX
from dealsign.log_utils.logging_config import configure_logging

logger = configure_logging(name="dealsign.guard", logfile="dealsign.log", level=None)

SIGNATURE_ID_MIN_LENGTH = 20
SIGNATURE_ID_MAX_LENGTH = 80
_SIGNATURE_ID_RE = re.compile(r"^%s[A-Za-z0-9]+$" % re.escape(SIGNATURE_ID_PREFIX))

GENERATION_FAILED_MARKERS = ("generationfailed", "generation%20failed")

OPERATION_CLASSES = ("consent", "status", "sign")


def short_id(signature_id) -> str:
    """Signature ids are bearer tokens in signing links; logs carry only a prefix."""
    return str(signature_id or "-")[:8]


def is_valid_signature_id(signature_id) -> bool:
    if not isinstance(signature_id, str):
        return False
    if not (SIGNATURE_ID_MIN_LENGTH <= len(signature_id) <= SIGNATURE_ID_MAX_LENGTH):
        return False
    return bool(_SIGNATURE_ID_RE.match(signature_id))


def require_valid_signature_id(signature_id) -> str:
    if not is_valid_signature_id(signature_id):
        logger.warning("Rejected malformed signature id: %r", short_id(signature_id))
        raise InvalidRequest("This signing link is invalid.", code="link_invalid")
    return signature_id


def is_generation_failed_url(url: str) -> bool:
    """True for document URLs produced by a failed document generation."""
    if not url:
        return False
    normalized = url.lower().replace("_", "").replace("-", "").replace(" ", "")
    return any(marker in normalized for marker in GENERATION_FAILED_MARKERS)


def require_usable_document_url(url: str):
    if is_generation_failed_url(url):
        raise InvalidRequest("Document URL points to a failed document generation", code="bad_document_url")
    if url and not re.match(r"^https?://", url, re.IGNORECASE):
        raise InvalidRequest("Document URL must be an http(s) URL", code="bad_document_url")


class InMemoryRateLimiter:
    """Sliding-window limiter keeping request times per key in this process."""

    def __init__(self, limit: int, window_seconds: float, clock=time.monotonic):
        self.limit = limit
        self.window = window_seconds
        self.clock = clock
        self._hits = defaultdict(deque)
        self._lock = threading.Lock()

    def try_acquire(self, key: str) -> bool:
        now = self.clock()
        with self._lock:
            hits = self._hits[key]
            while hits and hits[0] <= now - self.window:
                hits.popleft()
            if len(hits) >= self.limit:
                return False
            hits.append(now)
            return True

    def reset(self):
        with self._lock:
            self._hits.clear()


class RedisRateLimiter:
    """Sliding-window limiter over Redis sorted sets, shared by all processes."""

    def __init__(self, client, limit: int, window_seconds: float, clock=time.time, prefix: str = "dealsign:ratelimit"):
        self.client = client
        self.limit = limit
        self.window = window_seconds
        self.clock = clock
        self.prefix = prefix

    def try_acquire(self, key: str) -> bool:
        now = self.clock()
        redis_key = f"{self.prefix}:{key}"
        member = f"{now}:{uuid.uuid4().hex}"

        pipe = self.client.pipeline()
        pipe.zremrangebyscore(redis_key, 0, now - self.window)
        pipe.zcard(redis_key)
        _, count = pipe.execute()
        if int(count) >= self.limit:
            return False

        pipe = self.client.pipeline()
        pipe.zadd(redis_key, {member: now})
        pipe.expire(redis_key, int(self.window) + 1)
        pipe.execute()
        return True


class RateLimitGuard:
    """One limiter per operation class; keys are the client IP."""

    def __init__(self, limiters: dict):
        self.limiters = limiters

    @classmethod
    def from_config(cls, config: dict, clock=None, redis_client=None):
        limiters = {}
        for operation in OPERATION_CLASSES:
            limit, window = parse_rate(config[f"RATE_LIMIT_{operation.upper()}"])
            if redis_client is not None:
                limiters[operation] = RedisRateLimiter(redis_client, limit, window, **({"clock": clock} if clock else {}))
            else:
                limiters[operation] = InMemoryRateLimiter(limit, window, **({"clock": clock} if clock else {}))
        return cls(limiters)

    def check(self, operation: str, client_ip: str):
        limiter = self.limiters[operation]
        if not limiter.try_acquire(f"{operation}:{client_ip or 'unknown'}"):
            logger.warning("Rate limit exceeded for %s from %s", operation, client_ip)
            raise RateLimited("Too many attempts, please try again later.")
