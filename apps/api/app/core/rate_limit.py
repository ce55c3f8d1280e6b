"""In-memory fixed-window rate limiting per client IP and user id, per process."""
from __future__ import annotations

import base64
import json
import logging
import threading
import time
from dataclasses import dataclass, field

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.config import settings
from app.core.error_handlers import error_response

logger = logging.getLogger(__name__)

MINUTE = 60.0
DAY = 86400.0


@dataclass
class Window:
    length: float
    started: float = 0.0
    count: int = 0

    def roll(self, now: float) -> None:
        if now - self.started >= self.length:
            self.started, self.count = now, 0

    def retry_after(self, now: float) -> int:
        return int(max(1, self.length - (now - self.started)))


@dataclass
class Bucket:
    minute: Window = field(default_factory=lambda: Window(MINUTE))
    day: Window = field(default_factory=lambda: Window(DAY))


def rate_limit_keys(request: Request) -> list[str]:
    """Buckets charged for a request: always the client IP, plus the token's subject when present.

    The token is not verified here; routes authenticate. Rotating forged
    subjects still drains the IP bucket.
    """
    keys = [f"ip:{request.client.host if request.client else 'unknown'}"]
    auth = request.headers.get("authorization") or ""
    if auth.lower().startswith("bearer "):
        parts = auth.split(" ", 1)[1].strip().split(".")
        if len(parts) >= 2:
            try:
                padded = parts[1] + "=" * (-len(parts[1]) % 4)
                claims = json.loads(base64.urlsafe_b64decode(padded).decode("utf-8"))
                sub = claims.get("sub") or claims.get("user_id")
            except (ValueError, UnicodeDecodeError, AttributeError):
                sub = None
            if sub:
                keys.append(f"uid:{sub}")
    return keys


class RateLimiter:
    """Per-process minute and day windows for a set of bucket keys."""

    def __init__(self):
        self.lock = threading.Lock()
        self.buckets: dict[str, Bucket] = {}
        self.pruned_at = 0.0

    def prune(self, now: float) -> None:
        # Buckets whose day window ran out hold no live counts
        stale = [key for key, b in self.buckets.items() if now - b.day.started >= b.day.length]
        for key in stale:
            del self.buckets[key]
        self.pruned_at = now

    def hit(self, keys: list[str], per_minute: int, per_day: int, now: float) -> tuple[bool, int, int, int]:
        """Charge every bucket unless one is exhausted.

        Returns (allowed, retry_after, minute_left, day_left) for the tightest bucket.
        """
        with self.lock:
            if now - self.pruned_at >= MINUTE:
                self.prune(now)
            buckets = [self.buckets.setdefault(key, Bucket()) for key in keys]
            exhausted = []
            for b in buckets:
                b.minute.roll(now)
                b.day.roll(now)
                if b.minute.count >= per_minute:
                    exhausted.append(b.minute)
                if b.day.count >= per_day:
                    exhausted.append(b.day)
            if not exhausted:
                for b in buckets:
                    b.minute.count += 1
                    b.day.count += 1
            minute_left = min(max(0, per_minute - b.minute.count) for b in buckets)
            day_left = min(max(0, per_day - b.day.count) for b in buckets)
            retry_after = max((w.retry_after(now) for w in exhausted), default=0)
        return not exhausted, retry_after, minute_left, day_left

    def reset(self) -> None:
        with self.lock:
            self.buckets.clear()
            self.pruned_at = 0.0


rate_limiter = RateLimiter()


class RateLimitMiddleware(BaseHTTPMiddleware):
    # Stripe retries deliveries on its own schedule
    exempt_prefixes = ("/health", "/api/webhook/")

    def __init__(self, app, limiter: RateLimiter = rate_limiter):
        super().__init__(app)
        self.limiter = limiter

    async def dispatch(self, request: Request, call_next):
        if request.url.path.startswith(self.exempt_prefixes):
            return await call_next(request)

        keys = rate_limit_keys(request)
        # Reads are cheap; allow more of them
        per_minute = settings.rate_limit_per_min * (5 if request.method.upper() == "GET" else 1)
        per_day = settings.rate_limit_per_day
        allowed, retry_after, minute_left, day_left = self.limiter.hit(keys, per_minute, per_day, time.time())

        limit_headers = {
            "X-RateLimit-Limit-Minute": str(per_minute),
            "X-RateLimit-Remaining-Minute": str(minute_left),
            "X-RateLimit-Limit-Day": str(per_day),
            "X-RateLimit-Remaining-Day": str(day_left),
        }
        if not allowed:
            logger.info("rate_limited keys=%s path=%s", ",".join(keys), request.url.path)
            response = error_response(request, 429, "rate_limited", "Rate limit exceeded")
            response.headers.update({"Retry-After": str(retry_after), **limit_headers})
            return response

        response = await call_next(request)
        response.headers.update(limit_headers)
        return response
