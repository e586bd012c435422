"""
Operator dependency and rate limiting.
"""

import math
import secrets
import time
from typing import Annotated

from fastapi import Depends, Request, Response

from amm import config
from amm.api_errors import APIError


# ---------------------------------------------------------------------------
# Rate limiter (token bucket per holder)
# ---------------------------------------------------------------------------

class RateLimiter:
    """Per-holder token bucket. `rate` trades per minute, burst of `rate`."""

    def __init__(self, rate: int = 60):
        self.rate = rate
        # holder -> (tokens left, monotonic time of last check)
        self.buckets: dict[str, tuple[float, float]] = {}

    def _refill(self, holder: str, now: float) -> float:
        tokens, last = self.buckets.get(holder, (float(self.rate), now))
        return min(float(self.rate), tokens + (now - last) * self.rate / 60.0)

    def check(self, holder: str) -> tuple[bool, dict]:
        """Take one token for `holder`. Returns (allowed, headers)."""
        now = time.monotonic()
        tokens = self._refill(holder, now)
        allowed = tokens >= 1.0
        if allowed:
            tokens -= 1.0
        self.buckets[holder] = (tokens, now)

        headers = {
            "X-RateLimit-Limit": str(self.rate),
            "X-RateLimit-Remaining": str(int(tokens)),
        }
        if not allowed:
            wait = (1.0 - tokens) * 60.0 / self.rate
            headers["Retry-After"] = str(max(1, math.ceil(wait)))
        return allowed, headers


# Replaced in tests
rate_limiter = RateLimiter(config.RATE_LIMIT_PER_MIN)


def enforce_rate_limit(holder: str, response: Response) -> None:
    allowed, headers = rate_limiter.check(holder)
    response.headers.update(headers)
    if not allowed:
        raise APIError(429, "rate_limited",
                       f"Rate limit exceeded for {holder}",
                       {"retry_after": headers["Retry-After"]})


# ---------------------------------------------------------------------------
# Operator dependency
# ---------------------------------------------------------------------------

def _get_bearer_token(request: Request) -> str | None:
    """Extract Bearer token from Authorization header."""
    auth = request.headers.get("authorization", "")
    if auth.startswith("Bearer "):
        return auth[7:]
    return None


async def require_admin(request: Request) -> str:
    """Require the admin API key. Returns the operator identity."""
    if not config.ADMIN_KEY:
        raise APIError(500, "admin_required",
                       "AMM_ADMIN_KEY not configured")
    token = _get_bearer_token(request)
    if not token:
        raise APIError(401, "auth_required", "Authorization header required")
    if not secrets.compare_digest(token, config.ADMIN_KEY):
        raise APIError(403, "admin_required", "Admin API key required")
    return request.app.state.mm.operator


OperatorDep = Annotated[str, Depends(require_admin)]
