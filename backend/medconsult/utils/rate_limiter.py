"""
Simple memory-based rate limiter, keyed by caller.
Per-process only; a multi-worker deployment needs a shared store.
"""
import time
from fastapi import Request, HTTPException
from typing import Dict, Tuple

# In-memory storage: {(scope, caller): (window_start, count)}
_rate_limit_store: Dict[Tuple[str, str], Tuple[float, int]] = {}


def reset_rate_limits():
    _rate_limit_store.clear()


def rate_limit(requests: int, window: int):
    """
    Dependency for rate limiting on the `user-id` header (client IP as fallback).
    Example: Depends(rate_limit(requests=5, window=60))
    """
    def limiter(request: Request):
        caller = request.headers.get("user-id") or (request.client.host if request.client else "unknown")
        key = (request.url.path, caller)
        now = time.time()

        if key not in _rate_limit_store:
            _rate_limit_store[key] = (now, 1)
            return True

        last_ts, count = _rate_limit_store[key]

        # Reset window if expired
        if now - last_ts > window:
            _rate_limit_store[key] = (now, 1)
            return True

        if count >= requests:
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded. Try again in {int(window - (now - last_ts))} seconds."
            )

        _rate_limit_store[key] = (last_ts, count + 1)
        return True

    return limiter
