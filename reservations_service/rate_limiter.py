# reservations_service/rate_limiter.py
from typing import Any, Dict, Optional

from fastapi import Depends, Request

from common.auth import get_optional_user_claims
from common.rate_limit import SlidingWindowLimiter, client_ip

reservation_limiter = SlidingWindowLimiter(
    max_requests=20,
    window_seconds=60,
    detail="Too many reservation operations in a short time",
)


def reservation_rate_limiter(
    request: Request,
    claims: Optional[Dict[str, Any]] = Depends(get_optional_user_claims),
):
    """
    Rate limit reservation writes per authenticated user, or per client IP
    for guests.
    """
    if claims is not None:
        key = f"user:{claims['user_id']}"
    else:
        key = f"ip:{client_ip(request)}"
    reservation_limiter.hit(key)
