# users_service/rate_limiter.py
from fastapi import Request

from common.rate_limit import SlidingWindowLimiter, client_ip

account_limiter = SlidingWindowLimiter(
    max_requests=10,
    window_seconds=60,
    detail="Too many requests from this IP, please slow down",
)


def ip_rate_limiter(request: Request):
    """Rate limit register and login per client IP and path."""
    account_limiter.hit(f"{client_ip(request)}:{request.url.path}")
