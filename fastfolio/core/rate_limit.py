"""IP based rate limiting (SlowAPI); honours X-Forwarded-For behind a proxy."""
from fastapi import Request

from slowapi import Limiter

CHECKOUT_RATE_LIMIT = "20/minute"


def get_client_ip(request: Request) -> str:
    """Real client IP behind a proxy (Render, Nginx)."""
    xff = request.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "127.0.0.1"


limiter = Limiter(key_func=get_client_ip)
