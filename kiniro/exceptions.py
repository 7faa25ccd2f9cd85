"""
HTTP exceptions for the request-facing glue
"""

from fastapi import HTTPException, status

from kiniro.services.rate_limiter import RateLimitDecision


def rate_limit_headers(decision: RateLimitDecision) -> dict[str, str]:
    """Standard rate limit response headers for a decision"""
    headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(decision.reset_at_ms),
    }
    if not decision.success:
        headers["Retry-After"] = str(decision.retry_after_seconds)
    return headers


class TooManyRequestsError(HTTPException):
    """Rate limit rejection (429)"""

    def __init__(self, decision: RateLimitDecision):
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "Too many requests",
                "retryAfter": decision.retry_after_seconds,
                "limit": decision.limit,
                "remaining": decision.remaining,
            },
            headers=rate_limit_headers(decision),
        )


class ProviderUnavailableHTTPError(HTTPException):
    """Upstream provider down (503)"""

    def __init__(self, detail: str = "Provider unavailable"):
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)


class UpstreamHTTPError(HTTPException):
    """Upstream fetch failed (502)"""

    def __init__(self, detail: str = "Upstream request failed"):
        super().__init__(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)

