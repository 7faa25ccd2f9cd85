"""
Service layer exceptions.
"""


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, service_id: str | None = None):
        self.service_id = service_id
        super().__init__(message)


class UpstreamFailure(ServiceError):
    """A fetch/compute function failed. Carries the cache key when known."""

    def __init__(
        self,
        message: str,
        service_id: str | None = None,
        key: str | None = None,
    ):
        self.key = key
        super().__init__(message, service_id=service_id)


class UpstreamTimeout(UpstreamFailure):
    """Upstream call timed out."""

    def __init__(self, service_id: str | None, timeout: float, key: str | None = None):
        self.timeout = timeout
        target = f"service '{service_id}'" if service_id else f"key '{key}'"
        super().__init__(
            f"Request to {target} timed out after {timeout}s",
            service_id=service_id,
            key=key,
        )


class StoreUnavailable(ServiceError):
    """Backing store (database, counter store) could not be reached."""

    pass


class UnknownCategoryError(ServiceError):
    """Rate limit category has no configured rule."""

    def __init__(self, category: str):
        self.category = category
        super().__init__(f"No rate limit rule configured for category '{category}'")


class UnknownProviderError(ServiceError):
    """Health monitor has no configuration for the provider."""

    def __init__(self, provider: str):
        super().__init__(f"Provider '{provider}' is not monitored", service_id=provider)


class ProviderUnavailableError(ServiceError):
    """Health monitor reports the provider down, request short-circuited."""

    def __init__(self, provider: str, reason: str | None = None):
        self.reason = reason
        msg = f"Provider '{provider}' is unavailable"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, service_id=provider)


class RateLimitExceededError(ServiceError):
    """Rate limit exceeded."""

    def __init__(self, identity: str, category: str, retry_after: int):
        self.identity = identity
        self.category = category
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded for '{identity}' in category '{category}', "
            f"retry after {retry_after}s"
        )
