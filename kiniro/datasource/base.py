"""
Base data source interface.
"""

from abc import ABC, abstractmethod

from kiniro.services.client import UpstreamClient


class BaseDataSource(ABC):
    """
    Abstract base class for upstream data sources.

    All data sources should:
    - Use UpstreamClient for HTTP requests (timeouts, error mapping)
    - Return opaque JSON payloads; callers decide what to cache
    - Raise UpstreamFailure rather than returning partial data
    """

    def __init__(self, client: UpstreamClient):
        self.client = client

    @property
    @abstractmethod
    def service_id(self) -> str:
        """Unique identifier for this data source."""
        ...

    @abstractmethod
    def is_configured(self) -> bool:
        """Check if the data source is properly configured."""
        ...
