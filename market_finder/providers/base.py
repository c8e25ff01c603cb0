"""
Provider base interfaces and abstract classes.

Every geo-data provider exposes the same coroutine, `fetch_nearby`, which
returns the provider's raw records for a center point and radius. Providers
raise `ProviderError` subclasses; the aggregator is responsible for turning
those into empty results.
"""

from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Any
from dataclasses import dataclass
from enum import Enum
import time
import logging


class ProviderStatus(Enum):
    """Provider health status."""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass
class HealthCheckResult:
    """Result of a provider health check."""
    status: ProviderStatus
    latency_ms: float
    message: str
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 1),
            "message": self.message,
            "details": self.details or {},
        }


class Provider(ABC):
    """Base provider interface.

    Subclasses implement `fetch_nearby`; the default health check issues
    a tiny query and times it.
    """

    # Point used by the default health check (Union Square, NYC)
    HEALTH_CHECK_POINT = (40.7359, -73.9911)

    def __init__(self):
        """Initialize the provider."""
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    async def fetch_nearby(self, lat: float, lng: float, radius_m: int) -> List[Dict[str, Any]]:
        """Fetch raw provider records around a point.

        Args:
            lat: Center latitude
            lng: Center longitude
            radius_m: Search radius in meters

        Returns:
            List of raw provider records

        Raises:
            ProviderError: If the upstream call fails
        """
        pass

    async def health_check(self) -> HealthCheckResult:
        """Check provider health with a small radius query.

        Returns:
            Health check result
        """
        start_time = time.time()
        lat, lng = self.HEALTH_CHECK_POINT
        try:
            records = await self.fetch_nearby(lat, lng, 250)
            latency_ms = (time.time() - start_time) * 1000
            return HealthCheckResult(
                status=ProviderStatus.HEALTHY,
                latency_ms=latency_ms,
                message=f"Provider {self.__class__.__name__} is healthy",
                details={"records": len(records)},
            )
        except ProviderError as e:
            latency_ms = (time.time() - start_time) * 1000
            return HealthCheckResult(
                status=ProviderStatus.UNHEALTHY,
                latency_ms=latency_ms,
                message=f"Provider health check failed: {e}",
                details={"error": str(e), **e.details},
            )


class ProviderError(Exception):
    """Base exception for provider errors."""

    def __init__(self, message: str, provider_name: Optional[str] = None, details: Optional[Dict] = None):
        """Initialize provider error.

        Args:
            message: Error message
            provider_name: Name of the provider that failed
            details: Additional error details
        """
        super().__init__(message)
        self.provider_name = provider_name
        self.details = details or {}


class ProviderUnavailableError(ProviderError):
    """Raised on network failure, non-success status or an unusable body."""
    pass


class ProviderRateLimitError(ProviderError):
    """Raised when provider rate limit is exceeded."""
    pass


class ProviderTimeoutError(ProviderError):
    """Raised when provider request times out."""
    pass


class MalformedRecordError(ValueError):
    """A single raw record lacks required geometry or identity."""
    pass


class CacheWriteError(Exception):
    """The cache storage backend rejected a write."""
    pass
