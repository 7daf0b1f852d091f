"""Proxy data models for the proxy pool."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from urllib.parse import quote

from cyclecore.config.proxy_sources import ProxyCandidate, ProxyType
from cyclecore.config.search_space import DeviceType


class RotationStrategy(str, Enum):
    """How ``ProxyPool.next`` picks among eligible records."""

    ROUND_ROBIN = "round_robin"
    LEAST_USED = "least_used"
    BEST_RELIABILITY = "best_reliability"
    WEIGHTED_RANDOM = "weighted_random"


@dataclass
class ProxyRecord:
    """A single egress identity with reliability and usage tracking."""

    id: str
    host: str
    port: int
    proxy_type: ProxyType = ProxyType.DATACENTER
    scheme: str = "http"
    username: str | None = None
    password: str | None = None
    country: str | None = None
    city: str | None = None
    reliability: float = 1.0
    success_count: int = 0
    failure_count: int = 0
    usage_count: int = 0
    avg_response_ms: float = 0.0
    last_used: float | None = None  # time.monotonic()
    is_active: bool = False
    reactivate_at: float | None = None  # time.monotonic()

    @classmethod
    def from_candidate(cls, candidate: ProxyCandidate) -> "ProxyRecord":
        return cls(
            id=f"{candidate.proxy_type.value}-{candidate.host}-{candidate.port}",
            host=candidate.host,
            port=candidate.port,
            proxy_type=candidate.proxy_type,
            scheme=candidate.scheme,
            username=candidate.username,
            password=candidate.password,
            country=candidate.country,
            city=candidate.city,
        )

    @property
    def url(self) -> str:
        """Proxy URL including credentials, suitable for httpx / Playwright."""
        if self.username:
            auth = quote(self.username, safe="")
            if self.password:
                auth += ":" + quote(self.password, safe="")
            return f"{self.scheme}://{auth}@{self.host}:{self.port}"
        return f"{self.scheme}://{self.host}:{self.port}"

    @property
    def redacted_url(self) -> str:
        """Proxy URL safe for logs and metrics."""
        if self.username:
            return f"{self.scheme}://***@{self.host}:{self.port}"
        return f"{self.scheme}://{self.host}:{self.port}"

    @property
    def location_key(self) -> tuple[str | None, str | None]:
        return (self.country, self.city)

    def supports_device(self, device_type: DeviceType | str) -> bool:
        """Mobile devices need a mobile or residential exit; others take any."""
        if DeviceType(device_type) == DeviceType.MOBILE:
            return self.proxy_type in (ProxyType.MOBILE, ProxyType.RESIDENTIAL)
        return True
