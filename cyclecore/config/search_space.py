"""Search space models and YAML loader.

The search space is the small cross-product definition the generator
walks lazily: keywords × sampled locations × sampled devices × selected
platforms. The YAML file looks like::

    keywords: ["running shoes", "trail shoes"]
    location_sample_size: 2
    device_sample_size: 1
    platform_sample_size: 1
    locations:
      - {city: Berlin, country: DE}
    devices:
      - {name: desktop-chrome, device_type: desktop}
    platforms:
      - {name: Google, base_url: "https://www.google.com/search", priority: 1.0}
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)


class DeviceType(str, Enum):
    """Device classes a task can be executed as."""

    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"


class Location(BaseModel):
    """Geographic location a task is attributed to."""

    model_config = {"frozen": True}

    city: str = Field(..., min_length=1)
    country: str = Field(..., min_length=2, max_length=2)
    latitude: float | None = None
    longitude: float | None = None


class DeviceProfile(BaseModel):
    """Opaque device identity; fingerprint details are attached externally."""

    model_config = {"frozen": True}

    name: str = Field(..., min_length=1)
    device_type: DeviceType = DeviceType.DESKTOP
    viewport_width: int | None = Field(default=None, ge=1)
    viewport_height: int | None = Field(default=None, ge=1)


class Platform(BaseModel):
    """A search platform tasks are issued against."""

    model_config = {"frozen": True}

    name: str = Field(..., min_length=1)
    base_url: str = Field(..., min_length=1)
    query_param: str = "q"
    priority: float = Field(default=1.0, ge=0.0)
    enabled: bool = True
    supports_mobile: bool = True

    def supports(self, device_type: DeviceType) -> bool:
        """Return ``True`` if the platform can serve *device_type*."""
        if device_type == DeviceType.DESKTOP:
            return True
        return self.supports_mobile


class SearchSpace(BaseModel):
    """Cross-product definition walked by the search space generator."""

    keywords: list[str] = Field(..., min_length=1)
    locations: list[Location] = Field(..., min_length=1)
    devices: list[DeviceProfile] = Field(..., min_length=1)
    platforms: list[Platform] = Field(..., min_length=1)
    location_sample_size: int = Field(default=10, ge=1)
    device_sample_size: int = Field(default=3, ge=1)
    platform_sample_size: int = Field(default=5, ge=1)

    @model_validator(mode="after")
    def _check_enabled_platforms(self) -> "SearchSpace":
        if not self.enabled_platforms:
            raise ValueError("at least one platform must be enabled")
        return self

    @property
    def enabled_platforms(self) -> list[Platform]:
        return [p for p in self.platforms if p.enabled]

    @property
    def effective_location_sample(self) -> int:
        return min(self.location_sample_size, len(self.locations))

    @property
    def effective_device_sample(self) -> int:
        return min(self.device_sample_size, len(self.devices))

    @property
    def effective_platform_sample(self) -> int:
        return min(self.platform_sample_size, len(self.enabled_platforms))


DEFAULT_SEARCH_SPACE = SearchSpace(
    keywords=["example query"],
    locations=[
        Location(city="New York", country="US", latitude=40.7128, longitude=-74.0060),
        Location(city="London", country="GB", latitude=51.5074, longitude=-0.1278),
        Location(city="Berlin", country="DE", latitude=52.5200, longitude=13.4050),
    ],
    devices=[
        DeviceProfile(name="desktop-1920", device_type=DeviceType.DESKTOP,
                      viewport_width=1920, viewport_height=1080),
        DeviceProfile(name="mobile-390", device_type=DeviceType.MOBILE,
                      viewport_width=390, viewport_height=844),
        DeviceProfile(name="tablet-820", device_type=DeviceType.TABLET,
                      viewport_width=820, viewport_height=1180),
    ],
    platforms=[
        Platform(name="Google", base_url="https://www.google.com/search", priority=1.0),
        Platform(name="Bing", base_url="https://www.bing.com/search", priority=0.8),
        Platform(name="DuckDuckGo", base_url="https://duckduckgo.com/", priority=0.6),
    ],
    location_sample_size=3,
    device_sample_size=2,
    platform_sample_size=2,
)


def load_search_space(yaml_path: str) -> SearchSpace:
    """Parse a search space YAML file into a validated SearchSpace.

    Falls back to ``DEFAULT_SEARCH_SPACE`` when the file is missing,
    unparseable, or fails validation.
    """
    path = Path(yaml_path)

    if not path.exists():
        logger.warning("Search space file not found at %s — using built-in defaults", yaml_path)
        return DEFAULT_SEARCH_SPACE

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        logger.error("Failed to parse search space YAML at %s: %s", yaml_path, exc)
        return DEFAULT_SEARCH_SPACE

    if not isinstance(raw, dict):
        logger.warning("Search space YAML at %s is not a mapping — using built-in defaults", yaml_path)
        return DEFAULT_SEARCH_SPACE

    try:
        return SearchSpace.model_validate(raw)
    except Exception as exc:
        logger.error("Invalid search space at %s: %s — using built-in defaults", yaml_path, exc)
        return DEFAULT_SEARCH_SPACE
