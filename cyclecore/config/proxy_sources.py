"""Proxy candidate models and loaders.

Candidates come from two places: a YAML file listing hosts with their type
and geography, and plain proxy URLs (``CYCLE_PROXY_ENDPOINTS``). Both are
normalised into ``ProxyCandidate`` before the pool probes them.
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from urllib.parse import unquote, urlparse

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class ProxyType(str, Enum):
    """Egress identity classes, in descending preference."""

    RESIDENTIAL = "residential"
    MOBILE = "mobile"
    DATACENTER = "datacenter"
    POOLED = "pooled"


class ProxyCandidate(BaseModel):
    """A proxy endpoint as configured, before probing."""

    host: str = Field(..., min_length=1)
    port: int = Field(..., ge=1, le=65535)
    username: str | None = None
    password: str | None = None
    scheme: str = "http"
    proxy_type: ProxyType = ProxyType.DATACENTER
    country: str | None = None
    city: str | None = None

    @classmethod
    def from_url(
        cls,
        raw_url: str,
        *,
        proxy_type: ProxyType = ProxyType.DATACENTER,
        country: str | None = None,
        city: str | None = None,
    ) -> "ProxyCandidate":
        """Parse ``scheme://[user:pass@]host:port`` into a candidate."""
        parsed = urlparse(raw_url)
        if not parsed.hostname or not parsed.port:
            raise ValueError(f"proxy URL must include host and port: {raw_url!r}")
        return cls(
            host=parsed.hostname,
            port=parsed.port,
            username=unquote(parsed.username) if parsed.username else None,
            password=unquote(parsed.password) if parsed.password else None,
            scheme=parsed.scheme.lower() if parsed.scheme else "http",
            proxy_type=proxy_type,
            country=country,
            city=city,
        )


def load_proxy_candidates(yaml_path: str) -> list[ProxyCandidate]:
    """Parse a proxies YAML file (``proxies:`` list) into candidates.

    Returns an empty list if the file is missing or malformed; invalid
    entries are logged and skipped.
    """
    path = Path(yaml_path)

    if not path.exists():
        logger.warning("Proxy sources file not found at %s — no file candidates", yaml_path)
        return []

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        logger.error("Failed to parse proxy sources YAML at %s: %s", yaml_path, exc)
        return []

    if not isinstance(raw, dict) or "proxies" not in raw:
        logger.warning("Proxy sources YAML missing 'proxies' key — no file candidates")
        return []

    candidates: list[ProxyCandidate] = []
    for index, entry in enumerate(raw["proxies"] or []):
        try:
            candidates.append(ProxyCandidate.model_validate(entry))
        except Exception as exc:
            logger.error("Invalid proxy entry #%d: %s — skipping", index, exc)

    return candidates


def collect_candidates(yaml_path: str, endpoints: list[str]) -> list[ProxyCandidate]:
    """Merge YAML candidates with URL endpoints, skipping unparseable URLs."""
    candidates = load_proxy_candidates(yaml_path)
    for raw_url in endpoints:
        try:
            candidates.append(ProxyCandidate.from_url(raw_url))
        except ValueError as exc:
            logger.error("Skipping proxy endpoint: %s", exc)
    return candidates
