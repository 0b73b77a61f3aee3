"""
Source Registry Module
======================

Manages ingestion configuration loaded from a YAML file: fetch defaults,
ops thresholds, per-retailer trust policy, and scheduled ingestion sources.
Every key has a built-in default so the system runs without a file.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_USER_AGENT = "CatalogIngest/1.0 (+offer-refresh)"
DEFAULT_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"

# Query parameters that mark a search-results landing page on most storefronts
DEFAULT_SEARCH_QUERY_PARAMS = ["q", "query", "search", "search_query"]
DEFAULT_SEARCH_PATH_PATTERNS = [r"^/s/?$", r"^/search(/|$)", r"/search\.php$"]

DEFAULT_BLOCK_MARKERS = [
    "robot check",
    "are you a robot",
    "enter the characters you see below",
    "type the characters you see in this image",
    "verify you are a human",
    "unusual traffic from your computer network",
    "checking your browser before accessing",
    "pardon our interruption",
    "request has been blocked",
]

DEFAULT_PLACEHOLDER_IMAGE_MARKERS = [
    "/images/placeholder",
    "no-image",
    "noimage",
    "image-coming-soon",
]


@dataclass
class GlobalConfig:
    """Fetch and queue defaults."""

    user_agent: str = DEFAULT_USER_AGENT
    accept: str = DEFAULT_ACCEPT
    request_timeout: float = 12.0
    fetch_concurrency: int = 4
    max_attempts: int = 5
    refresh_window_hours: int = 20
    placeholder_image_markers: list[str] = field(
        default_factory=lambda: list(DEFAULT_PLACEHOLDER_IMAGE_MARKERS)
    )

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> GlobalConfig:
        """Create from dictionary, using defaults for missing values."""
        if data is None:
            return cls()
        return cls(
            user_agent=data.get("user_agent", DEFAULT_USER_AGENT),
            accept=data.get("accept", DEFAULT_ACCEPT),
            request_timeout=float(data.get("request_timeout", 12.0)),
            fetch_concurrency=int(data.get("fetch_concurrency", 4)),
            max_attempts=int(data.get("max_attempts", 5)),
            refresh_window_hours=int(data.get("refresh_window_hours", 20)),
            placeholder_image_markers=list(
                data.get("placeholder_image_markers", DEFAULT_PLACEHOLDER_IMAGE_MARKERS)
            ),
        )


@dataclass
class OpsConfig:
    """Thresholds used by the ops snapshot and recovery actions."""

    recovery_limit: int = 200
    stale_queued_minutes: int = 120
    stuck_running_minutes: int = 45
    freshness_window_hours: int = 24
    freshness_slo_percent: float = 95.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> OpsConfig:
        """Create from dictionary, using defaults for missing values."""
        if data is None:
            return cls()
        return cls(
            recovery_limit=int(data.get("recovery_limit", 200)),
            stale_queued_minutes=int(data.get("stale_queued_minutes", 120)),
            stuck_running_minutes=int(data.get("stuck_running_minutes", 45)),
            freshness_window_hours=int(data.get("freshness_window_hours", 24)),
            freshness_slo_percent=float(data.get("freshness_slo_percent", 95.0)),
        )


@dataclass
class RetailerPolicy:
    """Trust policy for one retailer: what its search and block pages look like."""

    slug: str
    domains: list[str] = field(default_factory=list)
    currency: str = "USD"
    search_query_params: list[str] = field(
        default_factory=lambda: list(DEFAULT_SEARCH_QUERY_PARAMS)
    )
    search_path_patterns: list[str] = field(
        default_factory=lambda: list(DEFAULT_SEARCH_PATH_PATTERNS)
    )
    block_markers: list[str] = field(default_factory=lambda: list(DEFAULT_BLOCK_MARKERS))

    _path_patterns: list[re.Pattern[str]] | None = field(
        default=None, repr=False, compare=False
    )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetailerPolicy:
        """Create from dictionary; extra markers and patterns extend the defaults."""
        return cls(
            slug=data["slug"],
            domains=data.get("domains", []),
            currency=data.get("currency", "USD"),
            search_query_params=_merge(
                DEFAULT_SEARCH_QUERY_PARAMS, data.get("search_query_params", [])
            ),
            search_path_patterns=_merge(
                DEFAULT_SEARCH_PATH_PATTERNS, data.get("search_path_patterns", [])
            ),
            block_markers=_merge(DEFAULT_BLOCK_MARKERS, data.get("block_markers", [])),
        )

    @property
    def path_patterns(self) -> list[re.Pattern[str]]:
        """Compiled search path patterns."""
        if self._path_patterns is None:
            self._path_patterns = [
                re.compile(p, re.IGNORECASE) for p in self.search_path_patterns
            ]
        return self._path_patterns


@dataclass
class ScheduledSourceConfig:
    """A source whose refresh job the scheduler enqueues on a fixed cadence."""

    slug: str
    name: str
    kind: str = "retailer"
    default_trust: str = "retailer"
    schedule_every_minutes: int = 60
    job_kind: str = "offers.detail_refresh.bulk"
    job_payload: dict[str, Any] = field(default_factory=dict)
    idempotency_prefix: str = ""
    priority: int = 0
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScheduledSourceConfig:
        """Create from dictionary."""
        slug = data["slug"]
        return cls(
            slug=slug,
            name=data.get("name", slug),
            kind=data.get("kind", "retailer"),
            default_trust=data.get("default_trust", "retailer"),
            schedule_every_minutes=max(1, int(data.get("schedule_every_minutes", 60))),
            job_kind=data.get("job_kind", "offers.detail_refresh.bulk"),
            job_payload=data.get("job_payload", {}),
            idempotency_prefix=data.get("idempotency_prefix", f"schedule:{slug}"),
            priority=int(data.get("priority", 0)),
            enabled=data.get("enabled", True),
        )


def _merge(defaults: list[str], extra: list[str]) -> list[str]:
    merged = list(defaults)
    for item in extra:
        if item not in merged:
            merged.append(item)
    return merged


class SourceRegistry:
    """
    Registry for ingestion configuration.

    Loads definitions from a YAML file and provides lookups for retailer
    policies and scheduled sources.
    """

    def __init__(self) -> None:
        self._sources: dict[str, ScheduledSourceConfig] = {}
        self._retailers: dict[str, RetailerPolicy] = {}
        self._global_config: GlobalConfig = GlobalConfig()
        self._ops_config: OpsConfig = OpsConfig()
        self._config_path: Path | None = None

    @property
    def global_config(self) -> GlobalConfig:
        """Get global configuration."""
        return self._global_config

    @property
    def ops(self) -> OpsConfig:
        """Get ops thresholds."""
        return self._ops_config

    @property
    def config_path(self) -> Path | None:
        """Path the registry was loaded from, if any."""
        return self._config_path

    def load_config(self, config_path: Path | str) -> None:
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to the sources.yaml file
        """
        config_path = Path(config_path).expanduser().resolve()
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        self.load_dict(data)
        self._config_path = config_path

    def load_dict(self, data: dict[str, Any]) -> None:
        """Load configuration from an already-parsed mapping."""
        self._global_config = GlobalConfig.from_dict(data.get("global"))
        self._ops_config = OpsConfig.from_dict(data.get("ops"))

        self._retailers.clear()
        for retailer_data in data.get("retailers", []):
            policy = RetailerPolicy.from_dict(retailer_data)
            self._retailers[policy.slug] = policy

        self._sources.clear()
        for source_data in data.get("sources", []):
            source = ScheduledSourceConfig.from_dict(source_data)
            self._sources[source.slug] = source

    def get_retailer_policy(self, slug: str | None) -> RetailerPolicy:
        """
        Get the trust policy for a retailer.

        Unknown retailers get the default policy so the gate still applies.
        """
        if slug and slug in self._retailers:
            return self._retailers[slug]
        return RetailerPolicy(slug=slug or "unknown")

    def get_retailer_policy_by_host(self, host: str) -> RetailerPolicy | None:
        """Find a retailer policy whose domains cover a hostname."""
        host = host.lower()
        for policy in self._retailers.values():
            for domain in policy.domains:
                if host == domain or host.endswith("." + domain):
                    return policy
        return None

    def list_retailers(self) -> list[RetailerPolicy]:
        """Get all configured retailer policies."""
        return list(self._retailers.values())

    def get_source(self, slug: str) -> ScheduledSourceConfig | None:
        """Get a scheduled source by slug."""
        return self._sources.get(slug)

    def list_sources(self) -> list[ScheduledSourceConfig]:
        """Get all scheduled sources."""
        return list(self._sources.values())

    def list_enabled_sources(self) -> list[ScheduledSourceConfig]:
        """Get all enabled scheduled sources."""
        return [s for s in self._sources.values() if s.enabled]


# Global registry instance
_default_registry: SourceRegistry | None = None


def get_default_registry() -> SourceRegistry:
    """
    Get the default source registry instance.

    Loads configuration from the path specified in SOURCES_CONFIG_PATH
    environment variable, or falls back to config/sources.yaml.

    Returns:
        The global SourceRegistry instance
    """
    global _default_registry

    if _default_registry is None:
        _default_registry = SourceRegistry()

        config_path = os.environ.get("SOURCES_CONFIG_PATH")
        if config_path:
            path = Path(config_path)
        else:
            project_root = Path(__file__).resolve().parents[2]
            path = project_root / "config" / "sources.yaml"

        if path.exists():
            _default_registry.load_config(path)

    return _default_registry


def reset_default_registry() -> None:
    """Reset the default registry (useful for testing)."""
    global _default_registry
    _default_registry = None
