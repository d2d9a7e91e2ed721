"""
Configuration loading.

Settings come from a YAML file (see ``config.example.yaml``) layered
over defaults, and secrets come from the environment, optionally via a
``.env`` file.  Every section maps onto a dataclass so the full set of
options and their defaults is visible in one place.

Environment variables read here:

``GITHUB_TOKEN``, ``GITHUB_API_URL``
    GitHub API credentials and base URL.
``LINKEDIN_SCRAPER_URL``, ``LINKEDIN_SCRAPER_API_KEY``
    Profile scraping service; the endpoint is only registered when the
    URL is set.
``VAPI_API_KEY``, ``VAPI_BASE_URL``
    Voice interview provider; only registered when the key is set.
``HIREFUNNEL_LOG_LEVEL``
    Overrides ``logging.level``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Type, TypeVar

import yaml  # type: ignore
from dotenv import load_dotenv

from .batch.coordinator import BatchConfig
from .errors import ValidationError
from .governor.resource_governor import GovernorConfig
from .pool.connection_pool import EndpointConfig
from .queue import QueueConfig
from .rank.scoring import ScoringThresholds

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"

T = TypeVar("T")


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = None
    format: str = LOG_FORMAT


@dataclass
class InterviewConfig:
    enabled: bool = True
    max_retries: int = 3
    poll_interval: float = 10.0
    max_call_duration: int = 1800
    call_grace_period: float = 60.0


def _build(cls: Type[T], data: Optional[Dict[str, Any]], section: str) -> T:
    data = data or {}
    if not isinstance(data, dict):
        raise ValidationError(f"Config section '{section}' must be a mapping")
    known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
    unknown = set(data) - known
    if unknown:
        raise ValidationError(f"Unknown option(s) in '{section}': {', '.join(sorted(unknown))}")
    return cls(**data)  # type: ignore[call-arg]


def default_endpoints() -> Dict[str, EndpointConfig]:
    """External services whose credentials are present in the environment."""
    endpoints: Dict[str, EndpointConfig] = {}

    github_headers = {"Accept": "application/vnd.github+json", "User-Agent": "hirefunnel"}
    token = os.getenv("GITHUB_TOKEN")
    if token:
        github_headers["Authorization"] = f"Bearer {token}"
    endpoints["github"] = EndpointConfig(
        name="github",
        base_url=os.getenv("GITHUB_API_URL", "https://api.github.com"),
        headers=github_headers,
        rate_limit_requests=5000 if token else 60,
        rate_limit_window=3600.0,
        health_path="/rate_limit",
    )

    linkedin_url = os.getenv("LINKEDIN_SCRAPER_URL")
    if linkedin_url:
        headers = {"User-Agent": "hirefunnel"}
        key = os.getenv("LINKEDIN_SCRAPER_API_KEY")
        if key:
            headers["Authorization"] = f"Bearer {key}"
        endpoints["linkedin"] = EndpointConfig(
            name="linkedin",
            base_url=linkedin_url,
            headers=headers,
            max_connections=5,
            rate_limit_requests=100,
            rate_limit_window=3600.0,
        )

    vapi_key = os.getenv("VAPI_API_KEY")
    if vapi_key:
        endpoints["voice"] = EndpointConfig(
            name="voice",
            base_url=os.getenv("VAPI_BASE_URL", "https://api.vapi.ai"),
            headers={"Authorization": f"Bearer {vapi_key}"},
            max_connections=5,
            rate_limit_requests=50,
            rate_limit_window=60.0,
        )
    return endpoints


@dataclass
class FunnelConfig:
    governor: GovernorConfig = field(default_factory=GovernorConfig)
    endpoints: List[EndpointConfig] = field(default_factory=lambda: list(default_endpoints().values()))
    batch: BatchConfig = field(default_factory=BatchConfig)
    thresholds: ScoringThresholds = field(default_factory=ScoringThresholds)
    interview: InterviewConfig = field(default_factory=InterviewConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    cache_ttl: float = 3600.0
    debug: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]] = None) -> "FunnelConfig":
        data = dict(data or {})
        endpoints = default_endpoints()
        for name, options in (data.pop("endpoints", None) or {}).items():
            options = dict(options or {})
            base = endpoints.get(name)
            if base is not None:
                headers = {**base.headers, **(options.pop("headers", None) or {})}
                merged = {f.name: getattr(base, f.name) for f in fields(EndpointConfig)}
                merged.update(options, headers=headers, name=name)
                endpoints[name] = _build(EndpointConfig, merged, f"endpoints.{name}")
            else:
                if "base_url" not in options:
                    raise ValidationError(f"Endpoint '{name}' needs a base_url")
                endpoints[name] = _build(EndpointConfig, {**options, "name": name}, f"endpoints.{name}")

        config = cls(
            governor=_build(GovernorConfig, data.pop("governor", None), "governor"),
            endpoints=list(endpoints.values()),
            batch=_build(BatchConfig, data.pop("batch", None), "batch"),
            thresholds=_build(ScoringThresholds, data.pop("thresholds", None), "thresholds"),
            interview=_build(InterviewConfig, data.pop("interview", None), "interview"),
            queue=_build(QueueConfig, data.pop("queue", None), "queue"),
            logging=_build(LoggingConfig, data.pop("logging", None), "logging"),
            cache_ttl=float(data.pop("cache_ttl", 3600.0)),
            debug=bool(data.pop("debug", False)),
        )
        if data:
            raise ValidationError(f"Unknown config section(s): {', '.join(sorted(data))}")
        env_level = os.getenv("HIREFUNNEL_LOG_LEVEL")
        if env_level:
            config.logging.level = env_level
        return config

    @classmethod
    def from_yaml(cls, path: Optional[str] = None) -> "FunnelConfig":
        """Load ``.env`` and then the YAML file at ``path`` (if any)."""
        load_dotenv()
        if not path:
            return cls.from_dict({})
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValidationError(f"{path} must contain a YAML mapping")
        logger.debug("Loaded configuration from %s", path)
        return cls.from_dict(data)

    def endpoint(self, name: str) -> Optional[EndpointConfig]:
        for endpoint in self.endpoints:
            if endpoint.name == name:
                return endpoint
        return None


def configure_logging(config: LoggingConfig) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if config.file:
        handlers.append(logging.FileHandler(config.file, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, config.level.upper(), logging.INFO),
        format=config.format,
        handlers=handlers,
        force=True,
    )
