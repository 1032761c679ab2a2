"""Engine settings."""

import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

from .exceptions import ConfigurationError


@dataclass
class EngineSettings:
    """Tunables shared by the client, token manager and engines."""

    # Platform
    api_version: str = "61.0"
    production_login_url: str = "https://login.salesforce.com"
    sandbox_login_url: str = "https://test.salesforce.com"
    client_id: str = ""
    client_secret: Optional[str] = None
    redirect_uri: str = "http://localhost:8000/api/orgs/oauth/callback"

    # Requests
    timeout: float = 30.0
    max_concurrent_per_org: int = 5
    max_requests_per_second: float = 10.0
    max_request_retries: int = 3
    request_backoff_seconds: float = 1.0
    api_usage_warning_ratio: float = 0.9

    # Loads
    collection_chunk_size: int = 200  # sObject collections hard limit
    bulk_threshold: int = 2000
    bulk_poll_interval: float = 2.0
    bulk_timeout: float = 600.0

    # Tokens
    refresh_margin_seconds: int = 300
    refresh_interval_seconds: int = 1800
    failure_threshold: int = 5
    default_token_lifetime_seconds: int = 7200

    # Validation
    large_selection_threshold: int = 200

    # Identity cache
    identity_cache_ttl: int = 300
    identity_cache_max_size: int = 1000

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation, without secrets."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data.pop("client_secret", None)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineSettings":
        """Create from dictionary representation, ignoring unknown keys."""
        known = {f.name: f for f in fields(cls)}
        values = {}
        for key, value in data.items():
            if key not in known:
                continue
            values[key] = _coerce(key, value, known[key].default)
        return cls(**values)

    @classmethod
    def from_env(cls, prefix: str = "ORGMIGRATE_") -> "EngineSettings":
        """
        Build settings from environment variables.

        ``ORGMIGRATE_MAX_CONCURRENT_PER_ORG=3`` sets ``max_concurrent_per_org``.
        """
        data = {}
        for f in fields(cls):
            env_name = f"{prefix}{f.name.upper()}"
            if env_name in os.environ:
                data[f.name] = os.environ[env_name]
        return cls.from_dict(data)

    def login_url(self, org_type: str) -> str:
        """Token endpoint host for an org type (production or sandbox)."""
        if (org_type or "production").lower() == "sandbox":
            return self.sandbox_login_url
        return self.production_login_url


def _coerce(name: str, value: Any, default: Any) -> Any:
    if value is None or isinstance(default, str) or default is None:
        return value
    try:
        if isinstance(default, bool):
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for setting '{name}': {value!r}") from e
    return value
