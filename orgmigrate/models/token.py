"""OAuth credential models."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from dateutil import parser as date_parser


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    parsed = date_parser.parse(value)
    # Stored as naive UTC throughout
    return parsed.replace(tzinfo=None) if parsed.tzinfo else parsed


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class OrgCredentials:
    """What the credential store hands back for an org."""
    access_token: str
    refresh_token: Optional[str]
    instance_url: str
    org_type: str = "production"  # production, sandbox
    expires_at: Optional[datetime] = None


@dataclass
class Token:
    """A usable access token for one org."""
    org_id: str
    access_token: str
    instance_url: str
    expires_at: Optional[datetime] = None
    stale: bool = False
    warning: Optional[str] = None

    def __repr__(self) -> str:
        return f"Token(org_id={self.org_id!r}, instance_url={self.instance_url!r}, stale={self.stale})"


@dataclass
class TokenRecord:
    """
    Token state for one org. Only the TokenManager mutates it.

    The refresh token is opaque here; encryption at rest belongs to the
    credential store.
    """
    org_id: str
    access_token: str
    refresh_token: Optional[str]
    instance_url: str
    org_type: str = "production"
    expires_at: Optional[datetime] = None
    last_refresh_attempt: Optional[datetime] = None
    last_refresh_success: Optional[datetime] = None
    consecutive_failures: int = 0
    requires_reconnect: bool = False
    last_error: Optional[str] = None
    connected_at: datetime = field(default_factory=datetime.utcnow)

    def __repr__(self) -> str:
        return (
            f"TokenRecord(org_id={self.org_id!r}, expires_at={self.expires_at!r}, "
            f"consecutive_failures={self.consecutive_failures}, "
            f"requires_reconnect={self.requires_reconnect})"
        )

    def expires_within(self, seconds: float, now: Optional[datetime] = None) -> bool:
        """True if unknown expiry or expiring within ``seconds``."""
        if self.expires_at is None:
            return True
        now = now or datetime.utcnow()
        return self.expires_at - now <= timedelta(seconds=seconds)

    def to_token(self, stale: bool = False, warning: Optional[str] = None) -> Token:
        return Token(
            org_id=self.org_id,
            access_token=self.access_token,
            instance_url=self.instance_url,
            expires_at=self.expires_at,
            stale=stale,
            warning=warning,
        )

    def health(self) -> Dict[str, Any]:
        """Metadata only; no token values."""
        return {
            "org_id": self.org_id,
            "org_type": self.org_type,
            "expires_at": _iso(self.expires_at),
            "last_refresh_attempt": _iso(self.last_refresh_attempt),
            "last_refresh_success": _iso(self.last_refresh_success),
            "consecutive_failures": self.consecutive_failures,
            "requires_reconnect": self.requires_reconnect,
            "last_error": self.last_error,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Full persisted form, including token values (for the credential store only)."""
        data = self.health()
        data.update({
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "instance_url": self.instance_url,
            "connected_at": _iso(self.connected_at),
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenRecord":
        return cls(
            org_id=data["org_id"],
            access_token=data.get("access_token", ""),
            refresh_token=data.get("refresh_token"),
            instance_url=data.get("instance_url", ""),
            org_type=data.get("org_type", "production"),
            expires_at=_parse_dt(data.get("expires_at")),
            last_refresh_attempt=_parse_dt(data.get("last_refresh_attempt")),
            last_refresh_success=_parse_dt(data.get("last_refresh_success")),
            consecutive_failures=data.get("consecutive_failures", 0),
            requires_reconnect=data.get("requires_reconnect", False),
            last_error=data.get("last_error"),
            connected_at=_parse_dt(data.get("connected_at")) or datetime.utcnow(),
        )

    @classmethod
    def from_credentials(cls, org_id: str, credentials: OrgCredentials) -> "TokenRecord":
        return cls(
            org_id=org_id,
            access_token=credentials.access_token,
            refresh_token=credentials.refresh_token,
            instance_url=credentials.instance_url,
            org_type=credentials.org_type,
            expires_at=credentials.expires_at,
        )
