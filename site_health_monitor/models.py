"""Data models for detected errors and notification delivery."""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union

UNKNOWN_IP = "Unknown"


class ErrorKind(Enum):
    """Kinds of problems the monitor reports."""
    INTERNAL_BROKEN_LINK = "internal_broken_link"
    SITEMAP_UNREACHABLE = "sitemap_unreachable"

    @property
    def label(self) -> str:
        return _KIND_LABELS[self]


_KIND_LABELS = {
    ErrorKind.INTERNAL_BROKEN_LINK: "404 Error",
    ErrorKind.SITEMAP_UNREACHABLE: "Sitemap Error",
}

_REQUEST_FIELDS = ("referrer", "user_agent", "client_ip")
_FETCH_FIELDS = ("error_code", "error_message")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def fingerprint(kind: ErrorKind, url: str) -> str:
    """Rate-limit key for a (kind, url) pair."""
    digest = hashlib.sha256(f"{kind.value}::{url}".encode("utf-8")).hexdigest()
    return f"{kind.value}:{digest[:32]}"


@dataclass(frozen=True)
class ErrorEvent:
    """
    One detected problem, built at detection time and handed to the notifier once.

    Broken-link events carry request details (referrer, user agent, client IP);
    sitemap events carry the fetch outcome (error code and message). Mixing
    the two raises ValueError.
    """
    kind: ErrorKind
    url: str
    referrer: Optional[str] = None
    user_agent: Optional[str] = None
    client_ip: Optional[str] = None
    error_code: Optional[Union[str, int]] = None
    error_message: Optional[str] = None
    detected_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self):
        if not isinstance(self.kind, ErrorKind):
            raise ValueError(f"Unknown error kind: {self.kind!r}")
        if not self.url:
            raise ValueError("ErrorEvent requires a url")
        if self.kind is ErrorKind.SITEMAP_UNREACHABLE:
            foreign = [name for name in _REQUEST_FIELDS if getattr(self, name) is not None]
        else:
            foreign = [name for name in _FETCH_FIELDS if getattr(self, name) is not None]
        if foreign:
            raise ValueError(f"{self.kind.label} events cannot carry: {', '.join(foreign)}")

    @classmethod
    def broken_link(
        cls,
        url: str,
        referrer: str,
        user_agent: Optional[str] = None,
        client_ip: str = UNKNOWN_IP,
        detected_at: Optional[datetime] = None,
    ) -> "ErrorEvent":
        return cls(
            kind=ErrorKind.INTERNAL_BROKEN_LINK,
            url=url,
            referrer=referrer,
            user_agent=user_agent,
            client_ip=client_ip or UNKNOWN_IP,
            detected_at=detected_at or _utcnow(),
        )

    @classmethod
    def sitemap_unreachable(
        cls,
        url: str,
        error_code: Union[str, int],
        error_message: Optional[str] = None,
        detected_at: Optional[datetime] = None,
    ) -> "ErrorEvent":
        return cls(
            kind=ErrorKind.SITEMAP_UNREACHABLE,
            url=url,
            error_code=error_code,
            error_message=error_message,
            detected_at=detected_at or _utcnow(),
        )

    def fingerprint(self) -> str:
        return fingerprint(self.kind, self.url)


@dataclass
class DeliveryResult:
    """Outcome of one notification attempt."""
    delivered: bool
    recipient: Optional[str] = None
    skipped: bool = False  # True when configuration prevented delivery
    error: Optional[str] = None
