"""
1.0 Broken Link Monitor
Turns not-found requests into internal broken-link alerts.

Pipeline per request:
1. Not a not-found response -> ignore
2. Static asset (CSS, JS, images, fonts) -> ignore
3. No referrer, or referrer from another host -> ignore (bots, typos, direct hits)
4. Build the event (URL, referrer, user agent, client IP)
5. Cooldown check keyed by the requested URL
6. Notify; release the cooldown key if delivery failed

Each request is processed at most once, even if the host framework raises
the not-found signal more than once for it.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Optional

from requests.structures import CaseInsensitiveDict

from site_health_monitor.config import MonitorConfig
from site_health_monitor.models import ErrorEvent
from site_health_monitor.rate_limiter import CooldownPolicy
from site_health_monitor.request_filters import (
    is_internal_referrer,
    is_static_asset,
    resolve_client_ip,
)

logger = logging.getLogger(__name__)


@dataclass
class RequestContext:
    """
    2.0 One inbound request, as seen by the monitor.

    The detection latch lives here, so it is scoped to a single request
    and never shared between requests.
    """
    scheme: str
    host: str
    path: str = "/"
    query: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    remote_addr: Optional[str] = None
    detection_done: bool = False

    def __post_init__(self):
        self.headers = CaseInsensitiveDict(self.headers or {})

    @property
    def url(self) -> str:
        """2.1 Effective requested URL: scheme + host + path + query."""
        url = f"{self.scheme}://{self.host}{self.path or '/'}"
        if self.query:
            url = f"{url}?{self.query}"
        return url

    @property
    def referrer(self) -> Optional[str]:
        value = (self.headers.get("Referer") or "").strip()
        return value or None

    @property
    def user_agent(self) -> Optional[str]:
        value = (self.headers.get("User-Agent") or "").strip()
        return value or None

    @classmethod
    def from_wsgi_environ(cls, environ: Dict[str, str]) -> "RequestContext":
        """
        2.2 Build a context from a WSGI environ.

        HTTP_* keys become headers (HTTP_USER_AGENT -> User-Agent).
        """
        headers = {}
        for key, value in environ.items():
            if key.startswith("HTTP_") and isinstance(value, str):
                headers[key[5:].replace("_", "-").title()] = value

        scheme = environ.get("wsgi.url_scheme") or ("https" if environ.get("HTTPS") == "on" else "http")
        host = environ.get("HTTP_HOST") or environ.get("SERVER_NAME", "")
        path = f"{environ.get('SCRIPT_NAME', '')}{environ.get('PATH_INFO', '')}" or "/"

        return cls(
            scheme=scheme,
            host=host,
            path=path,
            query=environ.get("QUERY_STRING", ""),
            headers=headers,
            remote_addr=environ.get("REMOTE_ADDR"),
        )


class BrokenLinkMonitor:
    """
    3.0 Request-time decision function for internal broken links.

    Safe to call from many request threads at once: the only shared state
    is the rate-limit policy's store, which is check-and-set.
    """

    def __init__(
        self,
        config_provider: Callable[[], MonitorConfig],
        notifier,
        policy=None,
    ):
        """
        Args:
            config_provider: Callable returning the current MonitorConfig
            notifier: Object with notify(event) -> DeliveryResult
            policy: Rate-limit policy (default: one-hour cooldown per URL)
        """
        self.config_provider = config_provider
        self.notifier = notifier
        self.policy = policy if policy is not None else CooldownPolicy()

    def classify(self, request: RequestContext, site_url: str = "") -> Optional[ErrorEvent]:
        """
        3.1 Decide whether a not-found request is an internal broken link.

        Returns:
            ErrorEvent if reportable, None otherwise
        """
        requested_url = request.url

        if is_static_asset(requested_url):
            logger.debug(f"Ignoring static asset 404: {requested_url}")
            return None

        referrer = request.referrer
        if not referrer:
            logger.debug(f"Ignoring 404 without referrer: {requested_url}")
            return None

        site = site_url or requested_url
        if not is_internal_referrer(referrer, site):
            logger.debug(f"Ignoring 404 from external referrer {referrer}: {requested_url}")
            return None

        return ErrorEvent.broken_link(
            url=requested_url,
            referrer=referrer,
            user_agent=request.user_agent,
            client_ip=resolve_client_ip(request.headers, request.remote_addr),
        )

    def handle_not_found(self, request: RequestContext, is_not_found: bool = True) -> Optional[ErrorEvent]:
        """
        3.2 Handle the not-found signal for one request.

        Never raises; a failure here must not change the 404 response.

        Args:
            request: The request context (carries the per-request latch)
            is_not_found: Whether the response is a not-found response

        Returns:
            The ErrorEvent handed to the notifier, or None if filtered or suppressed
        """
        if not is_not_found:
            return None
        if request.detection_done:
            logger.debug(f"Not-found already handled for this request: {request.url}")
            return None
        request.detection_done = True

        try:
            config = self.config_provider()
            event = self.classify(request, site_url=config.site_url)
            if event is None:
                return None

            key = event.fingerprint()
            if not self.policy.try_acquire(key):
                logger.debug(f"Suppressed repeat broken link alert (cooldown): {event.url}")
                return None

            delivered = False
            try:
                delivered = self.notifier.notify(event).delivered
            finally:
                if not delivered:
                    self.policy.release(key)

            if delivered:
                logger.info(f"Internal broken link reported: {event.url} (referrer: {event.referrer})")
            return event

        except Exception:
            logger.exception(f"Unexpected error while handling 404 for {request.url}")
            return None
