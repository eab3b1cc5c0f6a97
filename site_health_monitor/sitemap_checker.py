"""
1.0 Sitemap Health Checker
Verifies that the configured sitemap URL is reachable and alerts when it is not.

Key features:
- Single streamed GET under an overall deadline (30s) and redirect limit (5 hops)
- Only the status line and headers are read, never the body
- TLS certificate verification always on
- Optional retry on transient failures (429, 500, 502, 503, 504)
- Transport failures and non-200 responses are both "unreachable",
  distinguished by error code and message
- One cooldown window per checker, shared policy with the link monitor
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Callable, Optional, Tuple, Union

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from site_health_monitor.config import MonitorConfig
from site_health_monitor.models import ErrorEvent, ErrorKind, fingerprint
from site_health_monitor.rate_limiter import CooldownPolicy

logger = logging.getLogger(__name__)

# 1.1 Transport error codes
ERROR_TIMEOUT = "timeout"
ERROR_SSL = "ssl_error"
ERROR_CONNECTION = "connection_error"
ERROR_TOO_MANY_REDIRECTS = "too_many_redirects"
ERROR_INVALID_URL = "invalid_url"
ERROR_REQUEST = "request_error"

# Sitemap alerts share one cooldown key per checker, whatever the URL
SITEMAP_COOLDOWN_KEY = fingerprint(ErrorKind.SITEMAP_UNREACHABLE, "sitemap")

FetchOutcome = Optional[Tuple[Union[str, int], str]]


def create_session(user_agent: str, max_retries: int = 0, max_redirects: int = 5) -> requests.Session:
    """
    2.0 Create a requests Session with retry and redirect limits.

    Retry strategy (when max_retries > 0):
    - Retries on: 429 (rate limit), 500, 502, 503, 504 (server errors)
    - Backoff: 1s, 2s, 4s between retries (exponential)
    - Also retries on connection errors

    Returns:
        Configured requests.Session object
    """
    session = requests.Session()

    retry_strategy = Retry(
        total=max_retries,
        backoff_factor=1,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["HEAD", "GET"],
        raise_on_status=False,  # Final status is classified by the checker
    )

    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)

    session.max_redirects = max_redirects
    session.headers.update({"User-Agent": user_agent})

    return session


def _get(session: requests.Session, url: str, timeout: float) -> requests.Response:
    # stream=True: only the status line and headers are read, never the body
    return session.get(url, timeout=timeout, verify=True, allow_redirects=True, stream=True)


def _close_late_response(future) -> None:
    """Close a response that arrived after the deadline was already reported."""
    if future.cancelled() or future.exception() is not None:
        return
    future.result().close()


def fetch_status(session: requests.Session, url: str, timeout: float) -> FetchOutcome:
    """
    3.0 Fetch a URL and classify the outcome.

    The timeout is a hard cap on the whole fetch (redirects and retries
    included), not only on each socket read. An overrun is reported as
    a timeout; the abandoned request finishes on its worker thread and
    its response is closed there.

    Args:
        session: Session to fetch with
        url: URL to fetch
        timeout: Overall deadline in seconds

    Returns:
        None on HTTP 200, otherwise (error_code, error_message) where
        error_code is the HTTP status (int) or a transport code (str)
    """
    if not url.startswith(("http://", "https://")):
        return ERROR_INVALID_URL, f"Invalid sitemap URL: {url}"

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sitemap-fetch")
    future = executor.submit(_get, session, url, timeout)
    executor.shutdown(wait=False)

    try:
        response = future.result(timeout=timeout)
    except FuturesTimeoutError:
        future.add_done_callback(_close_late_response)
        return ERROR_TIMEOUT, f"No response within {timeout}s"
    except requests.exceptions.Timeout as e:
        return ERROR_TIMEOUT, f"Timed out after {timeout}s: {e}"
    except requests.exceptions.SSLError as e:
        return ERROR_SSL, str(e)
    except requests.exceptions.ConnectionError as e:
        return ERROR_CONNECTION, str(e)
    except requests.exceptions.TooManyRedirects as e:
        return ERROR_TOO_MANY_REDIRECTS, str(e)
    except (requests.exceptions.InvalidURL, requests.exceptions.MissingSchema,
            requests.exceptions.InvalidSchema) as e:
        return ERROR_INVALID_URL, str(e)
    except requests.exceptions.RequestException as e:
        return ERROR_REQUEST, str(e)

    try:
        if response.status_code == 200:
            return None
        return response.status_code, response.reason or ""
    finally:
        response.close()


class SitemapHealthChecker:
    """
    4.0 Scheduled check of the configured sitemap URL.

    Runs on the scheduler's thread (or an external cron), never inline with
    request handling, since the fetch can block for the full timeout.
    """

    def __init__(
        self,
        config_provider: Callable[[], MonitorConfig],
        notifier,
        policy=None,
        session: Optional[requests.Session] = None,
    ):
        """
        Args:
            config_provider: Callable returning the current MonitorConfig
            notifier: Object with notify(event) -> DeliveryResult
            policy: Rate-limit policy (default: one-hour cooldown)
            session: Optional preconfigured session; by default one is built
                from the config on every check
        """
        self.config_provider = config_provider
        self.notifier = notifier
        self.policy = policy if policy is not None else CooldownPolicy()
        self.session = session

    def check(self, cancel_event: Optional[threading.Event] = None) -> Optional[ErrorEvent]:
        """
        4.1 Run one sitemap check.

        Args:
            cancel_event: If set by the time the fetch returns, nothing is emitted

        Returns:
            The ErrorEvent handed to the notifier, or None
        """
        try:
            config = self.config_provider()
            sitemap_url = config.sitemap_url.strip()
            if not sitemap_url:
                logger.debug("No sitemap URL configured; sitemap monitoring disabled")
                return None

            logger.info(f"Checking sitemap: {sitemap_url}")
            session = self.session or create_session(
                config.user_agent, config.max_retries, config.max_redirects
            )
            try:
                outcome = fetch_status(session, sitemap_url, config.fetch_timeout)
            finally:
                if self.session is None:
                    session.close()

            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"Sitemap check cancelled; discarding result for {sitemap_url}")
                return None

            if outcome is None:
                logger.info(f"Sitemap reachable: {sitemap_url}")
                return None

            error_code, error_message = outcome
            logger.error(f"Sitemap unreachable: {sitemap_url} ({error_code}: {error_message})")

            if not self.policy.try_acquire(SITEMAP_COOLDOWN_KEY):
                logger.info("Sitemap alert suppressed (cooldown active)")
                return None

            event = ErrorEvent.sitemap_unreachable(
                url=sitemap_url,
                error_code=error_code,
                error_message=error_message,
            )
            delivered = False
            try:
                delivered = self.notifier.notify(event).delivered
            finally:
                if not delivered:
                    self.policy.release(SITEMAP_COOLDOWN_KEY)
            return event

        except Exception:
            logger.exception("Unexpected error during sitemap check")
            return None
