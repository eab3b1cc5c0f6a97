"""
1.0 Main Orchestrator Module
Wires the monitor components together and exposes the two entry points.

Entry points:
- handle_not_found(request): called by the web server for each 404
- run_sitemap_check(): called by the scheduler tick (twice daily)

Usage:
    python -m site_health_monitor.main --check-sitemap
    python -m site_health_monitor.main --serve
    python -m site_health_monitor.main --config /etc/shm/config.json --check-sitemap
"""

import argparse
import logging
import os
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from site_health_monitor.config import CONFIG_FILE_PATH, FileConfigProvider, MonitorConfig
from site_health_monitor.link_monitor import BrokenLinkMonitor, RequestContext
from site_health_monitor.models import ErrorEvent
from site_health_monitor.notifier import EmailNotifier
from site_health_monitor.rate_limiter import build_policy
from site_health_monitor.scheduler import SitemapCheckScheduler
from site_health_monitor.sitemap_checker import SitemapHealthChecker

logger = logging.getLogger(__name__)

LOG_FILE = "site_health_monitor.log"


def setup_logging(level: str = "INFO", log_file: Optional[str] = LOG_FILE) -> None:
    """1.1 Log to console and, optionally, a file."""
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.insert(0, logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )


class SiteHealthMonitor:
    """
    2.0 Facade over the broken-link pipeline, sitemap checker and scheduler.

    Both pipelines share one notifier and one rate-limit policy.
    """

    def __init__(
        self,
        config_provider: Callable[[], MonitorConfig],
        mailer=None,
        policy=None,
        session=None,
    ):
        """
        2.1 Build the components.

        Args:
            config_provider: Callable returning the current MonitorConfig
            mailer: Optional mail transport (default: SMTP from config)
            policy: Optional rate-limit policy (default: from config)
            session: Optional requests.Session for the sitemap fetch
        """
        self.config_provider = config_provider
        initial = config_provider()

        if policy is None:
            policy = build_policy(
                initial.rate_limit_policy,
                cooldown_seconds=initial.cooldown_seconds,
                state_file=initial.rate_limit_state_file,
            )
        self.policy = policy

        self.notifier = EmailNotifier(config_provider, mailer=mailer)
        self.link_monitor = BrokenLinkMonitor(config_provider, self.notifier, policy=policy)
        self.sitemap_checker = SitemapHealthChecker(
            config_provider, self.notifier, policy=policy, session=session
        )
        self.scheduler = SitemapCheckScheduler(
            self.sitemap_checker.check,
            interval_hours=initial.check_interval_hours,
        )

    def handle_not_found(self, request: RequestContext, is_not_found: bool = True) -> Optional[ErrorEvent]:
        """2.2 Entry point for the web server's not-found signal."""
        return self.link_monitor.handle_not_found(request, is_not_found=is_not_found)

    def run_sitemap_check(self, cancel_event: Optional[threading.Event] = None) -> Optional[ErrorEvent]:
        """2.3 Entry point for the scheduler tick."""
        return self.sitemap_checker.check(cancel_event)

    def start(self) -> bool:
        """2.4 Start the twice-daily sitemap check (no-op if already started)."""
        return self.scheduler.start()

    def stop(self) -> bool:
        """2.5 Cancel the sitemap check timer."""
        return self.scheduler.stop()

    def status(self) -> Dict[str, Any]:
        """
        2.6 Monitoring status summary.

        Returns:
            Dict with broken_link_detection, sitemap_check and
            next_sitemap_check_at (ISO timestamp or None)
        """
        config = self.config_provider()
        next_run = self.scheduler.next_run_at
        return {
            "broken_link_detection": "active",
            "sitemap_check": "active" if config.sitemap_monitoring_enabled else "inactive",
            "sitemap_url": config.sitemap_url or None,
            "next_sitemap_check_at": next_run.isoformat() if next_run else None,
            "rate_limit_policy": getattr(self.policy, "name", type(self.policy).__name__),
        }


def main(argv=None) -> int:
    """
    3.0 Process entry point.

    --check-sitemap runs one check and exits (for cron).
    --serve runs the twice-daily scheduler until interrupted.
    """
    parser = argparse.ArgumentParser(description="Site health monitor")
    parser.add_argument("--config", default=CONFIG_FILE_PATH, help="Path to config.json")
    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument("--check-sitemap", action="store_true", help="Run one sitemap check and exit")
    mode.add_argument("--serve", action="store_true", help="Run the sitemap check scheduler")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"))
    parser.add_argument("--log-file", default=LOG_FILE, help="Log file path ('' to disable)")
    args = parser.parse_args(argv)

    setup_logging(args.log_level, args.log_file or None)

    logger.info("=" * 60)
    logger.info("Starting site health monitor")
    logger.info(f"Run timestamp: {datetime.now(timezone.utc).isoformat()}")
    logger.info("=" * 60)

    monitor = SiteHealthMonitor(FileConfigProvider(args.config))

    if args.check_sitemap:
        event = monitor.run_sitemap_check()
        status = "error reported" if event else "no alert"
        logger.info(f"Sitemap check completed: {status}")
        return 0

    monitor.start()
    logger.info(f"Monitoring status: {monitor.status()}")
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        monitor.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
