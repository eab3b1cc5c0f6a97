"""
Site Health Monitor - Source Package

Modules:
- config: Configuration loading and validation
- models: Error events and delivery results
- request_filters: Static asset, referrer and client IP checks
- rate_limiter: Cooldown store and rate-limit policies
- link_monitor: Broken internal link detection for not-found requests
- sitemap_checker: Periodic sitemap reachability check
- scheduler: Recurring timer for the sitemap check
- notifier: Email formatting and delivery
- main: Wiring and process entry point
"""

__version__ = "1.0.0"
