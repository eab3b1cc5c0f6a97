"""
SMOKE TESTS - Fast, Deterministic, No Network

Run: pytest tests/test_smoke.py
Time: < 2 seconds

These tests cover the pure building blocks: request filters, event model,
rate limiting, configuration and message formatting.
"""

import json
import smtplib
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))
sys.path.insert(0, str(Path(__file__).parent))

from fakes import FakeClock, RecordingMailer  # noqa: E402
from site_health_monitor.config import (  # noqa: E402
    FileConfigProvider,
    MonitorConfig,
    load_config,
    validate_config,
)
from site_health_monitor.models import ErrorEvent, ErrorKind, UNKNOWN_IP  # noqa: E402
from site_health_monitor.notifier import EmailNotifier, format_message, is_valid_email  # noqa: E402
from site_health_monitor.rate_limiter import (  # noqa: E402
    CooldownPolicy,
    InMemoryRateLimitStore,
    JsonFileRateLimitStore,
    NoRateLimitPolicy,
    build_policy,
)
from site_health_monitor.request_filters import (  # noqa: E402
    STATIC_EXTENSIONS,
    is_internal_referrer,
    is_static_asset,
    resolve_client_ip,
)


@pytest.fixture(autouse=True)
def clear_env_overrides(monkeypatch):
    for key in ("SHM_RECIPIENT_EMAIL", "SHM_SITEMAP_URL", "SMTP_PASSWORD"):
        monkeypatch.delenv(key, raising=False)


# =============================================================================
# 1. STATIC ASSET CLASSIFICATION
# =============================================================================

@pytest.mark.parametrize("extension", sorted(STATIC_EXTENSIONS))
def test_static_extensions_any_case(extension):
    assert is_static_asset(f"https://example.com/assets/file.{extension}")
    assert is_static_asset(f"https://example.com/assets/file.{extension.upper()}")


def test_static_asset_ignores_query_string():
    assert is_static_asset("https://example.com/style.css?v=2")
    assert is_static_asset("/style.css?v=2")


@pytest.mark.parametrize("url", [
    "https://example.com/.css",
    "https://example.com/file.css/",
    "https://example.com/assets/bundle.min.js//",
])
def test_static_asset_edge_paths(url):
    assert is_static_asset(url)


@pytest.mark.parametrize("url", [
    "https://example.com/about",
    "https://example.com/missing-page",
    "https://example.com/",
    "https://example.com",
    "https://example.com/report.pdf",
    "https://example.com/page.html",
    "https://example.com/assets.css/page",
    "https://example.com/docs/",
    "https://example.com/archive.tar.gz",
    "",
])
def test_content_urls_are_not_static(url):
    assert not is_static_asset(url)


# =============================================================================
# 2. REFERRER AUTHENTICATION
# =============================================================================

def test_same_host_is_internal():
    assert is_internal_referrer("https://example.com/blog", "https://example.com")


def test_host_comparison_ignores_case_scheme_and_port():
    assert is_internal_referrer("http://EXAMPLE.com:8080/blog", "https://example.COM/")


@pytest.mark.parametrize("referrer, site", [
    ("https://other.com/blog", "https://example.com"),
    ("https://www.example.com/blog", "https://example.com"),
    ("https://blog.example.com/", "https://example.com"),
    ("", "https://example.com"),
    ("https://example.com/blog", ""),
    ("not a url", "https://example.com"),
    ("/relative/path", "https://example.com"),
    ("http://[invalid", "https://example.com"),
])
def test_external_empty_or_unparsable_referrers_rejected(referrer, site):
    assert not is_internal_referrer(referrer, site)


# =============================================================================
# 3. CLIENT IP EXTRACTION
# =============================================================================

def test_cdn_header_has_priority():
    headers = {"CF-Connecting-IP": "1.2.3.4", "X-Forwarded-For": "5.6.7.8, 9.9.9.9"}
    assert resolve_client_ip(headers) == "1.2.3.4"


def test_forwarded_for_takes_first_entry():
    assert resolve_client_ip({"X-Forwarded-For": "10.0.0.1, 10.0.0.2"}) == "10.0.0.1"


def test_header_names_are_case_insensitive():
    assert resolve_client_ip({"x-real-ip": "192.168.1.5"}) == "192.168.1.5"


def test_invalid_candidates_fall_through_to_peer_address():
    headers = {"CF-Connecting-IP": "garbage", "X-Forwarded-For": "unknown, 1.1.1.1"}
    assert resolve_client_ip(headers, remote_addr="203.0.113.9") == "203.0.113.9"


def test_ipv6_is_accepted():
    assert resolve_client_ip({"X-Real-IP": "2001:db8::1"}) == "2001:db8::1"


@pytest.mark.parametrize("headers", [
    {},
    {"X-Forwarded-For": "not-an-ip"},
    {"CF-Connecting-IP": "999.1.1.1", "REMOTE_ADDR": ""},
])
def test_unknown_when_nothing_validates(headers):
    assert resolve_client_ip(headers) == UNKNOWN_IP


def test_resolve_client_ip_does_not_mutate_headers():
    headers = {"X-Forwarded-For": "10.0.0.1, 10.0.0.2"}
    resolve_client_ip(headers, remote_addr="127.0.0.1")
    assert headers == {"X-Forwarded-For": "10.0.0.1, 10.0.0.2"}


# =============================================================================
# 4. ERROR EVENTS
# =============================================================================

def test_broken_link_event_fields():
    event = ErrorEvent.broken_link(
        url="https://example.com/missing-page",
        referrer="https://example.com/blog",
        user_agent="Mozilla/5.0",
        client_ip="1.2.3.4",
    )
    assert event.kind is ErrorKind.INTERNAL_BROKEN_LINK
    assert event.error_code is None and event.error_message is None
    assert event.detected_at.tzinfo is not None


def test_sitemap_event_rejects_request_fields():
    with pytest.raises(ValueError):
        ErrorEvent(kind=ErrorKind.SITEMAP_UNREACHABLE, url="https://example.com/sitemap.xml",
                   referrer="https://example.com/")


def test_broken_link_event_rejects_fetch_fields():
    with pytest.raises(ValueError):
        ErrorEvent(kind=ErrorKind.INTERNAL_BROKEN_LINK, url="https://example.com/x", error_code=500)


def test_events_are_immutable():
    event = ErrorEvent.sitemap_unreachable("https://example.com/sitemap.xml", 500, "Internal Server Error")
    with pytest.raises(AttributeError):
        event.url = "https://example.com/other.xml"


def test_fingerprint_depends_on_kind_and_url():
    a = ErrorEvent.broken_link("https://example.com/a", "https://example.com/")
    b = ErrorEvent.broken_link("https://example.com/a", "https://example.com/other")
    c = ErrorEvent.broken_link("https://example.com/c", "https://example.com/")
    assert a.fingerprint() == b.fingerprint()
    assert a.fingerprint() != c.fingerprint()


# =============================================================================
# 5. RATE LIMITING
# =============================================================================

def test_cooldown_suppresses_until_window_elapses():
    clock = FakeClock()
    policy = CooldownPolicy(InMemoryRateLimitStore(clock=clock), cooldown_seconds=3600)

    assert policy.try_acquire("key")
    assert not policy.try_acquire("key")
    assert policy.try_acquire("other-key")

    clock.advance(3599)
    assert not policy.try_acquire("key")
    clock.advance(1)
    assert policy.try_acquire("key")


def test_release_allows_immediate_retry():
    policy = CooldownPolicy(InMemoryRateLimitStore(clock=FakeClock()))
    assert policy.try_acquire("key")
    policy.release("key")
    assert policy.try_acquire("key")


def test_no_rate_limit_policy_always_allows():
    policy = NoRateLimitPolicy()
    assert all(policy.try_acquire("key") for _ in range(5))


def test_acquire_is_atomic_across_threads():
    store = InMemoryRateLimitStore()
    barrier = threading.Barrier(16)
    results = []

    def worker():
        barrier.wait()
        results.append(store.acquire("same-url", 60))

    threads = [threading.Thread(target=worker) for _ in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1


def test_json_store_survives_restart(tmp_path):
    clock = FakeClock()
    state_file = tmp_path / "state" / "rate_limit.json"

    first = JsonFileRateLimitStore(str(state_file), clock=clock)
    assert first.acquire("key", 3600)
    assert state_file.exists()

    second = JsonFileRateLimitStore(str(state_file), clock=clock)
    assert not second.acquire("key", 3600)
    clock.advance(3600)
    assert second.acquire("key", 3600)


@pytest.mark.parametrize("contents", ["{not json", "[]", "null", "42", "\"text\""])
def test_json_store_ignores_corrupt_file(tmp_path, contents):
    state_file = tmp_path / "rate_limit.json"
    state_file.write_text(contents)
    store = JsonFileRateLimitStore(str(state_file), clock=FakeClock())
    assert store.acquire("key", 60)
    assert json.loads(state_file.read_text()) == {"key": FakeClock().now + 60}


def test_policy_built_over_non_object_state_file(tmp_path):
    state_file = tmp_path / "rate_limit.json"
    state_file.write_text("[]")
    policy = build_policy("cooldown", 3600, state_file=str(state_file), clock=FakeClock())
    assert policy.try_acquire("key")
    assert not policy.try_acquire("key")


def test_clear_drops_all_keys():
    store = InMemoryRateLimitStore(clock=FakeClock())
    store.acquire("a", 60)
    store.acquire("b", 60)
    store.clear()
    assert not store.is_active("a") and not store.is_active("b")


def test_build_policy_from_name(tmp_path):
    assert isinstance(build_policy("none"), NoRateLimitPolicy)
    policy = build_policy("cooldown", cooldown_seconds=60, state_file=str(tmp_path / "s.json"))
    assert isinstance(policy, CooldownPolicy)
    assert isinstance(policy.store, JsonFileRateLimitStore)
    assert policy.cooldown_seconds == 60


# =============================================================================
# 6. CONFIG
# =============================================================================

def test_defaults():
    config = MonitorConfig()
    assert config.cooldown_seconds == 3600
    assert config.fetch_timeout == 30
    assert config.max_redirects == 5
    assert config.check_interval_hours == 12
    assert not config.sitemap_monitoring_enabled


def test_load_config_from_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "admin_email": "admin@example.com",
        "sitemap_url": "https://example.com/sitemap.xml",
        "cooldown_seconds": 600,
    }))
    config = load_config(str(path))
    assert config.admin_email == "admin@example.com"
    assert config.sitemap_monitoring_enabled
    assert config.cooldown_seconds == 600


def test_shipped_config_is_valid():
    assert load_config(str(PROJECT_ROOT / "config.json")) is not None


def test_environment_overrides_file(tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"recipient_email": "file@example.com"}))
    monkeypatch.setenv("SHM_RECIPIENT_EMAIL", "env@example.com")
    monkeypatch.setenv("SMTP_PASSWORD", "secret")
    config = load_config(str(path))
    assert config.recipient_email == "env@example.com"
    assert config.smtp_password == "secret"


def test_missing_or_malformed_config_returns_none(tmp_path):
    assert load_config(str(tmp_path / "missing.json")) is None
    bad = tmp_path / "bad.json"
    bad.write_text("{")
    assert load_config(str(bad)) is None


@pytest.mark.parametrize("data", [
    [],
    {"cooldown_seconds": -1},
    {"cooldown_seconds": "3600"},
    {"rate_limit_policy": "per-request"},
    {"sitemap_url": "ftp://example.com/sitemap.xml"},
    {"smtp_use_ssl": "yes"},
    {"check_interval_hours": 0},
])
def test_validate_config_rejects(data):
    assert not validate_config(data)


def test_file_provider_rereads_and_keeps_last_good(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"sitemap_url": ""}))
    provider = FileConfigProvider(str(path))
    assert not provider().sitemap_monitoring_enabled

    path.write_text(json.dumps({"sitemap_url": "https://example.com/sitemap.xml"}))
    assert provider().sitemap_url == "https://example.com/sitemap.xml"

    path.write_text("{broken")
    assert provider().sitemap_url == "https://example.com/sitemap.xml"


def test_file_provider_defaults_without_file(tmp_path):
    provider = FileConfigProvider(str(tmp_path / "missing.json"))
    assert provider() == MonitorConfig()


def test_file_provider_reports_missing_file_once(tmp_path, caplog):
    provider = FileConfigProvider(str(tmp_path / "missing.json"))
    provider()
    first_records = len(caplog.records)
    assert first_records > 0

    for _ in range(50):
        assert provider() == MonitorConfig()
    assert len(caplog.records) == first_records


def test_file_provider_reports_broken_file_once_then_recovers(tmp_path, caplog):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"site_name": "Example Site"}))
    provider = FileConfigProvider(str(path))
    assert provider().site_name == "Example Site"

    path.write_text("{broken")
    caplog.clear()
    for _ in range(20):
        assert provider().site_name == "Example Site"
    assert len([r for r in caplog.records if r.levelname == "WARNING"]) == 1

    path.write_text(json.dumps({"site_name": "Renamed Site!"}))
    assert provider().site_name == "Renamed Site!"


# =============================================================================
# 7. MESSAGE FORMATTING
# =============================================================================

def test_broken_link_message_includes_request_fields_only():
    event = ErrorEvent.broken_link(
        url="https://example.com/missing-page",
        referrer="https://example.com/blog",
        user_agent="Mozilla/5.0",
        client_ip="1.2.3.4",
        detected_at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
    )
    message = format_message(event, "Example Site")

    assert message.subject == "[Example Site] Site Health Alert: 404 Error"
    for label in ("Error Type", "URL", "Referrer", "User Agent", "IP Address", "Time"):
        assert label in message.text_body
    assert "Error Code" not in message.text_body
    assert "Error Message" not in message.html_body
    assert "2024-05-01 12:00:00 UTC" in message.text_body


def test_sitemap_message_field_order():
    event = ErrorEvent.sitemap_unreachable("https://example.com/sitemap.xml", 500, "Internal Server Error")
    text = format_message(event, "Example Site").text_body

    positions = [text.index(label) for label in ("Error Type", "URL", "Error Code", "Error Message", "Time")]
    assert positions == sorted(positions)
    assert "Referrer" not in text
    assert "Sitemap Error" in text


def test_html_body_escapes_values():
    event = ErrorEvent.broken_link(
        url="https://example.com/<script>",
        referrer="https://example.com/",
        user_agent='"><img src=x>',
    )
    html_body = format_message(event, "A & B").html_body
    assert "<script>" not in html_body
    assert "&lt;script&gt;" in html_body
    assert "A &amp; B" in html_body


# =============================================================================
# 8. NOTIFIER
# =============================================================================

def _event():
    return ErrorEvent.sitemap_unreachable("https://example.com/sitemap.xml", 503, "Service Unavailable")


def test_notifier_sends_to_configured_recipient():
    mailer = RecordingMailer()
    config = MonitorConfig(recipient_email="ops@example.com", admin_email="admin@example.com",
                           site_name="Example Site")
    result = EmailNotifier(lambda: config, mailer=mailer).notify(_event())

    assert result.delivered and result.recipient == "ops@example.com"
    assert len(mailer.sent) == 1
    assert mailer.sent[0]["headers"]["From"] == "Example Site <admin@example.com>"


def test_notifier_falls_back_to_admin_email():
    mailer = RecordingMailer()
    config = MonitorConfig(admin_email="admin@example.com")
    result = EmailNotifier(lambda: config, mailer=mailer).notify(_event())
    assert result.recipient == "admin@example.com"


@pytest.mark.parametrize("recipient, admin", [
    ("not-an-email", ""),
    ("", ""),
    ("", "also bad@"),
])
def test_notifier_skips_invalid_recipient(recipient, admin):
    mailer = RecordingMailer()
    config = MonitorConfig(recipient_email=recipient, admin_email=admin)
    result = EmailNotifier(lambda: config, mailer=mailer).notify(_event())

    assert not result.delivered and result.skipped
    assert mailer.sent == []


def test_notifier_reports_delivery_failure_without_raising():
    mailer = RecordingMailer(error=smtplib.SMTPServerDisconnected("connection lost"))
    config = MonitorConfig(recipient_email="ops@example.com")
    result = EmailNotifier(lambda: config, mailer=mailer).notify(_event())

    assert not result.delivered and not result.skipped
    assert "connection lost" in result.error


def test_email_syntax_check():
    assert is_valid_email("ops@example.com")
    assert not is_valid_email("ops@example")
    assert not is_valid_email("ops example.com")
    assert not is_valid_email(None)
