"""
1.0 Notifier
Formats error events into email alerts and delivers them over SMTP.

Key features:
- Declarative field table: each row is rendered only if the event has it
- HTML body with a plain-text alternative
- Recipient falls back to the admin address; invalid addresses skip delivery
- Delivery failures are logged and reported, never raised
"""

import html
import logging
import re
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Dict, Optional, Tuple

from site_health_monitor.config import MonitorConfig
from site_health_monitor.models import DeliveryResult, ErrorEvent

logger = logging.getLogger(__name__)

SMTP_TIMEOUT_SECONDS = 30
EMAIL_PATTERN = re.compile(r"^[^@\s<>]+@[^@\s<>]+\.[^@\s<>]+$")

# 1.1 Field table: (label, accessor). Order is the order in the message.
EVENT_FIELDS: Tuple[Tuple[str, Callable[[ErrorEvent], Any]], ...] = (
    ("Error Type", lambda event: event.kind.label),
    ("URL", lambda event: event.url),
    ("Referrer", lambda event: event.referrer),
    ("User Agent", lambda event: event.user_agent),
    ("IP Address", lambda event: event.client_ip),
    ("Error Code", lambda event: event.error_code),
    ("Error Message", lambda event: event.error_message),
    ("Time", lambda event: event.detected_at.strftime("%Y-%m-%d %H:%M:%S %Z")),
)

CELL_STYLE = "padding: 8px; border: 1px solid #ddd;"
FOOTER = "This is an automated message from Site Health Monitor."


@dataclass(frozen=True)
class AlertMessage:
    subject: str
    html_body: str
    text_body: str


def is_valid_email(address: Optional[str]) -> bool:
    """Basic syntax check, not a deliverability check."""
    return bool(address) and EMAIL_PATTERN.match(address.strip()) is not None


def event_rows(event: ErrorEvent):
    """2.0 Yield (label, value) for every populated field of the event."""
    for label, accessor in EVENT_FIELDS:
        value = accessor(event)
        if value is None or value == "":
            continue
        yield label, str(value)


def format_message(event: ErrorEvent, site_name: str) -> AlertMessage:
    """
    2.1 Build subject and bodies for an event.

    Args:
        event: The detected error
        site_name: Site name shown in the subject line

    Returns:
        AlertMessage with subject, HTML body and plain-text body
    """
    rows = list(event_rows(event))
    subject = f"[{site_name}] Site Health Alert: {event.kind.label}"

    html_rows = "".join(
        f'<tr><td style="{CELL_STYLE} font-weight: bold;">{html.escape(label)}</td>'
        f'<td style="{CELL_STYLE}">{html.escape(value)}</td></tr>'
        for label, value in rows
    )
    html_body = (
        "<html><body>"
        "<h2>Site Health Alert</h2>"
        f"<p>An error has been detected on {html.escape(site_name)}:</p>"
        f'<table style="border-collapse: collapse; width: 100%; max-width: 600px;">{html_rows}</table>'
        f"<p><small>{FOOTER}</small></p>"
        "</body></html>"
    )

    width = max(len(label) for label, _ in rows)
    text_lines = [f"An error has been detected on {site_name}:", ""]
    text_lines.extend(f"{label.ljust(width)} : {value}" for label, value in rows)
    text_lines.extend(["", FOOTER])

    return AlertMessage(subject=subject, html_body=html_body, text_body="\n".join(text_lines))


class SmtpMailer:
    """
    3.0 Sends one message per call over SMTP.

    Port 465 (or use_ssl) connects with implicit TLS; port 587 upgrades with
    STARTTLS; anything else is plain SMTP (e.g. a local relay on port 25).
    """

    def __init__(self, host: str, port: int, username: str = "", password: str = "",
                 use_ssl: bool = False, timeout: float = SMTP_TIMEOUT_SECONDS):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_ssl = use_ssl
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: MonitorConfig) -> "SmtpMailer":
        return cls(
            host=config.smtp_host,
            port=config.smtp_port,
            username=config.smtp_username,
            password=config.smtp_password,
            use_ssl=config.smtp_use_ssl,
        )

    def send(self, recipient: str, subject: str, html_body: str, text_body: str,
             headers: Optional[Dict[str, str]] = None) -> None:
        """
        3.1 Send a message.

        Raises:
            smtplib.SMTPException, OSError: If the server rejects or is unreachable.
        """
        msg = MIMEMultipart("alternative")
        msg["To"] = recipient
        msg["Subject"] = subject
        for name, value in (headers or {}).items():
            msg[name] = value
        msg.attach(MIMEText(text_body, "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))

        logger.debug(f"Connecting to SMTP server: {self.host}:{self.port}")
        if self.use_ssl or self.port == 465:
            server = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        else:
            server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)

        with server:
            if not (self.use_ssl or self.port == 465) and self.port == 587:
                server.starttls()
            if self.username:
                server.login(self.username, self.password)
            server.send_message(msg)


class EmailNotifier:
    """
    4.0 Delivers one email per accepted event.

    Configuration is read on every call. No batching, queueing or retry.
    """

    def __init__(self, config_provider: Callable[[], MonitorConfig], mailer=None):
        """
        Args:
            config_provider: Callable returning the current MonitorConfig
            mailer: Object with send(recipient, subject, html_body, text_body, headers).
                Defaults to an SmtpMailer built from the current config.
        """
        self.config_provider = config_provider
        self.mailer = mailer

    def resolve_recipient(self, config: MonitorConfig) -> Optional[str]:
        """4.1 Configured recipient, else the admin address. None if neither is valid."""
        address = (config.recipient_email or config.admin_email or "").strip()
        if not is_valid_email(address):
            return None
        return address

    def notify(self, event: ErrorEvent) -> DeliveryResult:
        """
        4.2 Format and send an event.

        Returns:
            DeliveryResult; skipped=True when no valid recipient is configured
        """
        config = self.config_provider()
        recipient = self.resolve_recipient(config)
        if recipient is None:
            logger.warning(
                f"No valid notification address configured; "
                f"skipping {event.kind.label} alert for {event.url}"
            )
            return DeliveryResult(delivered=False, skipped=True, error="invalid recipient")

        message = format_message(event, config.site_name)
        headers = {}
        if is_valid_email(config.sender_email):
            headers["From"] = f"{config.site_name} <{config.sender_email}>"

        mailer = self.mailer or SmtpMailer.from_config(config)
        try:
            mailer.send(recipient, message.subject, message.html_body, message.text_body, headers)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send {event.kind.label} alert to {recipient}: {e}")
            return DeliveryResult(delivered=False, recipient=recipient, error=str(e))

        logger.info(f"{event.kind.label} alert sent to {recipient} for {event.url}")
        return DeliveryResult(delivered=True, recipient=recipient)
