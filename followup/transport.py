"""
CV Follow-up Mailer -- Email Transport

Delivers a rendered follow-up email to one recipient.

    send(recipient, template_data)   -> returns on success
                                        raises TransportError on failure
    verify_connection()              -> bool

Transports:
    SmtpTransport   - smtplib delivery through any SMTP relay, or SendGrid's
                      SMTP endpoint when provider = "sendgrid"
    LogTransport    - dry run: renders and logs, never sends
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from collections import deque
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import format_datetime, make_msgid
from typing import Any, Mapping

from .config import FollowupConfig, SenderInfo, SMTPSettings
from .errors import ConfigError, TransportError
from .template_engine import RenderedEmail, TemplateEngine

logger = logging.getLogger(__name__)

SENDGRID_SMTP_HOST = "smtp.sendgrid.net"
SENDGRID_SMTP_PORT = 587
SENDGRID_SMTP_USER = "apikey"

# Dry-run sends kept in memory for inspection.
DRY_RUN_HISTORY = 100


class EmailTransport:
    """Base class for follow-up email transports."""

    def __init__(self, engine: TemplateEngine | None = None, sender: SenderInfo | None = None):
        self.sender = sender or SenderInfo()
        self.engine = engine or TemplateEngine(sender=self.sender)

    def send(self, recipient: str, template_data: Mapping[str, Any]) -> None:
        raise NotImplementedError

    def verify_connection(self) -> bool:
        return True

    def _render(self, recipient: str, template_data: Mapping[str, Any]) -> RenderedEmail:
        if not recipient or "@" not in recipient:
            raise TransportError(f"Invalid recipient address: {recipient!r}")
        return self.engine.render_email(template_data)


# ---------------------------------------------------------------------------
# SMTP
# ---------------------------------------------------------------------------

class SmtpTransport(EmailTransport):
    """Send through an SMTP relay (plain SMTP or SendGrid)."""

    def __init__(
        self,
        smtp: SMTPSettings,
        sender: SenderInfo | None = None,
        engine: TemplateEngine | None = None,
    ):
        super().__init__(engine=engine, sender=sender)

        if smtp.provider == "sendgrid":
            if not smtp.api_key:
                raise ConfigError("EMAIL_API_KEY is required for the sendgrid provider")
            self.host = SENDGRID_SMTP_HOST
            self.port = SENDGRID_SMTP_PORT
            self.username = SENDGRID_SMTP_USER
            self.password = smtp.api_key
            self.use_tls = True
            self.use_ssl = False
        elif smtp.provider == "smtp":
            if not smtp.host:
                raise ConfigError("SMTP_HOST is required for the smtp provider")
            if smtp.username and not smtp.password:
                raise ConfigError("SMTP_PASS is required when SMTP_USER is set")
            self.host = smtp.host
            self.port = smtp.port
            self.username = smtp.username
            self.password = smtp.password
            self.use_tls = smtp.use_tls and not smtp.use_ssl
            self.use_ssl = smtp.use_ssl
        else:
            raise ConfigError(f"Unsupported email provider: {smtp.provider!r}")

        self.provider = smtp.provider
        self.timeout = smtp.timeout_seconds

    def _open(self) -> smtplib.SMTP:
        """Connect, upgrade to TLS and log in."""
        context = ssl.create_default_context()
        if self.use_ssl:
            server: smtplib.SMTP = smtplib.SMTP_SSL(
                self.host, self.port, timeout=self.timeout, context=context
            )
        else:
            server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        try:
            if self.use_tls:
                server.starttls(context=context)
            if self.username:
                server.login(self.username, self.password)
        except Exception:
            server.close()
            raise
        return server

    def build_message(self, recipient: str, rendered: RenderedEmail) -> MIMEMultipart:
        """Build a multipart/alternative message with text and HTML parts."""
        msg = MIMEMultipart("alternative")
        msg["From"] = self.sender.formatted
        msg["To"] = recipient
        msg["Subject"] = rendered.subject
        msg["Date"] = format_datetime(datetime.now(timezone.utc))
        msg["Message-ID"] = make_msgid(domain=self.sender.email.rpartition("@")[2] or None)
        msg.attach(MIMEText(rendered.text, "plain", "utf-8"))
        msg.attach(MIMEText(rendered.html, "html", "utf-8"))
        return msg

    def send(self, recipient: str, template_data: Mapping[str, Any]) -> None:
        rendered = self._render(recipient, template_data)
        msg = self.build_message(recipient, rendered)

        try:
            with self._open() as server:
                server.sendmail(self.sender.email, [recipient], msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            raise TransportError(f"SMTP authentication failed: {exc.smtp_code}") from exc
        except smtplib.SMTPRecipientsRefused as exc:
            codes = "; ".join(
                f"{addr}: {code} {resp.decode(errors='replace') if isinstance(resp, bytes) else resp}"
                for addr, (code, resp) in exc.recipients.items()
            )
            raise TransportError(f"Recipient refused: {codes}") from exc
        except smtplib.SMTPException as exc:
            raise TransportError(f"SMTP error: {exc}") from exc
        except OSError as exc:
            raise TransportError(f"Connection to {self.host}:{self.port} failed: {exc}") from exc

        logger.info("Sent follow-up email to %s via %s", recipient, self.provider)

    def verify_connection(self) -> bool:
        """Check the relay accepts a connection and our credentials."""
        try:
            with self._open() as server:
                server.noop()
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("SMTP connection check failed for %s:%s: %s", self.host, self.port, exc)
            return False
        return True


# ---------------------------------------------------------------------------
# Dry run
# ---------------------------------------------------------------------------

class LogTransport(EmailTransport):
    """Render and log the email instead of sending it."""

    def __init__(self, engine: TemplateEngine | None = None, sender: SenderInfo | None = None):
        super().__init__(engine=engine, sender=sender)
        self.sent: deque[tuple[str, RenderedEmail]] = deque(maxlen=DRY_RUN_HISTORY)

    def send(self, recipient: str, template_data: Mapping[str, Any]) -> None:
        rendered = self._render(recipient, template_data)
        self.sent.append((recipient, rendered))
        logger.info("[DRY-RUN] Would send %r to %s", rendered.subject, recipient)


def build_transport(cfg: FollowupConfig, dry_run: bool = False) -> EmailTransport:
    """Create the transport described by the config."""
    engine = TemplateEngine(paths=cfg.templates, sender=cfg.sender)
    if dry_run:
        return LogTransport(engine=engine, sender=cfg.sender)
    return SmtpTransport(cfg.smtp, sender=cfg.sender, engine=engine)
