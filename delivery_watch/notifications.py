from __future__ import annotations

import asyncio
import logging
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Any, Iterable

from jinja2 import Template

from delivery_watch.config import Config
from delivery_watch.monitor.models import CycleSummary

logger = logging.getLogger(__name__)

SUBJECT_PREFIX = "[delivery-watch {{ run_env }}]"

ACTIONS_SUBJECT = SUBJECT_PREFIX + " {{ acted }} order(s) actioned on {{ target }}"
ACTIONS_BODY = """\
Cycle {{ cycle_id }} on {{ target }} finished at {{ finished_at }}.

Detected: {{ detected }}  Eligible: {{ eligible }}  Acted: {{ acted }}  Failed: {{ failed }}
{% for order in acted_orders %}
- {{ order.order_id }} ({{ order.display_time }}): {{ order.action_type }} [{{ order.reason }}]
{%- endfor %}
"""

BREAKER_SUBJECT = SUBJECT_PREFIX + " monitor for {{ target }} is restarting"
BREAKER_BODY = """\
{{ consecutive_failures }} consecutive cycles failed in a critical phase on {{ target }}.
The process is exiting so its supervisor can restart it with a clean browser profile.

Last cycle: {{ cycle_id }} ({{ outcome }})
{% for note in notes %}
- {{ note }}
{%- endfor %}
"""

STARTUP_SUBJECT = SUBJECT_PREFIX + " monitor started for {{ target }}"
STARTUP_BODY = """\
Monitoring {{ target }} every {{ interval_seconds }}s with {{ pool_size }} profile slot(s).
{{ ledger_size }} previously actioned order(s) loaded from the ledger.
"""


@dataclass
class SmtpConfig:
    host: str
    port: int
    sender: str
    username: str | None
    password: str | None
    use_tls: bool
    recipients: list[str] = field(default_factory=list)

    @property
    def enabled(self) -> bool:
        return bool(self.host and self.sender and self.recipients)

    @classmethod
    def from_config(cls, config: Config) -> "SmtpConfig":
        return cls(
            host=config.alert_email_smtp_host,
            port=config.alert_email_smtp_port,
            sender=config.alert_email_from,
            username=config.alert_email_smtp_username or None,
            password=config.alert_email_smtp_password or None,
            use_tls=config.alert_email_use_tls,
            recipients=list(config.alert_email_to),
        )


def _render_template(raw: str, context: dict[str, Any]) -> str:
    try:
        return Template(raw).render(**context)
    except Exception:
        logger.exception("failed to render notification template")
        return raw


def _unique(items: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for item in items:
        if item and item not in seen:
            seen.add(item)
            ordered.append(item)
    return ordered


def _send_email(config: SmtpConfig, subject: str, body: str) -> bool:
    recipients = _unique(config.recipients)
    if not recipients:
        return False
    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = config.sender
    message["To"] = ", ".join(recipients)
    message.set_content(body)
    try:
        with smtplib.SMTP(config.host, config.port, timeout=30) as client:
            if config.use_tls:
                client.starttls()
            if config.username and config.password:
                client.login(config.username, config.password)
            client.send_message(message, to_addrs=recipients)
        return True
    except Exception:
        logger.exception("failed to send notification email", extra={"subject": subject})
        return False


class EmailNotifier:
    """Alert e-mails for the monitor; a no-op when SMTP is not configured."""

    def __init__(self, smtp: SmtpConfig, *, run_env: str) -> None:
        self.smtp = smtp
        self.run_env = run_env

    async def _dispatch(self, subject_template: str, body_template: str, context: dict[str, Any]) -> bool:
        if not self.smtp.enabled:
            logger.info("SMTP configuration missing; skipping notification")
            return False
        context = {"run_env": self.run_env, **context}
        subject = _render_template(subject_template, context)
        body = _render_template(body_template, context)
        return await asyncio.to_thread(_send_email, self.smtp, subject, body)

    async def notify_cycle_actions(self, summary: CycleSummary) -> None:
        context = summary.as_dict()
        context["finished_at"] = context["finished_at"] or ""
        await self._dispatch(ACTIONS_SUBJECT, ACTIONS_BODY, context)

    async def notify_breaker_trip(self, *, target: str, consecutive_failures: int, summary: CycleSummary) -> None:
        context = summary.as_dict()
        context.update(target=target, consecutive_failures=consecutive_failures)
        await self._dispatch(BREAKER_SUBJECT, BREAKER_BODY, context)

    async def notify_startup(self, *, target: str, interval_seconds: float, pool_size: int, ledger_size: int) -> None:
        await self._dispatch(
            STARTUP_SUBJECT,
            STARTUP_BODY,
            {
                "target": target,
                "interval_seconds": interval_seconds,
                "pool_size": pool_size,
                "ledger_size": ledger_size,
            },
        )
