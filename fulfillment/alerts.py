"""
Seat Fulfillment — Operator Alerts

Alerts fire when an order reaches terminal failure. Delivery is
fire-and-forget: dispatch() schedules the send on the running loop and
returns immediately; a delivery failure is logged and never reaches the
fulfillment path. drain() waits for outstanding deliveries (the sweeper
calls it at the end of each cycle, outside any order lock).

Targets:
  - LogAlertNotifier        — log line only (default when nothing is configured)
  - WebhookAlertNotifier    — HTTP POST via httpx (generic, slack, teams payloads)
  - SmtpAlertNotifier       — email via smtplib, run in a worker thread
  - CompositeAlertNotifier  — fan out to several targets

Usage:
    notifier = build_notifier(cfg)
    notifier.dispatch("Order C123 failed", "orderNo=C123\\nerror=...")
    await notifier.drain()
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from email.mime.text import MIMEText
from typing import Any

import httpx

logger = logging.getLogger("seat_fulfillment.alerts")

DELIVERY_HISTORY = 100


class AlertNotifier:
    """Base notifier: subclasses implement send()."""

    def __init__(self):
        self._pending: set[asyncio.Task] = set()

    async def send(self, subject: str, body: str) -> None:
        raise NotImplementedError

    async def notify(self, subject: str, body: str) -> bool:
        """Deliver now; returns False instead of raising on failure."""
        try:
            await self.send(subject, body)
            return True
        except Exception as e:
            logger.warning("Alert delivery failed (%s): %s", type(self).__name__, e)
            return False

    def dispatch(self, subject: str, body: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self.notify(subject, body))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class LogAlertNotifier(AlertNotifier):
    async def send(self, subject: str, body: str) -> None:
        logger.warning("ALERT: %s\n%s", subject, body)


class CompositeAlertNotifier(AlertNotifier):
    def __init__(self, notifiers: list[AlertNotifier]):
        super().__init__()
        self.notifiers = notifiers

    async def send(self, subject: str, body: str) -> None:
        await asyncio.gather(*(n.notify(subject, body) for n in self.notifiers))


# ═══════════════════════════════════════════════════════════════════
# Webhooks
# ═══════════════════════════════════════════════════════════════════

@dataclass
class WebhookConfig:
    """Configuration for a single webhook target."""
    url: str
    format: str = "generic"     # generic, slack, teams
    enabled: bool = True
    max_retries: int = 2
    timeout_seconds: float = 10.0
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class DeliveryRecord:
    delivery_id: str
    webhook_url: str
    subject: str
    status: str = "pending"     # pending, delivered, failed
    attempts: int = 0
    error: str = ""
    created_at: float = 0.0


def format_payload(fmt: str, subject: str, body: str) -> dict[str, Any]:
    """Format an alert for the target platform."""
    if fmt == "slack":
        return {
            "text": subject,
            "blocks": [
                {"type": "header", "text": {"type": "plain_text", "text": subject[:150]}},
                {"type": "section", "text": {"type": "mrkdwn", "text": f"```{body}```"}},
            ],
        }
    if fmt == "teams":
        return {
            "@type": "MessageCard",
            "@context": "http://schema.org/extensions",
            "summary": subject,
            "themeColor": "D63B00",
            "title": subject,
            "text": body.replace("\n", "<br>"),
        }
    return {
        "event_type": "fulfillment_alert",
        "subject": subject,
        "body": body,
        "timestamp": time.time(),
    }


class WebhookAlertNotifier(AlertNotifier):
    """POST alerts to one or more webhook targets, with small retry."""

    def __init__(
        self,
        configs: list[WebhookConfig],
        client: httpx.AsyncClient | None = None,
        sleep=asyncio.sleep,
    ):
        super().__init__()
        self.configs = configs
        self._client = client
        self._sleep = sleep
        self._deliveries: deque[DeliveryRecord] = deque(maxlen=DELIVERY_HISTORY)

    async def send(self, subject: str, body: str) -> None:
        targets = [c for c in self.configs if c.enabled]
        results = await asyncio.gather(*(self._deliver(c, subject, body) for c in targets))
        if targets and not any(results):
            raise RuntimeError(f"all {len(targets)} webhook targets failed")

    async def _post(self, config: WebhookConfig, payload: dict[str, Any]) -> httpx.Response:
        headers = {"Content-Type": "application/json", **config.headers}
        if self._client is not None:
            return await self._client.post(
                config.url, json=payload, headers=headers, timeout=config.timeout_seconds,
            )
        async with httpx.AsyncClient(timeout=config.timeout_seconds) as client:
            return await client.post(config.url, json=payload, headers=headers)

    async def _deliver(self, config: WebhookConfig, subject: str, body: str) -> bool:
        record = DeliveryRecord(
            delivery_id=f"dlv_{uuid.uuid4().hex[:12]}",
            webhook_url=config.url,
            subject=subject,
            created_at=time.time(),
        )
        self._deliveries.append(record)
        payload = format_payload(config.format, subject, body)

        attempts = max(1, config.max_retries)
        for attempt in range(1, attempts + 1):
            record.attempts = attempt
            try:
                resp = await self._post(config, payload)
                if resp.status_code < 400:
                    record.status = "delivered"
                    logger.info("Alert delivered: %s → %s", record.delivery_id, config.url[:50])
                    return True
                record.error = f"HTTP {resp.status_code}"
            except httpx.HTTPError as e:
                record.error = str(e)[:200]
            logger.warning(
                "Alert webhook failed: %s → %s: %s (attempt %d/%d)",
                record.delivery_id, config.url[:50], record.error, attempt, attempts,
            )
            if attempt < attempts:
                await self._sleep(min(2 ** attempt, 10))

        record.status = "failed"
        return False

    @property
    def deliveries(self) -> list[dict[str, Any]]:
        return [
            {
                "delivery_id": d.delivery_id,
                "webhook_url": d.webhook_url[:50],
                "subject": d.subject,
                "status": d.status,
                "attempts": d.attempts,
                "error": d.error,
            }
            for d in self._deliveries
        ]


# ═══════════════════════════════════════════════════════════════════
# SMTP
# ═══════════════════════════════════════════════════════════════════

class SmtpAlertNotifier(AlertNotifier):
    """Email alerts to the operator mailbox."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        sender: str = "",
        password: str = "",
        recipients: list[str] | None = None,
        starttls: bool = True,
    ):
        super().__init__()
        self.host = host
        self.port = port
        self.sender = sender
        self.password = password
        self.recipients = recipients or []
        self.starttls = starttls

    def _send_blocking(self, subject: str, body: str) -> None:
        msg = MIMEText(body, "plain", "utf-8")
        msg["From"] = self.sender
        msg["To"] = ", ".join(self.recipients)
        msg["Subject"] = subject
        with smtplib.SMTP(self.host, self.port, timeout=30) as server:
            server.ehlo()
            if self.starttls:
                server.starttls()
                server.ehlo()
            if self.password:
                server.login(self.sender, self.password)
            server.sendmail(self.sender, self.recipients, msg.as_string())

    async def send(self, subject: str, body: str) -> None:
        if not self.recipients:
            raise ValueError("no alert recipients configured")
        await asyncio.to_thread(self._send_blocking, subject, body)


# ═══════════════════════════════════════════════════════════════════
# Factory
# ═══════════════════════════════════════════════════════════════════

def build_notifier(cfg: dict[str, Any]) -> AlertNotifier:
    """
    Build the notifier from the ``alerts`` config section:

        alerts:
          webhooks:
            - url: https://hooks.slack.com/services/...
              format: slack
          smtp:
            host: smtp.example.com
            sender: bot@example.com
            password: ...
            recipients: [ops@example.com]
    """
    section = cfg.get("alerts", {}) or {}
    notifiers: list[AlertNotifier] = [LogAlertNotifier()]

    hooks = [
        WebhookConfig(
            url=str(h["url"]),
            format=str(h.get("format", "generic")),
            enabled=bool(h.get("enabled", True)),
            max_retries=int(h.get("max_retries", 2)),
            timeout_seconds=float(h.get("timeout_seconds", 10.0)),
            headers=dict(h.get("headers") or {}),
        )
        for h in section.get("webhooks") or []
        if isinstance(h, dict) and h.get("url")
    ]
    if hooks:
        notifiers.append(WebhookAlertNotifier(hooks))

    smtp = section.get("smtp") or {}
    if isinstance(smtp, dict) and smtp.get("host") and smtp.get("recipients"):
        notifiers.append(SmtpAlertNotifier(
            host=str(smtp["host"]),
            port=int(smtp.get("port", 587)),
            sender=str(smtp.get("sender", "")),
            password=str(smtp.get("password", "")),
            recipients=[str(r) for r in smtp["recipients"]],
            starttls=bool(smtp.get("starttls", True)),
        ))

    if len(notifiers) == 1:
        return notifiers[0]
    return CompositeAlertNotifier(notifiers)
