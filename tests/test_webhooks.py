"""
Seat Fulfillment — Alert Notifier Tests

Webhook delivery runs against httpx.MockTransport; no network.
"""

import json
import os
import sys
import unittest

import httpx

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from fakes import RecordingNotifier

from fulfillment.alerts import (
    DELIVERY_HISTORY,
    CompositeAlertNotifier,
    LogAlertNotifier,
    SmtpAlertNotifier,
    WebhookAlertNotifier,
    WebhookConfig,
    build_notifier,
    format_payload,
)


async def _no_sleep(seconds):
    return None


class TestFormatPayload(unittest.TestCase):
    def test_generic(self):
        p = format_payload("generic", "subj", "body")
        self.assertEqual(p["event_type"], "fulfillment_alert")
        self.assertEqual(p["subject"], "subj")

    def test_slack(self):
        p = format_payload("slack", "subj", "a=1")
        self.assertEqual(p["text"], "subj")
        self.assertIn("a=1", p["blocks"][1]["text"]["text"])

    def test_teams(self):
        p = format_payload("teams", "subj", "a\nb")
        self.assertEqual(p["@type"], "MessageCard")
        self.assertEqual(p["text"], "a<br>b")


class TestNotifyNeverRaises(unittest.IsolatedAsyncioTestCase):
    async def test_failure_reported_as_false(self):
        notifier = RecordingNotifier(fail=True)
        with self.assertLogs("seat_fulfillment.alerts", level="WARNING"):
            self.assertFalse(await notifier.notify("s", "b"))

    async def test_dispatch_and_drain(self):
        notifier = RecordingNotifier()
        notifier.dispatch("s1", "b1")
        notifier.dispatch("s2", "b2")
        await notifier.drain()
        self.assertEqual(notifier.sent, [("s1", "b1"), ("s2", "b2")])

    async def test_composite_fans_out_despite_failures(self):
        good = RecordingNotifier()
        composite = CompositeAlertNotifier([RecordingNotifier(fail=True), good])
        with self.assertLogs("seat_fulfillment.alerts", level="WARNING"):
            self.assertTrue(await composite.notify("s", "b"))
        self.assertEqual(good.sent, [("s", "b")])

    async def test_smtp_without_recipients_fails_quietly(self):
        notifier = SmtpAlertNotifier("smtp.invalid")
        with self.assertLogs("seat_fulfillment.alerts", level="WARNING"):
            self.assertFalse(await notifier.notify("s", "b"))


class TestWebhookDelivery(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.requests = []
        self.responses = []

        def handler(request):
            self.requests.append(request)
            status = self.responses.pop(0) if self.responses else 200
            return httpx.Response(status)

        self.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

    async def asyncTearDown(self):
        await self.client.aclose()

    async def test_delivers_slack_payload(self):
        notifier = WebhookAlertNotifier(
            [WebhookConfig(url="https://hooks.example.com/x", format="slack")],
            client=self.client, sleep=_no_sleep,
        )
        self.assertTrue(await notifier.notify("Order C1 failed", "order_no=C1"))
        body = json.loads(self.requests[0].content)
        self.assertEqual(body["text"], "Order C1 failed")
        self.assertEqual(notifier.deliveries[0]["status"], "delivered")

    async def test_retries_then_gives_up(self):
        self.responses = [500, 502, 503]
        notifier = WebhookAlertNotifier(
            [WebhookConfig(url="https://hooks.example.com/x", max_retries=3)],
            client=self.client, sleep=_no_sleep,
        )
        with self.assertLogs("seat_fulfillment.alerts", level="WARNING"):
            self.assertFalse(await notifier.notify("s", "b"))
        self.assertEqual(len(self.requests), 3)
        self.assertEqual(notifier.deliveries[0]["status"], "failed")
        self.assertEqual(notifier.deliveries[0]["error"], "HTTP 503")

    async def test_recovers_on_retry(self):
        self.responses = [429]
        notifier = WebhookAlertNotifier(
            [WebhookConfig(url="https://hooks.example.com/x", max_retries=2)],
            client=self.client, sleep=_no_sleep,
        )
        self.assertTrue(await notifier.notify("s", "b"))
        self.assertEqual(notifier.deliveries[0]["attempts"], 2)

    async def test_disabled_targets_skipped(self):
        notifier = WebhookAlertNotifier(
            [WebhookConfig(url="https://hooks.example.com/x", enabled=False)],
            client=self.client, sleep=_no_sleep,
        )
        self.assertTrue(await notifier.notify("s", "b"))
        self.assertEqual(self.requests, [])

    async def test_delivery_history_is_bounded(self):
        notifier = WebhookAlertNotifier(
            [WebhookConfig(url="https://hooks.example.com/x")],
            client=self.client, sleep=_no_sleep,
        )
        for i in range(DELIVERY_HISTORY + 5):
            await notifier.notify(f"s{i}", "b")
        self.assertEqual(len(notifier._deliveries), DELIVERY_HISTORY)
        self.assertEqual(notifier.deliveries[0]["subject"], "s5")


class TestBuildNotifier(unittest.TestCase):
    def test_log_only_by_default(self):
        self.assertIsInstance(build_notifier({}), LogAlertNotifier)

    def test_composite_with_targets(self):
        notifier = build_notifier({"alerts": {
            "webhooks": [{"url": "https://hooks.example.com/x", "format": "teams"}, {"format": "slack"}],
            "smtp": {"host": "smtp.example.com", "recipients": ["ops@example.com"]},
        }})
        self.assertIsInstance(notifier, CompositeAlertNotifier)
        kinds = [type(n) for n in notifier.notifiers]
        self.assertEqual(kinds, [LogAlertNotifier, WebhookAlertNotifier, SmtpAlertNotifier])
        self.assertEqual(len(notifier.notifiers[1].configs), 1)


if __name__ == "__main__":
    unittest.main()
