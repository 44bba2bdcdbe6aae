"""
Seat Fulfillment — Structured Logging Tests
"""

import io
import json
import logging
import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from fulfillment.logging import ROOT_LOGGER, configure_logging, get_logger, log_event


def _parse_log_lines(buf):
    return [json.loads(line) for line in buf.getvalue().splitlines() if line.strip()]


class TestStructuredLogging(unittest.TestCase):
    def setUp(self):
        self.buf = io.StringIO()
        configure_logging(level="DEBUG", stream=self.buf)

    def tearDown(self):
        root = logging.getLogger(ROOT_LOGGER)
        root.handlers.clear()
        root.propagate = True
        root.setLevel(logging.NOTSET)

    def test_entry_schema(self):
        get_logger("sweeper").info("Sweep %s", "done")
        entry = _parse_log_lines(self.buf)[0]
        for key in ("timestamp", "level", "logger", "message", "service.name", "service.version"):
            self.assertIn(key, entry)
        self.assertEqual(entry["logger"], "seat_fulfillment.sweeper")
        self.assertEqual(entry["message"], "Sweep done")
        self.assertEqual(entry["service.name"], "seat_fulfillment")

    def test_structured_fields(self):
        log_event(get_logger("fulfiller"), logging.INFO, "Order fulfilled", order_no="C1", attempt=2)
        entry = _parse_log_lines(self.buf)[0]
        self.assertEqual(entry["order_no"], "C1")
        self.assertEqual(entry["attempt"], 2)

    def test_exception_fields(self):
        try:
            raise ValueError("bad row")
        except ValueError:
            get_logger("store").exception("Failed")
        entry = _parse_log_lines(self.buf)[0]
        self.assertEqual(entry["exception.type"], "ValueError")
        self.assertEqual(entry["exception.message"], "bad row")

    def test_level_filtering(self):
        configure_logging(level="WARNING", stream=self.buf)
        get_logger("x").info("hidden")
        get_logger("x").warning("shown")
        messages = [e["message"] for e in _parse_log_lines(self.buf)]
        self.assertEqual(messages, ["shown"])

    def test_reconfigure_does_not_stack_handlers(self):
        configure_logging(level="INFO", stream=self.buf)
        configure_logging(level="INFO", stream=self.buf)
        get_logger().info("once")
        self.assertEqual(len(_parse_log_lines(self.buf)), 1)


if __name__ == "__main__":
    unittest.main()
