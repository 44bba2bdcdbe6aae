"""
Seat Fulfillment — Feature Flag Tests
"""

import os
import sys
import threading
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from fulfillment.flags import FeatureFlags


class TestFeatureFlags(unittest.TestCase):
    def test_unknown_flag_uses_default(self):
        self.assertTrue(FeatureFlags().is_enabled("open_accounts"))
        self.assertFalse(FeatureFlags(default=False).is_enabled("open_accounts"))

    def test_disable_and_enable(self):
        flags = FeatureFlags()
        flags.disable("open_accounts", "provider incident", by="ops")
        self.assertFalse(flags.is_enabled("open_accounts"))
        status = flags.status()["open_accounts"]
        self.assertEqual(status["reason"], "provider incident")
        self.assertEqual(status["toggled_by"], "ops")

        flags.enable("open_accounts", by="ops")
        self.assertTrue(flags.is_enabled("open_accounts"))
        self.assertEqual(flags.status()["open_accounts"]["reason"], "")

    def test_from_config(self):
        flags = FeatureFlags.from_config({"features": {
            "open_accounts": "off",
            "beta": True,
            "legacy": 0,
        }})
        self.assertFalse(flags.is_enabled("open_accounts"))
        self.assertTrue(flags.is_enabled("beta"))
        self.assertFalse(flags.is_enabled("legacy"))
        self.assertEqual(flags.status()["beta"]["toggled_by"], "config")

    def test_missing_section(self):
        self.assertEqual(FeatureFlags.from_config({}).status(), {})

    def test_concurrent_toggles(self):
        flags = FeatureFlags()

        def toggle():
            for _ in range(200):
                flags.disable("f")
                flags.enable("f")

        threads = [threading.Thread(target=toggle) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertTrue(flags.is_enabled("f"))


if __name__ == "__main__":
    unittest.main()
