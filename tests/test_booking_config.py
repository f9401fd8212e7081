from __future__ import annotations

import logging
import unittest

from booking_config import (
    BookingSettings,
    configure_logging,
    load_settings,
    read_secret_or_env_str,
    truthy_str,
)


class _RaisingSecrets:
    def get(self, key, default=None):
        raise FileNotFoundError("no secrets.toml")


class TestLoadSettings(unittest.TestCase):
    def test_defaults(self) -> None:
        settings = load_settings(environ={})
        self.assertEqual(settings, BookingSettings())
        self.assertEqual(settings.region, "TR")
        self.assertEqual(settings.usd_to_local_rate, 30.0)
        self.assertFalse(settings.assistant_enabled)
        self.assertFalse(settings.has_openai_key)
        self.assertEqual(settings.snapshot_path, ".skydrift/sessions.json")

    def test_environment_overrides(self) -> None:
        settings = load_settings(
            environ={
                "SKYDRIFT_REGION": "us",
                "SKYDRIFT_USD_RATE": "32.5",
                "SKYDRIFT_SHOW_BOTH_PRICES": "yes",
                "SKYDRIFT_SEARCH_DELAY_S": "0",
                "SKYDRIFT_SNAPSHOT_PATH": "/tmp/skydrift.json",
                "SKYDRIFT_LOG_LEVEL": "debug",
            }
        )
        self.assertEqual(settings.region, "US")
        self.assertEqual(settings.usd_to_local_rate, 32.5)
        self.assertTrue(settings.show_both_prices)
        self.assertEqual(settings.search_delay_s, 0.0)
        self.assertEqual(settings.payment_delay_s, 2.0)
        self.assertEqual(settings.snapshot_path, "/tmp/skydrift.json")
        self.assertEqual(settings.log_level, "DEBUG")

    def test_malformed_numbers_fall_back(self) -> None:
        settings = load_settings(environ={"SKYDRIFT_USD_RATE": "abc", "SKYDRIFT_PAYMENT_DELAY_S": "-1"})
        self.assertEqual(settings.usd_to_local_rate, 30.0)
        self.assertEqual(settings.payment_delay_s, 2.0)

    def test_assistant_follows_key_unless_overridden(self) -> None:
        self.assertTrue(load_settings(environ={"OPENAI_API_KEY": "sk-1"}).assistant_enabled)
        self.assertEqual(load_settings(environ={"VITE_OPENAI_API_KEY": " sk-2 "}).openai_api_key, "sk-2")
        disabled = load_settings(environ={"OPENAI_API_KEY": "sk-1", "SKYDRIFT_ASSISTANT_ENABLED": "0"})
        self.assertFalse(disabled.assistant_enabled)
        self.assertTrue(disabled.has_openai_key)

    def test_secrets_win_over_environment(self) -> None:
        settings = load_settings(environ={"SKYDRIFT_REGION": "US"}, secrets={"SKYDRIFT_REGION": "TR"})
        self.assertEqual(settings.region, "TR")

    def test_secrets_that_raise_fall_back_to_environment(self) -> None:
        self.assertEqual(
            read_secret_or_env_str("SKYDRIFT_REGION", environ={"SKYDRIFT_REGION": "US"}, secrets=_RaisingSecrets()),
            "US",
        )

    def test_truthy_str(self) -> None:
        for v in ("1", "true", "YES", " on "):
            self.assertTrue(truthy_str(v), v)
        for v in ("", "0", "false", None, "nope"):
            self.assertFalse(truthy_str(v), v)


class TestConfigureLogging(unittest.TestCase):
    def setUp(self) -> None:
        self.logger = logging.getLogger("skydrift")
        self.saved_handlers = list(self.logger.handlers)
        self.saved_level = self.logger.level

    def tearDown(self) -> None:
        self.logger.handlers = self.saved_handlers
        self.logger.setLevel(self.saved_level)

    def test_handlers_are_added_once(self) -> None:
        extra = logging.NullHandler()
        configure_logging("DEBUG", extra_handlers=(extra,))
        configure_logging("WARNING", extra_handlers=(extra,))
        streams = [h for h in self.logger.handlers if getattr(h, "_skydrift_stream", False)]
        self.assertEqual(len(streams), 1)
        self.assertEqual(self.logger.handlers.count(extra), 1)
        self.assertEqual(self.logger.level, logging.WARNING)


if __name__ == "__main__":
    unittest.main()
