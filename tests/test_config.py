import dataclasses
import unittest
from pathlib import Path

from imagehost.config import BASE_DIR, DEFAULT_PORT, Settings
from imagehost.errors import ConfigError


def _env(**overrides):
    env = {
        "SITE_BASEURL": "https://img.example.com/",
        "ADMIN_USER": "admin",
        "ADMIN_PASS": "secret",
        "UPLOAD_LIMIT_MB": "5",
    }
    env.update(overrides)
    return {key: value for key, value in env.items() if value is not None}


class SettingsFromEnvTests(unittest.TestCase):
    def test_required_values_and_defaults(self):
        settings = Settings.from_env(_env())
        self.assertEqual(settings.site_baseurl, "https://img.example.com")
        self.assertEqual(settings.admin_user, "admin")
        self.assertEqual(settings.admin_pass, "secret")
        self.assertEqual(settings.upload_limit_mb, 5.0)
        self.assertEqual(settings.upload_limit_bytes, 5 * 1024 * 1024)
        self.assertEqual(settings.port, DEFAULT_PORT)
        self.assertEqual(settings.timezone, "Asia/Tokyo")
        self.assertEqual(settings.storage_dir, (BASE_DIR / "storage").resolve())
        self.assertEqual(settings.logs_dir, (BASE_DIR / "logs").resolve())
        self.assertIsNone(settings.fetch_limit_bytes)
        self.assertTrue(settings.rate_limit_enabled)

    def test_each_required_variable_is_checked(self):
        for key in ("SITE_BASEURL", "ADMIN_USER", "ADMIN_PASS", "UPLOAD_LIMIT_MB"):
            with self.subTest(key=key):
                with self.assertRaisesRegex(ConfigError, f"{key} is not set"):
                    Settings.from_env(_env(**{key: None}))
                with self.assertRaisesRegex(ConfigError, f"{key} is not set"):
                    Settings.from_env(_env(**{key: "  "}))

    def test_upload_limit_must_be_a_positive_number(self):
        for value in ("abc", "0", "-1", "nan", "inf"):
            with self.subTest(value=value):
                with self.assertRaises(ConfigError):
                    Settings.from_env(_env(UPLOAD_LIMIT_MB=value))

    def test_fractional_upload_limit(self):
        settings = Settings.from_env(_env(UPLOAD_LIMIT_MB="0.5"))
        self.assertEqual(settings.upload_limit_bytes, 512 * 1024)

    def test_port(self):
        self.assertEqual(Settings.from_env(_env(PORT="8080")).port, 8080)
        for value in ("http", "0", "70000"):
            with self.subTest(value=value):
                with self.assertRaises(ConfigError):
                    Settings.from_env(_env(PORT=value))

    def test_optional_overrides(self):
        settings = Settings.from_env(
            _env(
                IMAGEHOST_STORAGE_DIR="/tmp/imagehost-storage",
                IMAGEHOST_LOGS_DIR="",
                IMAGEHOST_TIMEZONE="UTC",
                LOG_LEVEL="debug",
                AUTH_REALM="Private",
                URL2IMAGE_TIMEOUT="5",
                URL2IMAGE_LIMIT_MB="2",
                RATELIMIT_ENABLED="false",
                ADMIN_RATE_LIMIT="5 per minute",
            )
        )
        self.assertEqual(settings.storage_dir, Path("/tmp/imagehost-storage").resolve())
        self.assertIsNone(settings.logs_dir)
        self.assertEqual(settings.timezone, "UTC")
        self.assertEqual(settings.log_level, "DEBUG")
        self.assertEqual(settings.auth_realm, "Private")
        self.assertEqual(settings.fetch_timeout, 5.0)
        self.assertEqual(settings.fetch_limit_bytes, 2 * 1024 * 1024)
        self.assertFalse(settings.rate_limit_enabled)
        self.assertEqual(settings.admin_rate_limit, "5 per minute")

    def test_invalid_boolean_falls_back_to_default(self):
        with self.assertLogs("imagehost.config", level="WARNING"):
            settings = Settings.from_env(_env(RATELIMIT_ENABLED="maybe"))
        self.assertTrue(settings.rate_limit_enabled)

    def test_unknown_timezone(self):
        with self.assertRaises(ConfigError):
            Settings.from_env(_env(IMAGEHOST_TIMEZONE="Mars/Olympus_Mons"))

    def test_settings_are_immutable(self):
        settings = Settings.from_env(_env())
        with self.assertRaises(dataclasses.FrozenInstanceError):
            settings.admin_pass = "changed"


if __name__ == "__main__":
    unittest.main()
