"""Unit tests for startup configuration."""
# pylint: disable=missing-function-docstring

import sys
import unittest
from unittest.mock import MagicMock, patch

from stability_mcp import config
from stability_mcp.errors import ConfigurationError


class ApiKeyTests(unittest.TestCase):
    """API key lookup: environment first, then the OS keychain."""

    def test_env_key_is_trimmed(self):
        self.assertEqual(config.get_api_key({config.API_KEY_ENV: "  sk-test  "}), "sk-test")

    def test_missing_key_without_keyring(self):
        with patch.dict(sys.modules, {"keyring": None, "keyring.errors": None}):
            self.assertIsNone(config.get_api_key({}))
            with self.assertRaises(ConfigurationError) as ctx:
                config.require_api_key({})
        self.assertEqual(str(ctx.exception), "STABILITY_AI_API_KEY is a required environment variable")

    def test_keyring_fallback(self):
        fake_keyring = MagicMock()
        fake_keyring.get_password.return_value = "from-keychain"
        fake_errors = MagicMock(KeyringError=RuntimeError)
        with patch.dict(sys.modules, {"keyring": fake_keyring, "keyring.errors": fake_errors}):
            self.assertEqual(config.get_api_key({}), "from-keychain")
        fake_keyring.get_password.assert_called_once_with("stability-mcp", config.API_KEY_ENV)


class LoadConfigTests(unittest.TestCase):
    """load_config reads only the mapping it is given."""

    def test_defaults(self):
        cfg = config.load_config(environ={config.API_KEY_ENV: "k"})
        self.assertEqual(cfg.api_key, "k")
        self.assertFalse(cfg.use_sse)
        self.assertEqual(cfg.storage.backend, config.BACKEND_FILESYSTEM)
        self.assertEqual(cfg.storage.directory, config.default_storage_directory())
        self.assertEqual(cfg.port, 3020)
        self.assertEqual(cfg.base_url, config.DEFAULT_BASE_URL)
        self.assertTrue(cfg.save_metadata)
        self.assertTrue(cfg.save_metadata_failed)
        self.assertEqual(cfg.poll.max_attempts, 60)

    def test_overrides(self):
        cfg = config.load_config(
            environ={
                config.API_KEY_ENV: "k",
                "IMAGE_STORAGE_DIRECTORY": "/data/images",
                "SAVE_METADATA": "false",
                "SAVE_METADATA_FAILED": "0",
                "PORT": "8080",
                "LOG_LEVEL": "debug",
                "POLL_INITIAL_DELAY": "2.5",
                "POLL_MAX_ATTEMPTS": "0",
            }
        )
        self.assertEqual(cfg.storage.directory, "/data/images")
        self.assertFalse(cfg.save_metadata)
        self.assertFalse(cfg.save_metadata_failed)
        self.assertEqual(cfg.port, 8080)
        self.assertEqual(cfg.log_level, "DEBUG")
        self.assertEqual(cfg.poll.initial_delay, 2.5)
        self.assertIsNone(cfg.poll.max_attempts)

    def test_sse_defaults_to_s3_and_needs_bucket(self):
        with self.assertRaises(ConfigurationError):
            config.load_config(use_sse=True, environ={config.API_KEY_ENV: "k"})

        cfg = config.load_config(
            use_sse=True,
            environ={config.API_KEY_ENV: "k", "S3_BUCKET_NAME": "images", "AWS_REGION": "eu-west-1"},
        )
        self.assertEqual(cfg.storage.backend, config.BACKEND_S3)
        self.assertEqual(cfg.storage.bucket, "images")
        self.assertEqual(cfg.storage.region, "eu-west-1")

    def test_sse_can_use_filesystem(self):
        cfg = config.load_config(
            use_sse=True, environ={config.API_KEY_ENV: "k", "IMAGE_STORAGE_BACKEND": "filesystem"}
        )
        self.assertEqual(cfg.storage.backend, config.BACKEND_FILESYSTEM)

    def test_invalid_values(self):
        for env in (
            {"PORT": "http"},
            {"SAVE_METADATA": "maybe"},
            {"IMAGE_STORAGE_BACKEND": "ftp"},
        ):
            with self.subTest(env=env):
                with self.assertRaises(ConfigurationError):
                    config.load_config(environ={config.API_KEY_ENV: "k", **env})

    def test_default_storage_directory_per_platform(self):
        self.assertEqual(config.default_storage_directory("linux"), "/tmp/mcp-stability-ai")
        self.assertEqual(config.default_storage_directory("win32"), "C:\\Windows\\Temp\\mcp-stability-ai")


if __name__ == "__main__":
    unittest.main()
