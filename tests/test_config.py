"""Tests for config.py environment variable parsing helpers."""

import logging
import os
from unittest import mock


class TestGetIntEnv:
    """Tests for get_int_env helper function."""

    def test_returns_default_when_env_not_set(self):
        """Should return default value when environment variable is not set."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {}, clear=True):
            assert get_int_env("CLIPDECK_NONEXISTENT", 42) == 42

    def test_parses_valid_integer(self):
        """Should parse valid integer from environment variable."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {"CLIPDECK_TEST_INT": "123"}):
            assert get_int_env("CLIPDECK_TEST_INT", 0) == 123

    def test_invalid_value_logs_and_falls_back(self, caplog):
        """Garbage falls back to the default with a warning naming the variable."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {"CLIPDECK_TEST_INT": "lots"}):
            with caplog.at_level(logging.WARNING):
                assert get_int_env("CLIPDECK_TEST_INT", 42) == 42
        assert "Invalid CLIPDECK_TEST_INT='lots'" in caplog.text

    def test_out_of_range_port_falls_back(self, caplog):
        """A port above 65535 is rejected."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {"CLIPDECK_API_PORT": "70000"}):
            with caplog.at_level(logging.WARNING):
                assert get_int_env("CLIPDECK_API_PORT", 5000, min_val=1, max_val=65535) == 5000
        assert "above maximum" in caplog.text


class TestGetFloatEnv:
    """Tests for get_float_env helper function."""

    def test_parses_valid_float(self):
        from config import get_float_env

        with mock.patch.dict(os.environ, {"CLIPDECK_UPLOAD_TIMEOUT": "12.5"}):
            assert get_float_env("CLIPDECK_UPLOAD_TIMEOUT", 600.0) == 12.5

    def test_rejects_infinity(self, caplog):
        """inf would make a timeout meaningless."""
        from config import get_float_env

        with mock.patch.dict(os.environ, {"CLIPDECK_UPLOAD_TIMEOUT": "inf"}):
            with caplog.at_level(logging.WARNING):
                assert get_float_env("CLIPDECK_UPLOAD_TIMEOUT", 600.0, min_val=1.0) == 600.0
        assert "special float" in caplog.text

    def test_jpeg_quality_bounded(self, caplog):
        """Quality above 1.0 is rejected."""
        from config import get_float_env

        with mock.patch.dict(os.environ, {"CLIPDECK_THUMBNAIL_JPEG_QUALITY": "1.5"}):
            with caplog.at_level(logging.WARNING):
                result = get_float_env("CLIPDECK_THUMBNAIL_JPEG_QUALITY", 0.9, min_val=0.0, max_val=1.0)
        assert result == 0.9


class TestGetListEnv:
    """Tests for comma-separated list parsing."""

    def test_splits_and_trims(self):
        from config import get_list_env

        with mock.patch.dict(os.environ, {"CLIPDECK_CORS_ORIGINS": " https://a.test , https://b.test,, "}):
            assert get_list_env("CLIPDECK_CORS_ORIGINS") == ["https://a.test", "https://b.test"]

    def test_default_used_when_unset(self):
        from config import get_list_env

        with mock.patch.dict(os.environ, {}, clear=True):
            assert get_list_env("CLIPDECK_CORS_ORIGINS", "http://localhost:3000") == ["http://localhost:3000"]

    def test_empty_value_gives_empty_list(self):
        from config import get_list_env

        with mock.patch.dict(os.environ, {"CLIPDECK_TRUSTED_PROXIES": ""}):
            assert get_list_env("CLIPDECK_TRUSTED_PROXIES") == []


class TestStartupConfig:
    """Tests for check_startup_config warnings."""

    def test_warns_for_missing_secrets(self, caplog):
        """Each missing server variable is reported once."""
        import config

        with mock.patch.dict(os.environ, {}, clear=True), mock.patch.object(
            config, "_startup_warnings_issued", set()
        ):
            with caplog.at_level(logging.WARNING):
                config.check_startup_config()
                config.check_startup_config()

        assert caplog.text.count("CLIPDECK_VIDEO_HOST_API_KEY is not set") == 1
        assert "CLIPDECK_ADMIN_PASSWORD is not set" in caplog.text

    def test_no_warning_when_configured(self, caplog):
        import config

        env = {name: "set" for name in config.REQUIRED_SERVER_ENV_VARS}
        with mock.patch.dict(os.environ, env), mock.patch.object(config, "_startup_warnings_issued", set()):
            with caplog.at_level(logging.WARNING):
                config.check_startup_config()

        assert "is not set" not in caplog.text


class TestDefaults:
    """Sanity checks on the shipped defaults."""

    def test_supported_extensions_are_lowercase_with_dot(self):
        from config import SUPPORTED_IMAGE_EXTENSIONS, SUPPORTED_VIDEO_EXTENSIONS

        for ext in SUPPORTED_VIDEO_EXTENSIONS | SUPPORTED_IMAGE_EXTENSIONS:
            assert ext.startswith(".")
            assert ext == ext.lower()

    def test_test_mode_disables_rate_limiting(self):
        """conftest sets CLIPDECK_RATE_LIMIT_ENABLED=false."""
        from config import RATE_LIMIT_ENABLED

        assert RATE_LIMIT_ENABLED is False

    def test_jpeg_quality_default(self):
        from config import THUMBNAIL_JPEG_QUALITY

        assert THUMBNAIL_JPEG_QUALITY == 0.9
