"""Tests for settings loading."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from wwk.config import DEFAULT_DB_PATH, DEFAULT_EXCLUDED_BUNDLE_IDS, Settings, load_settings
from wwk.models import EditClient


class TestSettings:
    """Tests for the Settings model."""

    def test_defaults(self):
        settings = Settings()
        assert settings.db_path == DEFAULT_DB_PATH
        assert settings.clock_change_threshold_s == 120
        assert settings.excluded_bundle_ids == DEFAULT_EXCLUDED_BUNDLE_IDS
        assert settings.client is EditClient.CLI
        assert settings.author_username

    def test_frozen(self):
        settings = Settings()
        with pytest.raises(ValidationError):
            settings.clock_change_threshold_s = 5

    def test_threshold_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(clock_change_threshold_s=0)


class TestLoadSettings:
    """Tests for environment and override precedence."""

    def test_empty_environment(self):
        assert load_settings({}).db_path == DEFAULT_DB_PATH

    def test_db_from_environment(self, tmp_path):
        settings = load_settings({"WWK_DB": str(tmp_path / "x.db")})
        assert settings.db_path == tmp_path / "x.db"

    def test_db_expands_user(self):
        settings = load_settings({"WWK_DB": "~/wwk.db"})
        assert settings.db_path == Path.home() / "wwk.db"

    def test_threshold_from_environment(self):
        assert load_settings({"WWK_CLOCK_THRESHOLD_S": "300"}).clock_change_threshold_s == 300

    def test_override_wins(self, tmp_path):
        settings = load_settings({"WWK_DB": "/elsewhere.db"}, db_path=tmp_path / "y.db")
        assert settings.db_path == tmp_path / "y.db"

    def test_none_override_ignored(self, tmp_path):
        settings = load_settings({"WWK_DB": str(tmp_path / "x.db")}, db_path=None)
        assert settings.db_path == tmp_path / "x.db"

    @pytest.mark.parametrize("value", ["abc", "-1", "0"])
    def test_invalid_threshold(self, value):
        with pytest.raises(ValueError, match="Invalid settings"):
            load_settings({"WWK_CLOCK_THRESHOLD_S": value})
