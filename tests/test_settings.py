"""Tests for the JSON settings store."""

import json

import pytest

from landscape_mini.config import settings


@pytest.fixture
def settings_path(tmp_path, monkeypatch):
    path = tmp_path / "build.json"
    monkeypatch.setattr("landscape_mini.config.settings.SETTINGS_PATH", path)
    settings.settings_store.values = {}
    yield path
    settings.load_settings(tmp_path / "missing.json")


class TestLoadSettings:
    """Tests for load_settings()."""

    def test_defaults_when_file_missing(self, settings_path):
        settings.load_settings()

        assert settings.get_setting("base_system") == "debian"
        assert settings.get_setting("image_size_mb") == settings.DEFAULT_IMAGE_SIZE_MB

    def test_file_overrides_defaults(self, settings_path):
        settings_path.write_text(json.dumps({"base_system": "alpine", "include_docker": True}))

        settings.load_settings()

        assert settings.get_setting("base_system") == "alpine"
        assert settings.get_bool("include_docker") is True
        assert settings.get_setting("timezone") == "Asia/Shanghai"

    def test_explicit_path(self, settings_path, tmp_path):
        other = tmp_path / "other.json"
        other.write_text(json.dumps({"output_format": "both"}))

        settings.load_settings(other)

        assert settings.get_setting("output_format") == "both"

    def test_invalid_json_keeps_defaults(self, settings_path):
        settings_path.write_text("{not json")

        settings.load_settings()

        assert settings.get_setting("base_system") == "debian"

    def test_non_object_ignored(self, settings_path):
        settings_path.write_text(json.dumps(["alpine"]))

        settings.load_settings()

        assert settings.all_settings() == settings.DEFAULT_SETTINGS


class TestAccessors:
    """Tests for get_bool(), all_settings() and save_settings()."""

    @pytest.mark.parametrize(
        "value,expected",
        [("yes", True), ("no", False), ("1", True), ("off", False), (True, True), (0, False)],
    )
    def test_get_bool_accepts_env_style_strings(self, settings_path, value, expected):
        settings.settings_store.values = {"compress_output": value}

        assert settings.get_bool("compress_output") is expected

    def test_all_settings_returns_copy(self, settings_path):
        settings.load_settings()
        values = settings.all_settings()
        values["base_system"] = "alpine"

        assert settings.get_setting("base_system") == "debian"

    def test_save_round_trip(self, settings_path):
        settings.load_settings()
        settings.settings_store.values["apt_mirror"] = "http://mirror.example/debian"

        settings.save_settings()
        settings.load_settings()

        assert settings.get_setting("apt_mirror") == "http://mirror.example/debian"
