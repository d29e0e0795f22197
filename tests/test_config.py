"""
Unit tests for settings normalization and persistence.
"""
import json

import pytest

from eerosync.config import (
    DEFAULT_GATEWAY,
    MIN_BACKGROUND_INTERVAL,
    MIN_FOREGROUND_INTERVAL,
    Settings,
    clamp_intervals,
    get_timezone,
    load_settings,
    save_settings,
)


# ── normalization ──────────────────────────────────────────────────────────

class TestSettings:
    def test_intervals_are_clamped(self):
        settings = Settings(foreground_interval=1, background_interval=2).normalized()
        assert settings.foreground_interval == MIN_FOREGROUND_INTERVAL
        assert settings.background_interval == MIN_BACKGROUND_INTERVAL

    def test_garbage_intervals_use_defaults(self):
        foreground, background = clamp_intervals("soon", None)
        assert foreground >= MIN_FOREGROUND_INTERVAL
        assert background >= MIN_BACKGROUND_INTERVAL

    def test_blank_gateway_uses_default(self):
        assert Settings(gateway_address="  ").normalized().gateway_address == DEFAULT_GATEWAY

    def test_network_ids_trimmed(self):
        assert Settings(network_ids=[" 123 ", ""]).normalized().network_ids == ["123"]
        assert Settings(network_ids=["  "]).normalized().network_ids is None

    def test_network_ids_are_coerced_to_strings(self):
        assert Settings(network_ids=[123, " 456 "]).normalized().network_ids == ["123", "456"]

    def test_network_ids_must_be_a_list(self):
        with pytest.raises(ValueError):
            Settings(network_ids="123").normalized()
        with pytest.raises(ValueError):
            Settings(network_ids=[{"id": 1}]).normalized()

    def test_wrongly_typed_fields_are_rejected(self):
        with pytest.raises(ValueError):
            Settings(gateway_address=["10.0.0.1"]).normalized()
        with pytest.raises(ValueError):
            Settings(ask_confirmation_for_moderate_risk="yes").normalized()

    def test_unknown_timezone_falls_back(self):
        assert Settings(timezone="Mars/Olympus").normalized().timezone == "UTC"

    def test_from_dict_ignores_unknown_keys(self):
        settings = Settings.from_dict({"gateway_address": "10.0.0.1", "theme": "dark"})
        assert settings.gateway_address == "10.0.0.1"


# ── persistence ────────────────────────────────────────────────────────────

class TestPersistence:
    def test_round_trip(self, tmp_path):
        path = str(tmp_path / "settings.json")
        original = Settings(gateway_address="10.0.0.1", ask_confirmation_for_moderate_risk=True)
        assert save_settings(original, path) is True
        assert load_settings(path) == original.normalized()

    def test_missing_file_gives_defaults(self, tmp_path):
        assert load_settings(str(tmp_path / "nope.json")) == Settings().normalized()

    def test_corrupt_file_gives_defaults(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("{not json")
        assert load_settings(str(path)) == Settings().normalized()

    def test_wrongly_typed_file_gives_defaults(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"network_ids": "123"}))
        assert load_settings(str(path)) == Settings().normalized()

    def test_saved_values_are_clamped(self, tmp_path):
        path = tmp_path / "settings.json"
        save_settings(Settings(foreground_interval=0.5), str(path))
        assert json.loads(path.read_text())["foreground_interval"] == MIN_FOREGROUND_INTERVAL


class TestTimezone:
    def test_unknown_zone_is_utc(self):
        assert get_timezone("Nowhere/Special").zone == "UTC"
