"""Tests for performance presets and flag construction."""

import pytest
from pydantic import ValidationError

from discvault.backup.profiles import (
    PERFORMANCE_PRESETS,
    PerformanceProfile,
    PerformanceSettings,
    build_backup_flags,
    resolve_profile,
)
from discvault.error_handling import ConfigurationError


class TestPresets:
    """Test the read-only preset table."""

    def test_known_presets(self):
        assert set(PERFORMANCE_PRESETS) == {"fast", "balanced", "compatibility", "4k-bluray"}
        assert PERFORMANCE_PRESETS["4k-bluray"].cache == 128
        assert PERFORMANCE_PRESETS["compatibility"].max_retries == 5

    def test_table_is_read_only(self):
        with pytest.raises(TypeError):
            PERFORMANCE_PRESETS["fast"] = PerformanceProfile()

    def test_profiles_are_frozen(self):
        with pytest.raises(ValidationError):
            PERFORMANCE_PRESETS["fast"].cache = 1


class TestResolveProfile:
    """Test profile selection and overrides."""

    def test_default_is_balanced(self):
        profile = resolve_profile(PerformanceSettings())

        assert profile.name == "Balanced"
        assert profile.cache == 16

    def test_disc_type_mapping_wins(self):
        profile = resolve_profile(PerformanceSettings(preset="fast"), disc_type="4k-bluray")

        assert profile.name == "4K Blu-ray"

    def test_configured_preset(self):
        profile = resolve_profile(PerformanceSettings(preset="compatibility"))

        assert profile.cache == 64
        assert profile.timeout == 15000

    def test_custom_preset(self):
        settings = PerformanceSettings(
            preset="custom",
            custom_settings=PerformanceProfile(name="Custom", cache=48, maxbuf=24),
        )

        profile = resolve_profile(settings)

        assert profile.name == "Custom"
        assert profile.cache == 48

    def test_unknown_preset_falls_back(self, caplog):
        profile = resolve_profile(PerformanceSettings(preset="turbo"))

        assert profile.name == "Balanced"
        assert "Unknown preset" in caplog.text

    def test_overrides_do_not_modify_table(self):
        profile = resolve_profile(PerformanceSettings(preset="fast"), overrides={"cache": 32})

        assert profile.cache == 32
        assert PERFORMANCE_PRESETS["fast"].cache == 8

    def test_unknown_override_ignored(self):
        profile = resolve_profile(PerformanceSettings(), overrides={"turbo": True})

        assert profile == PERFORMANCE_PRESETS["balanced"]

    def test_override_strings_are_coerced(self):
        profile = resolve_profile(PerformanceSettings(), overrides={"cache": "64"})

        assert profile.cache == 64

    def test_invalid_override_raises_configuration_error(self):
        with pytest.raises(ConfigurationError, match="Invalid performance overrides"):
            resolve_profile(PerformanceSettings(), overrides={"cache": "lots"})

    def test_values_clamped(self):
        profile = resolve_profile(
            PerformanceSettings(),
            overrides={"cache": 1000, "minbuf": 50, "maxbuf": 20, "timeout": 10},
        )

        assert profile.cache == 256
        assert profile.minbuf == 20
        assert profile.maxbuf == 20
        assert profile.timeout == 1000


class TestBuildBackupFlags:
    """Test makemkvcon flag construction."""

    def test_default_flags(self):
        flags = build_backup_flags(PERFORMANCE_PRESETS["balanced"])

        assert flags == ["--decrypt", "--cache=16", "--noscan", "-r", "--progress=-same"]

    def test_split_size(self):
        flags = build_backup_flags(PerformanceProfile(split_size=4096))

        assert flags[-1] == "--split-size=4096"
