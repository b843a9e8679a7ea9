"""MakeMKV performance presets and command-line flag construction."""

import logging
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from discvault.error_handling import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_PRESET = "balanced"
CUSTOM_PRESET = "custom"


class PerformanceProfile(BaseModel):
    """Cache, buffer, timeout and retry parameters for one backup run."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(default="Balanced")
    description: str = Field(default="")
    cache: int = Field(default=16)  # MB
    minbuf: int = Field(default=1)  # MB
    maxbuf: int = Field(default=16)  # MB
    timeout: int = Field(default=10000)  # milliseconds
    split_size: int = Field(default=0)  # 0 disables splitting
    retry_on_error: bool = Field(default=True)
    max_retries: int = Field(default=3)

    def clamped(self) -> "PerformanceProfile":
        """Return a copy with every value forced into its safe range."""
        cache = max(1, min(256, self.cache))
        minbuf = max(0, min(self.maxbuf, self.minbuf))
        maxbuf = max(minbuf, min(256, self.maxbuf))
        timeout = max(1000, min(60000, self.timeout))
        return self.model_copy(
            update={
                "cache": cache,
                "minbuf": minbuf,
                "maxbuf": maxbuf,
                "timeout": timeout,
            },
        )


PERFORMANCE_PRESETS = MappingProxyType(
    {
        "fast": PerformanceProfile(
            name="Fast",
            description="Minimal cache, faster startup, lower memory usage. Best for DVDs.",
            cache=8,
            minbuf=1,
            maxbuf=8,
            timeout=8000,
        ),
        "balanced": PerformanceProfile(
            name="Balanced",
            description="Default settings. Good balance of speed and reliability.",
            cache=16,
            minbuf=1,
            maxbuf=16,
            timeout=10000,
        ),
        "compatibility": PerformanceProfile(
            name="Compatibility",
            description="Larger cache, more retries. Best for damaged/scratched discs.",
            cache=64,
            minbuf=2,
            maxbuf=32,
            timeout=15000,
            max_retries=5,
        ),
        "4k-bluray": PerformanceProfile(
            name="4K Blu-ray",
            description="Large cache for high bitrate 4K content. Best for UHD Blu-rays.",
            cache=128,
            minbuf=4,
            maxbuf=64,
            timeout=12000,
        ),
    },
)


class PerformanceSettings(BaseModel):
    """User-facing performance configuration."""

    preset: str = Field(default=DEFAULT_PRESET)
    custom_settings: PerformanceProfile = Field(
        default_factory=lambda: PerformanceProfile(name="Custom"),
    )
    disc_type_profiles: dict[str, str] = Field(
        default_factory=lambda: {
            "dvd": "balanced",
            "bluray": "balanced",
            "4k-bluray": "4k-bluray",
        },
    )


def resolve_profile(
    settings: PerformanceSettings,
    disc_type: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> PerformanceProfile:
    """Pick the profile for a backup and apply per-job overrides."""
    preset = settings.preset or DEFAULT_PRESET

    if disc_type and disc_type in settings.disc_type_profiles:
        preset = settings.disc_type_profiles[disc_type]
        logger.debug(f"Using disc-type profile: {disc_type} -> {preset}")

    if preset == CUSTOM_PRESET:
        profile = settings.custom_settings
    elif preset in PERFORMANCE_PRESETS:
        profile = PERFORMANCE_PRESETS[preset]
    else:
        logger.warning(f'Unknown preset "{preset}", falling back to {DEFAULT_PRESET}')
        profile = PERFORMANCE_PRESETS[DEFAULT_PRESET]

    if overrides:
        unknown = set(overrides) - set(PerformanceProfile.model_fields)
        if unknown:
            logger.warning(f"Ignoring unknown profile overrides: {sorted(unknown)}")
        known = {k: v for k, v in overrides.items() if k not in unknown}
        try:
            profile = PerformanceProfile.model_validate({**profile.model_dump(), **known})
        except ValidationError as e:
            msg = f"Invalid performance overrides: {known}"
            raise ConfigurationError(
                msg,
                details=str(e),
                solution="Profile overrides must be numbers (or true/false for retry_on_error)",
                original_error=e,
            ) from e

    return profile.clamped()


def build_backup_flags(profile: PerformanceProfile) -> list[str]:
    """Build the MakeMKV ``backup`` flags for a profile."""
    flags = [
        "--decrypt",
        f"--cache={profile.cache}",
        "--noscan",
        "-r",
        "--progress=-same",
    ]
    if profile.split_size and profile.split_size > 0:
        flags.append(f"--split-size={profile.split_size}")
    return flags
