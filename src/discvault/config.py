"""Configuration management for DiscVault."""

import logging
import time
from collections.abc import Callable
from enum import Enum
from pathlib import Path

import tomli
from pydantic import BaseModel, Field, field_validator

from discvault.backup.paths import sanitize_disc_name
from discvault.backup.profiles import PerformanceSettings

logger = logging.getLogger(__name__)


class ExtractionMode(str, Enum):
    """How much of the disc MakeMKV should back up."""

    FULL = "full"
    SMART = "smart"  # skip titles shorter than min_title_length


class DiscVaultConfig(BaseModel):
    """Main configuration for DiscVault."""

    # Paths
    base_dir: Path = Field(default=Path("~/DiscVault"))
    log_dir: Path = Field(default=Path("~/.local/share/discvault/logs"))

    # External tools
    makemkv_con: str = Field(default="makemkvcon")
    seven_zip: str = Field(default="7z")

    # Extraction
    extraction_mode: ExtractionMode = Field(default=ExtractionMode.FULL)
    min_title_length: int = Field(default=10)  # minutes, smart mode only
    performance: PerformanceSettings = Field(default_factory=PerformanceSettings)

    # Backup status thresholds
    complete_threshold: float = Field(default=95.0)  # percent of disc size
    noise_floor_mb: int = Field(default=10)

    # Progress estimation (seconds)
    progress_poll_interval: float = Field(default=0.5)
    progress_fallback_delay: float = Field(default=5.0)
    trust_native_progress: bool = Field(default=False)

    # Timeout Settings (seconds)
    extract_timeout: int = Field(default=7200)  # 2 hours
    ntfy_request_timeout: int = Field(default=10)

    # Notifications
    ntfy_topic: str | None = None

    # Settings re-read interval for long running managers (seconds)
    settings_cache_ttl: float = Field(default=5.0)

    @field_validator("base_dir", "log_dir", mode="before")
    @classmethod
    def expand_paths(cls, v: Path | str) -> Path:
        """Expand user home directory in paths."""
        if isinstance(v, str):
            v = Path(v)
        return v.expanduser().resolve()

    @field_validator("complete_threshold")
    @classmethod
    def threshold_in_range(cls, v: float) -> float:
        if not 0 < v <= 100:
            msg = "complete_threshold must be between 0 and 100"
            raise ValueError(msg)
        return v

    @property
    def temp_dir(self) -> Path:
        """Parent of all scratch paths."""
        return self.base_dir / "temp"

    @property
    def backup_dir(self) -> Path:
        """Parent of all finished backups."""
        return self.base_dir / "backup"

    @property
    def noise_floor_bytes(self) -> int:
        return self.noise_floor_mb * 1024 * 1024

    def scratch_path(self, disc_name: str) -> Path:
        return self.temp_dir / sanitize_disc_name(disc_name)

    def backup_path(self, disc_name: str) -> Path:
        return self.backup_dir / sanitize_disc_name(disc_name)

    def ensure_directories(self) -> None:
        """Create required directories if they don't exist."""
        for dir_path in [self.temp_dir, self.backup_dir, self.log_dir]:
            dir_path.mkdir(parents=True, exist_ok=True)


def find_config_path() -> Path | None:
    """Return the first existing config file from the default locations."""
    possible_paths = [
        Path.home() / ".config" / "discvault" / "config.toml",
        Path.cwd() / "discvault.toml",
    ]
    for path in possible_paths:
        if path.exists():
            return path
    return None


def load_config(config_path: Path | None = None) -> DiscVaultConfig:
    """Load configuration from file or defaults."""
    if config_path is None:
        config_path = find_config_path()

    if config_path and config_path.exists():
        with open(config_path, "rb") as f:
            config_data = tomli.load(f)
        return DiscVaultConfig(**config_data)
    return DiscVaultConfig()


class SettingsCache:
    """Configuration value re-read lazily once it is older than its TTL.

    Freshness is checked when the value is read; there is no background
    timer. Readers may briefly see stale settings, which is acceptable for
    the values it serves. A failed reload keeps the previous value.
    """

    def __init__(
        self,
        loader: Callable[[], DiscVaultConfig],
        ttl: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.loader = loader
        self.ttl = ttl
        self.clock = clock
        self._value: DiscVaultConfig | None = None
        self._loaded_at = 0.0

    @classmethod
    def from_path(cls, config_path: Path | None = None) -> "SettingsCache":
        """Cache backed by a config file, using the file's own TTL setting."""
        cache = cls(lambda: load_config(config_path))
        cache.ttl = cache.get().settings_cache_ttl
        return cache

    def is_fresh(self, now: float) -> bool:
        return self._value is not None and (now - self._loaded_at) < self.ttl

    def get(self) -> DiscVaultConfig:
        now = self.clock()
        if self.is_fresh(now):
            return self._value  # type: ignore[return-value]

        try:
            value = self.loader()
        except (OSError, ValueError) as e:
            if self._value is None:
                raise
            logger.warning(f"Failed to reload settings, keeping cached values: {e}")
            return self._value

        self._value = value
        self._loaded_at = now
        return value

    def invalidate(self) -> None:
        self._value = None


def create_sample_config(path: Path) -> None:
    """Create a sample configuration file."""
    sample_config = """# DiscVault Configuration
# =======================

# ============================================================================
# PATHS
# ============================================================================

base_dir = "~/DiscVault"                          # temp/ and backup/ are created below this
log_dir = "~/.local/share/discvault/logs"         # Log files

# ============================================================================
# EXTERNAL TOOLS
# ============================================================================

makemkv_con = "makemkvcon"                        # MakeMKV command-line tool (name or full path)
seven_zip = "7z"                                  # 7-Zip, used to unpack DVD disc images

# ============================================================================
# EXTRACTION
# ============================================================================

extraction_mode = "full"                          # "full" or "smart" (skip short titles)
min_title_length = 10                             # Minutes, used by smart mode

# Backup status detection
complete_threshold = 95.0                         # Backup counts as complete at this % of disc size
noise_floor_mb = 10                               # Leftovers smaller than this are discarded

# Progress estimation (seconds)
progress_poll_interval = 0.5                      # How often the temp folder size is measured
progress_fallback_delay = 5.0                     # Start polling anyway if MakeMKV stays quiet
trust_native_progress = false                     # Also use MakeMKV's own progress values

# Timeouts (seconds)
extract_timeout = 7200                            # 7-Zip disc image extraction
ntfy_request_timeout = 10                         # Notification request timeout

# Notifications (optional)
# ntfy_topic = "https://ntfy.sh/your_topic"

# ============================================================================
# PERFORMANCE - presets: fast, balanced, compatibility, 4k-bluray, custom
# ============================================================================

[performance]
preset = "balanced"

[performance.custom_settings]
name = "Custom"
cache = 16                                        # MB
minbuf = 1                                        # MB
maxbuf = 16                                       # MB
timeout = 10000                                   # ms
split_size = 0                                    # 0 = no splitting
retry_on_error = true
max_retries = 3

[performance.disc_type_profiles]
dvd = "balanced"
bluray = "balanced"
"4k-bluray" = "4k-bluray"
"""

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        f.write(sample_config)
