"""DiscVault - verified file-level backups of optical media via MakeMKV."""

__version__ = "0.1.0"
