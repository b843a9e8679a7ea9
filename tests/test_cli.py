"""Essential CLI interface tests."""

from unittest.mock import patch

import pytest
from click.testing import CliRunner

from discvault.backup.job import BackupResult
from discvault.cli import EXIT_CANCELLED, cli
from discvault.error_handling import BackupCancelledError, BackupFailedError


@pytest.fixture
def cli_runner():
    """Create CLI test runner."""
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    """Write a configuration rooted in a temporary directory."""
    path = tmp_path / "discvault.toml"
    path.write_text(
        f'base_dir = "{tmp_path / "vault"}"\n'
        f'log_dir = "{tmp_path / "logs"}"\n'
        'makemkv_con = "makemkvcon"\n',
    )
    return path


class TestCLIBasics:
    """Test essential CLI functionality."""

    def test_cli_entry_point(self, cli_runner):
        result = cli_runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        assert "discvault" in result.output.lower()

    def test_invalid_config_exits(self, cli_runner, tmp_path):
        bad = tmp_path / "bad.toml"
        bad.write_text("complete_threshold = 500\n")

        result = cli_runner.invoke(cli, ["--config", str(bad), "profiles"])

        assert result.exit_code == 1
        assert "Configuration Error" in result.output


class TestConfigCommands:
    """Test the config command group."""

    def test_config_show(self, cli_runner, config_file, tmp_path):
        result = cli_runner.invoke(cli, ["--config", str(config_file), "config", "show"])

        assert result.exit_code == 0
        assert "MakeMKV" in result.output
        assert "makemkvcon" in result.output

    def test_config_init(self, cli_runner, config_file, tmp_path):
        target = tmp_path / "out" / "config.toml"

        result = cli_runner.invoke(
            cli,
            ["--config", str(config_file), "config", "init", "--path", str(target)],
        )

        assert result.exit_code == 0
        assert target.exists()

    @patch("discvault.cli.check_dependencies", return_value=[])
    def test_config_validate(self, mock_deps, cli_runner, config_file, tmp_path):
        result = cli_runner.invoke(cli, ["--config", str(config_file), "config", "validate"])

        assert result.exit_code == 0
        assert "Configuration is valid" in result.output
        assert (tmp_path / "vault" / "temp").exists()


class TestProfilesCommand:
    """Test the profiles listing."""

    def test_lists_presets(self, cli_runner, config_file):
        result = cli_runner.invoke(cli, ["--config", str(config_file), "profiles"])

        assert result.exit_code == 0
        for name in ("fast", "balanced", "compatibility", "4k-bluray"):
            assert name in result.output


class TestStatusCommand:
    """Test the status command."""

    def test_no_backup(self, cli_runner, config_file):
        result = cli_runner.invoke(
            cli,
            ["--config", str(config_file), "status", "MOVIE", "--size", "1000"],
        )

        assert result.exit_code == 0
        assert "none" in result.output

    def test_complete_backup(self, cli_runner, config_file, tmp_path, make_file):
        make_file(tmp_path / "vault" / "backup" / "MOVIE" / "BDMV" / "index.bdmv", 1000)

        result = cli_runner.invoke(
            cli,
            ["--config", str(config_file), "status", "MOVIE", "--size", "1000"],
        )

        assert result.exit_code == 0
        assert "complete" in result.output


class TestBackupCommand:
    """Test the backup command wiring."""

    @patch("discvault.cli.check_dependencies", return_value=[])
    @patch("discvault.cli.run_backup")
    def test_backup_success(self, mock_run, mock_deps, cli_runner, config_file, tmp_path):
        final = tmp_path / "vault" / "backup" / "MOVIE"

        async def fake_run(config, disc_name, index, size, options, observer):
            return BackupResult(final_path=final, final_size=2048, is_single_file=False)

        mock_run.side_effect = fake_run

        result = cli_runner.invoke(
            cli,
            [
                "--config",
                str(config_file),
                "backup",
                "MOVIE",
                "--index",
                "1",
                "--size",
                "2048",
                "--mode",
                "smart",
                "--min-length",
                "15",
            ],
        )

        assert result.exit_code == 0, result.output
        assert "Backup saved" in result.output
        args = mock_run.call_args[0]
        assert args[1:4] == ("MOVIE", 1, 2048)
        assert args[4].mode.value == "smart"
        assert args[4].min_title_minutes == 15

    @patch("discvault.cli.check_dependencies", return_value=[])
    @patch("discvault.cli.run_backup")
    def test_preset_option(self, mock_run, mock_deps, cli_runner, config_file, tmp_path):
        async def fake_run(config, *args):
            return BackupResult(final_path=tmp_path, final_size=1, is_single_file=False)

        mock_run.side_effect = fake_run

        result = cli_runner.invoke(
            cli,
            ["--config", str(config_file), "backup", "MOVIE", "--preset", "fast"],
        )

        assert result.exit_code == 0, result.output
        config = mock_run.call_args[0][0]
        assert config.performance.preset == "fast"
        assert config.performance.disc_type_profiles == {}

    @patch("discvault.cli.check_dependencies", return_value=[])
    @patch("discvault.cli.run_backup")
    def test_backup_cancelled(self, mock_run, mock_deps, cli_runner, config_file):
        async def fake_run(*args):
            raise BackupCancelledError()

        mock_run.side_effect = fake_run

        result = cli_runner.invoke(cli, ["--config", str(config_file), "backup", "MOVIE"])

        assert result.exit_code == EXIT_CANCELLED
        assert "cancelled" in result.output

    @patch("discvault.cli.check_dependencies", return_value=[])
    @patch("discvault.cli.run_backup")
    def test_backup_failed(self, mock_run, mock_deps, cli_runner, config_file):
        async def fake_run(*args):
            raise BackupFailedError("Backup failed with exit code 2.", exit_code=2)

        mock_run.side_effect = fake_run

        result = cli_runner.invoke(cli, ["--config", str(config_file), "backup", "MOVIE"])

        assert result.exit_code == 1
        assert "had to stop" in result.output

    def test_missing_makemkv(self, cli_runner, config_file):
        with patch("discvault.error_handling.shutil.which", return_value=None):
            result = cli_runner.invoke(cli, ["--config", str(config_file), "backup", "MOVIE"])

        assert result.exit_code == 1
