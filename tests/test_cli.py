"""Tests for scpbridge/cli.py — argument parsing and profile commands."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from scpbridge.cli import build_connection, create_parser, main
from scpbridge.config import ConfigManager
from scpbridge.protocol import RemoteError


@pytest.fixture()
def config_dir(tmp_path: Path) -> Path:
    return tmp_path / "cfg"


class TestParser:
    def test_push_arguments(self) -> None:
        args = create_parser().parse_args(
            ["--host", "build01", "--user", "deploy", "push", "./dist", "/srv/dist", "-p"]
        )
        assert (args.command, args.source, args.dest) == ("push", "./dist", "/srv/dist")
        assert args.preserve is True
        assert args.host == "build01"

    def test_preserve_defaults_to_config(self) -> None:
        args = create_parser().parse_args(["push", "a", "b"])
        assert args.preserve is None

    def test_exec_keeps_remaining_words(self) -> None:
        args = create_parser().parse_args(["exec", "ls", "-la", "/tmp"])
        assert args.remote_command == ["ls", "-la", "/tmp"]

    def test_subcommand_required(self) -> None:
        with pytest.raises(SystemExit):
            create_parser().parse_args([])


class TestBuildConnection:
    def test_cli_overrides_profile(self, config_dir: Path) -> None:
        config = ConfigManager(base_dir=config_dir)
        config.save_profile({"name": "b", "host": "10.0.0.7", "username": "deploy"})
        args = create_parser().parse_args(["--profile", "b", "--port", "2222", "pull", "x", "y"])

        conn = build_connection(args, config)

        assert (conn.host, conn.port, conn.username) == ("10.0.0.7", 2222, "deploy")
        assert conn.timeout == 15.0

    def test_unknown_profile(self, config_dir: Path) -> None:
        args = create_parser().parse_args(["--profile", "ghost", "pull", "x", "y"])
        with pytest.raises(ValueError, match="Unknown profile"):
            build_connection(args, ConfigManager(base_dir=config_dir))

    def test_host_required(self, config_dir: Path) -> None:
        args = create_parser().parse_args(["pull", "x", "y"])
        with pytest.raises(ValueError, match="No host"):
            build_connection(args, ConfigManager(base_dir=config_dir))


class TestProfileCommands:
    def test_save_list_delete(
        self, config_dir: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        base = ["--config-dir", str(config_dir)]
        assert main(base + ["--host", "10.0.0.7", "--user", "deploy", "profile", "save", "b"]) == 0
        assert main(base + ["profile", "list"]) == 0
        assert "b\tdeploy@10.0.0.7:22" in capsys.readouterr().out

        assert main(base + ["profile", "delete", "b"]) == 0
        assert ConfigManager(base_dir=config_dir).get_profiles() == []

    def test_delete_unknown_fails(self, config_dir: Path) -> None:
        assert main(["--config-dir", str(config_dir), "profile", "delete", "ghost"]) == 1

    def test_save_without_host_fails(self, config_dir: Path) -> None:
        assert main(["--config-dir", str(config_dir), "profile", "save", "b"]) == 1


class TestTransferCommands:
    def test_push_uses_client(self, config_dir: Path) -> None:
        job = MagicMock(files=1, bytes_transferred=3, elapsed=0.1, source="a", destination="b")
        job.direction.name = "PUSH"
        with patch("scpbridge.cli.SSHConnection") as conn_cls, patch(
            "scpbridge.cli.SCPClient"
        ) as client_cls:
            client_cls.from_config.return_value.push.return_value = job
            status = main(
                ["--config-dir", str(config_dir), "--host", "h", "push", "a", "/srv/b", "-p"]
            )

        assert status == 0
        conn_cls.return_value.__enter__.assert_called_once()
        client_cls.from_config.return_value.push.assert_called_once_with(
            "a", "/srv/b", preserve=True
        )

    def test_transfer_error_exit_status(self, config_dir: Path) -> None:
        with patch("scpbridge.cli.SSHConnection"), patch("scpbridge.cli.SCPClient") as client_cls:
            client_cls.from_config.return_value.receive.side_effect = RemoteError(
                "scp: /x: No such file or directory"
            )
            status = main(["--config-dir", str(config_dir), "--host", "h", "pull", "/x", "."])
        assert status == 1
