"""Tests for sshlab.cli module."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from sshlab import cli
from sshlab.exceptions import ConfigError, LaunchFailure, MissingMediaTool
from sshlab.models import VMProcessHandle

from conftest import PUBKEY


class TestListLabs:
    def test_lists_packaged_labs(self, capsys):
        cli.list_labs()
        out = capsys.readouterr().out
        assert "ssh-lab " in out
        assert "ssh-lab-duo" in out
        assert "(instances=2)" in out

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(ConfigError, match="Lab definitions missing"):
            cli.list_labs(tmp_path / "nope.yaml")

    def test_empty_map_logs_warning(self, tmp_path):
        path = tmp_path / "labs.yaml"
        path.write_text("labs: {}\n")
        with patch("sshlab.cli.log") as mock_log:
            cli.list_labs(path)
        mock_log.assert_called_once_with("WARN", "No labs found")


class TestShowConfig:
    def test_truncates_key_and_lists_instances(self, single_config, capsys):
        cli.show_config(single_config)
        out = capsys.readouterr().out
        assert PUBKEY not in out
        assert f"ssh_pubkey: {PUBKEY[:40]}..." in out
        assert "instances:" in out
        assert "ssh_port: 2234" in out
        assert "on_failure: keep" in out


class TestApplyOverrides:
    def _args(self, **kw):
        values = dict(memory=None, disk_size=None, workspace=None, on_failure=None)
        values.update(kw)
        return MagicMock(**values)

    def test_overrides(self, duo_config, tmp_path):
        cli.apply_overrides(
            duo_config,
            self._args(memory=512, disk_size="25G", workspace=str(tmp_path / "ws"), on_failure="stop"),
        )
        assert {i.memory_mb for i in duo_config.instances} == {512}
        assert duo_config.disk_size == "25G"
        assert duo_config.workspace_dir == tmp_path / "ws"
        assert duo_config.on_failure == "stop"

    def test_rejects_small_memory(self, single_config):
        with pytest.raises(ConfigError):
            cli.apply_overrides(single_config, self._args(memory=64))

    def test_rejects_bad_disk_size(self, single_config):
        with pytest.raises(ConfigError):
            cli.apply_overrides(single_config, self._args(disk_size="big"))


class TestStartupBanner:
    def test_lists_access_lines(self, duo_config, tmp_path, capsys):
        server, client = duo_config.instances
        server.internal_ip = "192.168.100.10"
        handles = [
            VMProcessHandle(
                instance_name=inst.name,
                pid=100 + i,
                log_path=tmp_path / f"{inst.name}.log",
                ssh_port=inst.ssh_port,
                pidfile=tmp_path / f"{inst.name}.pid",
            )
            for i, inst in enumerate(duo_config.instances)
        ]
        cli.print_startup_banner(duo_config, handles)
        out = capsys.readouterr().out
        assert "ssh -p 2235 labuser@localhost" in out
        assert "ssh -p 2236 labuser@localhost" in out
        assert "internal 192.168.100.10" in out
        assert "Pass: labpass" in out
        assert "7000 8000 9000" in out
        assert "maxretry=3 bantime=3600s findtime=600s" in out


class TestStatus:
    def test_running_and_stopped(self, duo_config):
        with patch("sshlab.cli.VMSupervisor") as mock_sup:
            mock_sup.return_value.status.side_effect = [cli.ProcessState.RUNNING, cli.ProcessState.STOPPED]
            assert cli.print_status(duo_config) == 3

    def test_all_running(self, single_config):
        with patch("sshlab.cli.VMSupervisor") as mock_sup:
            mock_sup.return_value.status.return_value = cli.ProcessState.RUNNING
            mock_sup.return_value.running_pid.return_value = 4321
            assert cli.print_status(single_config) == 0


class TestMain:
    def test_list_labs_branch(self):
        with patch("sshlab.cli.list_labs") as mock_list:
            assert cli.main(["--list-labs"]) == 0
        mock_list.assert_called_once_with(None)

    def test_parse_env_error_returns_1(self):
        with patch("sshlab.cli.parse_env", side_effect=ConfigError("bad")), patch("sshlab.cli.log") as mock_log:
            assert cli.main([]) == 1
        mock_log.assert_called_with("ERROR", "bad")

    def test_show_config_branch(self, single_config):
        with (
            patch("sshlab.cli.parse_env", return_value=single_config) as mock_parse,
            patch("sshlab.cli.show_config") as mock_show,
            patch("sshlab.cli.LabProvisioner") as mock_prov,
        ):
            assert cli.main(["ssh-lab", "--show-config"]) == 0
        mock_parse.assert_called_once_with("ssh-lab", None)
        mock_show.assert_called_once_with(single_config)
        mock_prov.assert_not_called()

    def test_status_branch(self, single_config):
        with (
            patch("sshlab.cli.parse_env", return_value=single_config),
            patch("sshlab.cli.print_status", return_value=3) as mock_status,
        ):
            assert cli.main(["--status"]) == 3
        mock_status.assert_called_once_with(single_config)

    def test_dry_run_branch(self, single_config):
        with (
            patch("sshlab.cli.parse_env", return_value=single_config),
            patch("sshlab.cli.show_config"),
            patch("sshlab.cli.print_plan") as mock_plan,
            patch("sshlab.cli.check_dependencies") as mock_check,
            patch("sshlab.cli.LabProvisioner") as mock_prov,
        ):
            assert cli.main(["--dry-run"]) == 0
        mock_plan.assert_called_once_with(single_config)
        mock_check.assert_called_once_with()
        mock_prov.assert_not_called()

    def test_dry_run_missing_tool(self, single_config):
        with (
            patch("sshlab.cli.parse_env", return_value=single_config),
            patch("sshlab.cli.show_config"),
            patch("sshlab.cli.print_plan"),
            patch("sshlab.cli.check_dependencies", side_effect=MissingMediaTool("genisoimage not found")),
        ):
            assert cli.main(["--dry-run"]) == 1

    def test_overrides_reach_config(self, single_config):
        with (
            patch("sshlab.cli.parse_env", return_value=single_config),
            patch("sshlab.cli.show_config"),
        ):
            assert cli.main(["--show-config", "--memory", "2048", "--on-failure", "stop"]) == 0
        assert single_config.instances[0].memory_mb == 2048
        assert single_config.on_failure == "stop"

    def test_normal_run(self, single_config):
        handles = [MagicMock()]
        with (
            patch("sshlab.cli.parse_env", return_value=single_config),
            patch("sshlab.cli.print_plan"),
            patch("sshlab.cli.LabProvisioner") as mock_prov,
            patch("sshlab.cli.print_startup_banner") as mock_banner,
        ):
            mock_prov.return_value.run.return_value = handles
            assert cli.main([]) == 0
        mock_prov.assert_called_once_with(single_config)
        mock_banner.assert_called_once_with(single_config, handles)

    def test_provisioning_error_returns_1(self, single_config):
        with (
            patch("sshlab.cli.parse_env", return_value=single_config),
            patch("sshlab.cli.print_plan"),
            patch("sshlab.cli.LabProvisioner") as mock_prov,
            patch("sshlab.cli.print_startup_banner") as mock_banner,
            patch("sshlab.cli.log") as mock_log,
        ):
            mock_prov.return_value.run.side_effect = LaunchFailure("port taken")
            assert cli.main([]) == 1
        mock_log.assert_called_with("ERROR", "port taken")
        mock_banner.assert_not_called()

    def test_unexpected_error_returns_1(self, single_config):
        with (
            patch("sshlab.cli.parse_env", return_value=single_config),
            patch("sshlab.cli.print_plan"),
            patch("sshlab.cli.LabProvisioner") as mock_prov,
            patch("sshlab.cli.log"),
        ):
            mock_prov.return_value.run.side_effect = KeyError("boom")
            assert cli.main([]) == 1
