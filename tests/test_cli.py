from pathlib import Path

import pytest

from ptu_bridge import cli


def test_show_config_prints_sections(tmp_path: Path, capsys) -> None:
    config_path = tmp_path / "ptu-bridge.cfg"

    exit_code = cli.main(["-c", str(config_path), "show-config"])

    output = capsys.readouterr().out
    assert exit_code == 0
    assert f"Configuration loaded from {config_path}" in output
    assert "[serial]" in output
    assert "port = /dev/ttyUSB0" in output


def test_show_config_masks_broker_password(tmp_path: Path, capsys) -> None:
    config_path = tmp_path / "ptu-bridge.cfg"
    config_path.write_text("[broker]\nusername = ptu\npassword = hunter2\n")

    exit_code = cli.main(["-c", str(config_path), "show-config"])

    output = capsys.readouterr().out
    assert exit_code == 0
    assert "hunter2" not in output
    assert "password = ********" in output
    assert "username = ptu" in output


def test_start_applies_overrides(tmp_path: Path, monkeypatch) -> None:
    started = []
    monkeypatch.setattr(cli.PtuBridgeApp, "start", classmethod(lambda cls, config: started.append(config)))

    exit_code = cli.main(
        ["-c", str(tmp_path / "ptu-bridge.cfg"), "start", "--port", "loop://", "--dry-run"]
    )

    assert exit_code == 0
    config = started[0]
    assert config.serial.port == "loop://"
    assert config.device.dry_run is True
    assert config.raw.get("device", "dry_run") == "true"


def test_command_is_required() -> None:
    with pytest.raises(SystemExit):
        cli.main([])


def test_probe_prints_calibration_from_loopback(tmp_path: Path, monkeypatch, capsys) -> None:
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)
    config_path = tmp_path / "ptu-bridge.cfg"
    config_path.write_text("[serial]\nconnect_timeout_seconds = 2\n", encoding="utf-8")

    exit_code = cli.main(["-c", str(config_path), "probe", "--port", "loop://"])

    output = capsys.readouterr().out
    assert exit_code == 0
    assert "Connected to loop://" in output
    assert "max_pan = " in output
    assert "tilt_step = " in output


def test_probe_reports_open_failure(tmp_path: Path, monkeypatch, capsys) -> None:
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)

    exit_code = cli.main(
        ["-c", str(tmp_path / "ptu-bridge.cfg"), "probe", "--port", "/dev/ptu-bridge-missing"]
    )

    assert exit_code == 1
    assert "Probe failed" in capsys.readouterr().err
