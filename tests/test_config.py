"""Tests covering config search, environment overrides and persistence."""

from __future__ import annotations

from pathlib import Path

import pytest

from shadow_analyzer import config as config_module


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path: Path):
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(tmp_path)
    for name in (
        "SHADOW_CONFIG",
        "MPV_IPC_PATH",
        "SHADOW_OUT_DIR",
        "MIC_DEV",
        "SHADOW_KEEP",
        "SHADOW_MIC_KEEP",
        "FFMPEG_BINARY",
        "DEV",
        "SHADOW_WEB_PORT",
    ):
        monkeypatch.delenv(name, raising=False)
    _reset_config_state(monkeypatch)
    yield
    _reset_config_state(monkeypatch)


def _reset_config_state(monkeypatch) -> None:
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_search_paths", [], raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)
    monkeypatch.setattr(config_module, "_primary_config_path", None, raising=False)


def test_defaults_without_config_file() -> None:
    cfg = config_module.get_cfg()
    assert cfg["mpv"]["ipc_path"] == "/tmp/mpv-shadow.sock"
    assert cfg["clips"]["keep"] == 5
    assert cfg["analysis"]["pitch"]["fmax_hz"] == 350.0
    assert cfg["web_server"]["listen_host"] == "127.0.0.1"
    assert config_module.get_cfg() is cfg


def test_file_values_merge_over_defaults(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "custom.yaml"
    config_path.write_text("clips:\n  keep: 9\nanalysis:\n  pitch:\n    fmin_hz: 90\n")
    monkeypatch.setenv("SHADOW_CONFIG", str(config_path))

    cfg = config_module.get_cfg()

    assert cfg["clips"]["keep"] == 9
    assert cfg["clips"]["mic_keep"] == 5
    assert cfg["analysis"]["pitch"]["fmin_hz"] == 90
    assert cfg["analysis"]["pitch"]["fmax_hz"] == 350.0
    assert config_module.active_config_path() == config_path.resolve()
    assert config_module.primary_config_path() == config_path.resolve()


def test_unreadable_yaml_is_ignored(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "broken.yaml"
    config_path.write_text("clips: [unterminated\n")
    monkeypatch.setenv("SHADOW_CONFIG", str(config_path))
    assert config_module.get_cfg()["clips"]["keep"] == 5


def test_env_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MPV_IPC_PATH", "/run/user/1000/mpv.sock")
    monkeypatch.setenv("SHADOW_OUT_DIR", str(tmp_path / "clips"))
    monkeypatch.setenv("FFMPEG_BINARY", "/opt/ffmpeg/bin/ffmpeg")
    monkeypatch.setenv("SHADOW_KEEP", "12")
    monkeypatch.setenv("SHADOW_MIC_KEEP", "not-a-number")
    monkeypatch.setenv("SHADOW_WEB_PORT", "9000")
    monkeypatch.setenv("DEV", "1")

    cfg = config_module.get_cfg()

    assert cfg["mpv"]["ipc_path"] == "/run/user/1000/mpv.sock"
    assert cfg["clips"]["out_dir"] == str(tmp_path / "clips")
    assert cfg["ffmpeg"]["binary"] == "/opt/ffmpeg/bin/ffmpeg"
    assert cfg["clips"]["keep"] == 12
    assert cfg["clips"]["mic_keep"] == 5
    assert cfg["web_server"]["listen_port"] == 9000
    assert cfg["logging"]["dev_mode"] is True


def test_mic_env_only_fills_an_empty_device(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MIC_DEV", "plughw:CARD=Env,DEV=0")
    assert config_module.get_cfg()["mic"]["device"] == "plughw:CARD=Env,DEV=0"

    config_path = tmp_path / "config.yaml"
    config_path.write_text("mic:\n  device: plughw:CARD=File,DEV=0\n")
    monkeypatch.setenv("SHADOW_CONFIG", str(config_path))
    assert config_module.reload_cfg()["mic"]["device"] == "plughw:CARD=File,DEV=0"


def test_update_mic_settings_round_trips_comments(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        "# practice setup\n"
        "clips:\n"
        "  keep: 3  # small disk\n"
        "mic:\n"
        "  device: ''\n"
    )
    monkeypatch.setenv("SHADOW_CONFIG", str(config_path))

    section = config_module.update_mic_settings({"device": "plughw:CARD=Mic,DEV=0"})

    assert section["device"] == "plughw:CARD=Mic,DEV=0"
    text = config_path.read_text()
    assert "# practice setup" in text
    assert "# small disk" in text
    assert config_module.get_cfg()["clips"]["keep"] == 3


def test_update_mic_settings_creates_section(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "nested" / "config.yaml"
    monkeypatch.setenv("SHADOW_CONFIG", str(config_path))

    section = config_module.update_mic_settings({"device": "hw:1,0"})

    assert section["device"] == "hw:1,0"
    assert config_path.exists()


def test_update_rejects_non_mapping_root(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("- just\n- a list\n")
    monkeypatch.setenv("SHADOW_CONFIG", str(config_path))
    with pytest.raises(config_module.ConfigPersistenceError):
        config_module.update_mic_settings({"device": "hw:1,0"})
