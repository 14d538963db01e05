import json
import logging
import os
import stat

import pytest

from kicad_circuit.config import Config, find_kicad


@pytest.fixture
def config(tmp_path):
    return Config(tmp_path / "kicad_circuit.json")


def test_get_missing_file_is_empty(config):
    assert config.get("kicad_path") == ""


def test_set_then_get(config):
    assert config.set("kicad_path", "/opt/kicad")
    assert config.set("other", "x")
    assert config.get("kicad_path") == "/opt/kicad"
    assert json.loads(config.path.read_text()) == {"kicad_path": "/opt/kicad", "other": "x"}


def test_set_overwrites(config):
    config.set("key", "a")
    config.set("key", "b")
    assert config.get("key") == "b"


def test_unreadable_file_logged(config, caplog):
    config.path.write_text("{not json")
    with caplog.at_level(logging.ERROR, logger="kicad_circuit.config"):
        assert config.get("key") == ""
    assert "cannot read" in caplog.text


def test_default_path_is_cwd(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert Config().path == tmp_path / "kicad_circuit.json"


def _fake_cli(path):
    path.write_text("#!/bin/sh\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path


def test_find_kicad_prefers_config(tmp_path, monkeypatch, config):
    monkeypatch.delenv("KICAD_PATH", raising=False)
    monkeypatch.delenv("KICAD_CLI", raising=False)
    share = tmp_path / "kicad"
    share.mkdir()
    cli = _fake_cli(tmp_path / "kicad-cli")
    config.set("kicad_path", str(share))
    config.set("kicad_cli_path", str(cli))
    install = find_kicad(config)
    assert install.share_dir == share
    assert install.cli_path == cli


def test_find_kicad_from_environment(tmp_path, monkeypatch):
    share = tmp_path / "share"
    share.mkdir()
    cli = _fake_cli(tmp_path / "cli")
    monkeypatch.setenv("KICAD_PATH", str(share))
    monkeypatch.setenv("KICAD_CLI", str(cli))
    install = find_kicad()
    assert install.share_dir == share
    assert install.cli_path == cli


def test_find_kicad_skips_missing_config_paths(tmp_path, monkeypatch, config):
    share = tmp_path / "share"
    share.mkdir()
    monkeypatch.setenv("KICAD_PATH", str(share))
    config.set("kicad_path", os.path.join(str(tmp_path), "missing"))
    assert find_kicad(config).share_dir == share
