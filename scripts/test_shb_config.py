"""Tests for settings files and debug output"""

import json

import shb_config


def test_load_credentials_parses_env_file(tmp_path, monkeypatch):
    for key in ("SHB_PERSONNUMMER", "SHB_ACCOUNT", "SHB_AUTH_MODE"):
        monkeypatch.delenv(key, raising=False)
    env = tmp_path / ".env"
    env.write_text("# comment\nSHB_PERSONNUMMER='199001011234'\nSHB_ACCOUNT=\"Lönekonto\"\nnot a setting\n",
                   encoding="utf-8")

    config = shb_config.load_credentials(env)

    assert config == {"SHB_PERSONNUMMER": "199001011234", "SHB_ACCOUNT": "Lönekonto"}


def test_environment_overrides_file(tmp_path, monkeypatch):
    env = tmp_path / ".env"
    env.write_text("SHB_AUTH_MODE=other-device\n", encoding="utf-8")
    monkeypatch.setenv("SHB_AUTH_MODE", "same-device")

    assert shb_config.load_credentials(env)["SHB_AUTH_MODE"] == "same-device"


def test_save_credentials_skips_empty_values(tmp_path):
    path = shb_config.save_credentials({"SHB_PERSONNUMMER": "1", "SHB_ACCOUNT": ""}, tmp_path / "state" / ".env")

    assert path.read_text(encoding="utf-8") == "SHB_PERSONNUMMER=1\n"


def test_set_state_dir_moves_every_path(tmp_path, monkeypatch):
    for name in ("STATE_DIR", "CREDENTIALS_FILE", "DEBUG_DIR", "DEFAULT_OUTPUT_DIR"):
        monkeypatch.setattr(shb_config, name, getattr(shb_config, name))

    shb_config.set_state_dir(tmp_path)

    assert shb_config.CREDENTIALS_FILE == tmp_path / ".env"
    assert shb_config.DEBUG_DIR == tmp_path / "debug"
    assert shb_config.DEFAULT_OUTPUT_DIR == tmp_path / "data"


def test_debug_json_only_when_enabled(tmp_path, monkeypatch):
    monkeypatch.setattr(shb_config, "DEBUG_DIR", tmp_path / "debug")
    monkeypatch.setattr(shb_config, "DEBUG_ENABLED", False)
    assert shb_config.write_debug_json("accounts-raw", {"a": 1}) is None

    shb_config.set_debug(True)
    out = shb_config.write_debug_json("accounts-raw", {"namn": "Lönekonto"})

    assert out.name.endswith("-accounts-raw.json")
    assert json.loads(out.read_text(encoding="utf-8")) == {"namn": "Lönekonto"}


def test_mask_token():
    assert shb_config.mask_token(None) == "<none>"
    assert shb_config.mask_token("short") == "shor..."
    assert shb_config.mask_token("0123456789abcdefghijXYZ") == "0123456789...ijXYZ"
