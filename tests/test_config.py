from __future__ import annotations

from pathlib import Path

import pytest

from velociraptor_packager.core import config


def test_defaults_without_config_file(tmp_path: Path) -> None:
    cfg = config.get_config(config_root=tmp_path)

    assert cfg.max_workers == 4
    assert cfg.max_attempts == 3
    assert cfg.cache_dir == Path("tool_cache")
    assert cfg.output_dir == Path("packages")
    assert cfg.report_formats == ("json", "html")
    assert cfg.extra == {}


def test_yaml_env_and_override_precedence(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    (tmp_path / config.CONFIG_FILE_NAME).write_text(
        "max_workers: 2\nlog_level: debug\ncache_dir: /srv/cache\ncustom_flag: true\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("VRPKG_MAX_WORKERS", "6")
    monkeypatch.setenv("VRPKG_REPORT_FORMATS", "json,txt")

    cfg = config.get_config(
        config_root=tmp_path, overrides={"max_attempts": 5, "output_dir": None}
    )

    assert cfg.max_workers == 6
    assert cfg.log_level == "DEBUG"
    assert cfg.cache_dir == Path("/srv/cache")
    assert cfg.max_attempts == 5
    assert cfg.output_dir == Path("packages")
    assert cfg.report_formats == ("json", "txt")
    assert cfg.extra == {"custom_flag": True}
    assert cfg.as_dict()["custom_flag"] is True


def test_config_dir_from_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / config.CONFIG_FILE_NAME).write_text("gui_port: 9999\n", encoding="utf-8")
    monkeypatch.setenv("VRPKG_CONFIG_DIR", str(tmp_path))

    cfg = config.get_config()

    assert cfg.gui_port == 9999
    assert "config_dir" not in cfg.extra


@pytest.mark.parametrize("key", ["max_workers", "max_attempts"])
def test_invalid_limits_are_rejected(key: str) -> None:
    with pytest.raises(ValueError):
        config.get_config(overrides={key: 0})


def test_non_mapping_config_file_is_rejected(tmp_path: Path) -> None:
    (tmp_path / config.CONFIG_FILE_NAME).write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(TypeError):
        config.get_config(config_root=tmp_path)


def test_coerce_env_value() -> None:
    assert config._coerce_env_value("TRUE") is True
    assert config._coerce_env_value("8") == 8
    assert config._coerce_env_value("2.5") == 2.5
    assert config._coerce_env_value("a, b") == ["a", "b"]
    assert config._coerce_env_value("plain") == "plain"
