"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from portalctl.config import AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.state_dir == Path("/var/lib/portalctl")
    assert config.registry_dir == Path("/var/lib/portalctl/registry")
    assert config.logs_dir == Path("/var/log/portalctl")
    assert config.api.base_url == "http://127.0.0.1:8800/manage"
    assert config.api.timeout == 300.0
    assert config.api.token is None


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "portalctl.yml"
    cfg.write_text(
        f"state_dir: {tmp_path / 'state'}\n"
        "api:\n"
        "  base_url: https://manage.example.com/\n"
        "  timeout: 30\n"
        "  token: abc123\n"
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.state_dir == tmp_path / "state"
    assert config.registry_dir == tmp_path / "state" / "registry"
    assert config.api.base_url == "https://manage.example.com"
    assert config.api.timeout == 30.0
    assert config.api.token == "abc123"
    assert config.to_dict()["api"]["token"] == "********"


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "portalctl.yml"
    cfg.write_text("api:\n  timeout: 30\n")
    env = {
        "PORTALCTL_STATE_DIR": str(tmp_path / "state"),
        "PORTALCTL_REGISTRY_DIR": str(tmp_path / "reg"),
        "PORTALCTL_API__TIMEOUT": "45",
        "PORTALCTL_API__BASE_URL": "http://10.0.0.5:8800/manage",
        "UNRELATED": "ignored",
    }

    config = load_config(config_file=cfg, env=env)

    assert config.state_dir == tmp_path / "state"
    assert config.registry_dir == tmp_path / "reg"
    assert config.api.timeout == 45.0
    assert config.api.base_url == "http://10.0.0.5:8800/manage"


def test_env_can_select_config_file(tmp_path: Path) -> None:
    """Environment variable selects an alternate config file."""
    cfg = tmp_path / "override.yml"
    cfg.write_text(f"logs_dir: {tmp_path / 'logs'}\n")

    config = load_config(env={"PORTALCTL_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.logs_dir == tmp_path / "logs"


def test_overrides_win_over_env(tmp_path: Path) -> None:
    """Programmatic overrides are applied last."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={"PORTALCTL_API__TIMEOUT": "45"},
        overrides={"api": {"timeout": 5}},
    )

    assert config.api.timeout == 5.0


def test_invalid_config_file_raises(tmp_path: Path) -> None:
    """A non-mapping document raises a ConfigError."""
    cfg = tmp_path / "bad.yml"
    cfg.write_text("- not-a-mapping\n")

    with pytest.raises(ConfigError):
        load_config(config_file=cfg, env={})


def test_unknown_top_level_key_raises(tmp_path: Path) -> None:
    """Unexpected top-level keys trigger ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("unknown: value\n")

    with pytest.raises(ConfigError, match="Unknown configuration keys"):
        load_config(config_file=cfg, env={})


def test_unknown_api_keys_raise(tmp_path: Path) -> None:
    """Extra api keys produce ConfigError for clarity."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("api:\n  retries: 3\n")

    with pytest.raises(ConfigError, match="Unknown api configuration keys"):
        load_config(config_file=cfg, env={})


def test_non_http_base_url_raises(tmp_path: Path) -> None:
    """The management API must be reached over http(s)."""
    with pytest.raises(ConfigError, match="http"):
        load_config(
            config_file=tmp_path / "missing.yml",
            env={"PORTALCTL_API__BASE_URL": "ftp://manage"},
        )


@pytest.mark.parametrize("timeout", ["0", "-5", "soon", "true"])
def test_invalid_timeout_raises(tmp_path: Path, timeout: str) -> None:
    """Timeouts must be positive numbers."""
    with pytest.raises(ConfigError):
        load_config(
            config_file=tmp_path / "missing.yml",
            env={"PORTALCTL_API__TIMEOUT": timeout},
        )
