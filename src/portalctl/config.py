"""Layered configuration for portalctl.

Later layers win:

1. built-in :data:`DEFAULTS`
2. the YAML config file (``/etc/portalctl/config.yml``, ``--config-file`` or
   ``PORTALCTL_CONFIG_FILE``)
3. ``PORTALCTL_*`` environment variables, ``__`` separating nested keys::

       export PORTALCTL_API__BASE_URL=https://manage.example.com/manage
       export PORTALCTL_API__TIMEOUT=60

4. programmatic overrides

Environment values go through ``yaml.safe_load`` so ``60`` arrives as a number
and ``false`` as a boolean. The merged tree is validated once and frozen into
:class:`AppConfig`, which callers pass around explicitly.
"""
from __future__ import annotations

import os
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path

import yaml

ENV_PREFIX = "PORTALCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
DEFAULT_CONFIG_FILE = "/etc/portalctl/config.yml"


class ConfigError(RuntimeError):
    """Raised when a configuration layer is unreadable or invalid."""


DEFAULTS: dict[str, object] = {
    "state_dir": "/var/lib/portalctl",
    "registry_dir": None,
    "logs_dir": "/var/log/portalctl",
    "api": {
        "base_url": "http://127.0.0.1:8800/manage",
        "timeout": 300.0,
        "token": None,
    },
}

TOP_LEVEL_KEYS = frozenset({"config_file", *DEFAULTS})
API_KEYS = frozenset({"base_url", "timeout", "token"})


@dataclass(frozen=True)
class ApiConfig:
    """Where and how to reach the management API."""

    base_url: str = "http://127.0.0.1:8800/manage"
    timeout: float = 300.0
    token: str | None = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> ApiConfig:
        """Validate the ``api`` section."""
        _reject_unknown(raw, API_KEYS, "api configuration keys")
        base_url = str(raw.get("base_url") or cls.base_url).strip()
        if not base_url.startswith(("http://", "https://")):
            raise ConfigError(f"api.base_url must be an http(s) URL. Got {base_url!r}.")
        token = raw.get("token")
        token_text = str(token).strip() if token is not None else ""
        return cls(
            base_url=base_url.rstrip("/"),
            timeout=_timeout(raw.get("timeout", cls.timeout)),
            token=token_text or None,
        )

    def to_dict(self) -> dict[str, object]:
        """Return a printable form with the token masked."""
        return {
            "base_url": self.base_url,
            "timeout": self.timeout,
            "token": "********" if self.token else None,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved portalctl settings."""

    config_file: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    api: ApiConfig

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> AppConfig:
        """Validate a fully merged configuration tree."""
        _reject_unknown(raw, TOP_LEVEL_KEYS, "configuration keys")
        state_dir = _path(raw.get("state_dir"), "state_dir")
        registry_raw = raw.get("registry_dir")
        return cls(
            config_file=_path(raw.get("config_file"), "config_file"),
            state_dir=state_dir,
            registry_dir=(
                _path(registry_raw, "registry_dir") if registry_raw else state_dir / "registry"
            ),
            logs_dir=_path(raw.get("logs_dir"), "logs_dir"),
            api=ApiConfig.from_mapping(_section(raw.get("api"), "api")),
        )

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable form for ``config show``."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "api": self.api.to_dict(),
        }


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Merge every configuration layer and return the validated result."""
    environ = os.environ if env is None else env
    path = Path(config_file or environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_FILE)

    tree: dict[str, object] = {}
    for layer in _layers(path, environ, overrides):
        _overlay(tree, layer)
    tree["config_file"] = str(path)
    return AppConfig.from_mapping(tree)


def _layers(
    path: Path,
    environ: Mapping[str, str],
    overrides: Mapping[str, object] | None,
) -> Iterator[Mapping[str, object]]:
    yield DEFAULTS
    yield _read_file(path)
    yield _env_layer(environ)
    if overrides:
        yield overrides


def _read_file(path: Path) -> Mapping[str, object]:
    if not path.is_file():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return data


def _env_layer(environ: Mapping[str, str]) -> dict[str, object]:
    layer: dict[str, object] = {}
    for key in sorted(environ):
        if not key.startswith(ENV_PREFIX) or key == CONFIG_ENV_VAR:
            continue
        *parents, leaf = [part.lower() for part in key[len(ENV_PREFIX) :].split("__")]
        if not leaf or not all(parents):
            continue
        node = layer
        for part in parents:
            child = node.setdefault(part, {})
            if not isinstance(child, dict):
                raise ConfigError(f"{key} nests below the scalar setting {part!r}.")
            node = child
        raw = environ[key].strip()
        try:
            node[leaf] = yaml.safe_load(raw)
        except yaml.YAMLError:
            node[leaf] = raw
    return layer


def _overlay(target: dict[str, object], layer: Mapping[str, object]) -> None:
    for key, value in layer.items():
        if not isinstance(key, str):
            raise ConfigError(f"Configuration keys must be strings. Got {key!r}.")
        if isinstance(value, Mapping):
            current = target.get(key)
            merged = dict(current) if isinstance(current, dict) else {}
            _overlay(merged, value)
            target[key] = merged
        else:
            target[key] = value


def _reject_unknown(raw: Mapping[str, object], allowed: frozenset[str], label: str) -> None:
    unknown = sorted(set(raw) - allowed)
    if unknown:
        raise ConfigError(f"Unknown {label}: {', '.join(unknown)}.")


def _section(value: object, label: str) -> Mapping[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    return value


def _path(value: object, label: str) -> Path:
    if isinstance(value, (str, Path)) and str(value).strip():
        return Path(value).expanduser()
    raise ConfigError(f"Expected {label} to be a filesystem path. Got {value!r}.")


def _timeout(value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ConfigError(f"Expected api.timeout to be a number. Got {value!r}.")
    try:
        seconds = float(value)
    except ValueError as exc:
        raise ConfigError(f"Invalid number for api.timeout: {value!r}.") from exc
    if seconds <= 0:
        raise ConfigError(f"api.timeout must be greater than zero. Got {seconds}.")
    return seconds


__all__ = [
    "ApiConfig",
    "AppConfig",
    "ConfigError",
    "load_config",
]
