"""Watcher set and server configuration."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping, Sequence
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from devwatch.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "devwatch.json"
VSCODE_SOURCE_DIR = "vendor/modules/code-oss-dev"
TSC_TRIGGER = "Watching for file changes"
VSCODE_TRIGGER = "Finished compilation"


class WatcherConfig(BaseModel):
    """One long-running build watcher.

    ``tag`` is the stdout prefix (without brackets). A watcher without a tag has
    its stdout drained but never echoed or matched. ``exit_label`` replaces
    ``name`` in the "terminated unexpectedly" message.
    """

    name: str
    command: list[str]
    cwd: str = "."
    tag: str | None = None
    trigger: str | None = None
    skip_blank: bool = False
    exit_label: str | None = None


class ServerConfig(BaseModel):
    """The restartable application server."""

    runtime: str = "node"
    entry: str = "out/node/entry.js"
    tag: str = "server"


def _default_watchers() -> list[WatcherConfig]:
    return [
        WatcherConfig(
            name="vs code watcher",
            tag="vscode",
            command=["yarn", "watch"],
            cwd=VSCODE_SOURCE_DIR,
            trigger=VSCODE_TRIGGER,
        ),
        WatcherConfig(
            name="vs code web extension watcher",
            command=["yarn", "watch-web"],
            cwd=VSCODE_SOURCE_DIR,
            exit_label="vs code extension watcher",
        ),
        WatcherConfig(
            name="tsc",
            tag="tsc",
            command=["tsc", "--watch", "--pretty", "--preserveWatchOutput"],
            trigger=TSC_TRIGGER,
            skip_blank=True,
        ),
    ]


def plugin_watcher(plugin_dir: str) -> WatcherConfig:
    """Build-watch for an external plugin checkout (``$PLUGIN_DIR``)."""
    return WatcherConfig(
        name="plugin",
        tag="plugin",
        command=["yarn", "build", "--watch"],
        cwd=plugin_dir,
        trigger=TSC_TRIGGER,
        skip_blank=True,
    )


class WatchConfig(BaseModel):
    """Top-level configuration for one supervisor session."""

    root: str = "."
    log_level: str = "INFO"
    watchers: list[WatcherConfig] = Field(default_factory=_default_watchers)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @property
    def root_path(self) -> Path:
        return Path(self.root).expanduser().resolve()


def deep_merge_config(
    user: dict[str, object],
    defaults: dict[str, object],
) -> dict[str, object]:
    """Recursively merge *defaults* into *user*, preserving user values.

    Lists are treated as values: a user-supplied ``watchers`` list replaces the default set.
    """
    result: dict[str, object] = dict(user)
    new_keys = 0
    for key, default_val in defaults.items():
        if key not in result:
            result[key] = default_val
            new_keys += 1
        elif isinstance(default_val, dict) and isinstance(result[key], dict):
            result[key] = deep_merge_config(result[key], default_val)  # type: ignore[arg-type]
    if new_keys:
        logger.debug("Config deep-merge: %d default keys filled in", new_keys)
    return result


def _read_overrides(path: Path) -> dict[str, object]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        msg = f"Failed to read config at {path}: {exc}"
        raise ConfigError(msg) from exc
    if not isinstance(data, dict):
        msg = f"Config at {path} must be a JSON object"
        raise ConfigError(msg)
    return data


def load_config(
    root: str | Path | None = None,
    *,
    config_path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> WatchConfig:
    """Resolve the session configuration.

    Resolution order:
    1. *root* argument, ``$DEVWATCH_ROOT``, or the current directory
    2. *config_path*, ``$DEVWATCH_CONFIG``, or ``<root>/devwatch.json`` if it exists
    3. Pydantic defaults for everything the override file leaves out

    ``$PLUGIN_DIR`` appends the plugin watcher to whatever watcher set results.
    """
    env = os.environ if environ is None else environ

    if root is None:
        root = env.get("DEVWATCH_ROOT") or os.getcwd()
    root_path = Path(root).expanduser().resolve()

    if config_path is None and env.get("DEVWATCH_CONFIG"):
        config_path = env["DEVWATCH_CONFIG"]
    if config_path is not None:
        path = Path(config_path).expanduser()
        if not path.is_file():
            msg = f"Config file not found: {path}"
            raise ConfigError(msg)
    else:
        path = root_path / CONFIG_FILENAME

    user_data: dict[str, object] = _read_overrides(path) if path.is_file() else {}
    if user_data:
        logger.info("Loaded config overrides from %s", path)

    defaults = WatchConfig().model_dump(mode="json")
    merged = deep_merge_config(user_data, defaults)
    if "root" not in user_data:
        merged["root"] = str(root_path)

    try:
        config = WatchConfig.model_validate(merged)
    except ValidationError as exc:
        msg = f"Invalid config: {exc}"
        raise ConfigError(msg) from exc

    plugin_dir = env.get("PLUGIN_DIR")
    if plugin_dir:
        config.watchers.append(plugin_watcher(plugin_dir))

    names = [w.name for w in config.watchers]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        msg = f"Duplicate watcher name(s): {', '.join(duplicates)}"
        raise ConfigError(msg)
    return config


def resolve_cwd(config: WatchConfig, watcher: WatcherConfig) -> Path:
    """Absolute working directory for *watcher*; relative paths hang off the root."""
    cwd = Path(watcher.cwd).expanduser()
    if not cwd.is_absolute():
        cwd = config.root_path / cwd
    return cwd


def server_command(config: WatchConfig, argv: Sequence[str]) -> list[str]:
    """Server argv: runtime, entry module, then the supervisor's own args unchanged."""
    entry = Path(config.server.entry).expanduser()
    if not entry.is_absolute():
        entry = config.root_path / entry
    return [config.server.runtime, str(entry), *argv]
