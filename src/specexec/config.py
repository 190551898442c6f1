from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from specexec.errors import ConfigError

DEFAULT_CONFIG_FILE = "specexec.toml"


@dataclass(slots=True)
class RuntimeConfig:
    default_timeout_ms: int = 60_000
    stop_on_failure: bool = False
    verbose: bool = False


@dataclass(slots=True)
class EvidenceConfig:
    directory: str = ""
    integrity: bool = True


@dataclass(slots=True)
class PluginsConfig:
    directories: list[str] = field(default_factory=lambda: [".specexec/plugins"])
    disabled: list[str] = field(default_factory=list)
    settings: dict[str, dict[str, Any]] = field(default_factory=dict)


@dataclass(slots=True)
class EngineConfig:
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    evidence: EvidenceConfig = field(default_factory=EvidenceConfig)
    plugins: PluginsConfig = field(default_factory=PluginsConfig)

    @classmethod
    def default(cls) -> EngineConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> EngineConfig:
        plugins = dict(data.get("plugins", {}))
        settings = plugins.pop("settings", {})
        return cls(
            runtime=RuntimeConfig(**data.get("runtime", {})),
            evidence=EvidenceConfig(**data.get("evidence", {})),
            plugins=PluginsConfig(
                **plugins,
                settings={str(name): dict(values) for name, values in settings.items()},
            ),
        )

    def to_dict(self) -> dict:
        return {
            "runtime": {
                "default_timeout_ms": self.runtime.default_timeout_ms,
                "stop_on_failure": self.runtime.stop_on_failure,
                "verbose": self.runtime.verbose,
            },
            "evidence": {
                "directory": self.evidence.directory,
                "integrity": self.evidence.integrity,
            },
            "plugins": {
                "directories": list(self.plugins.directories),
                "disabled": list(self.plugins.disabled),
                "settings": {
                    name: dict(values) for name, values in self.plugins.settings.items()
                },
            },
        }

    def plugin_settings(self, plugin_name: str) -> dict[str, Any]:
        return dict(self.plugins.settings.get(plugin_name, {}))


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def _toml_key(key: str) -> str:
    if key and all(char.isalnum() or char in "-_" for char in key):
        return key
    return json.dumps(key, ensure_ascii=False)


def dumps_toml(config: EngineConfig) -> str:
    data = config.to_dict()
    settings = data["plugins"].pop("settings")
    lines: list[str] = []
    for section in ["runtime", "evidence", "plugins"]:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    for plugin_name, values in settings.items():
        lines.append(f"[plugins.settings.{_toml_key(plugin_name)}]")
        for key, value in values.items():
            lines.append(f"{_toml_key(key)} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> EngineConfig:
    if not path.exists():
        return EngineConfig.default()
    try:
        return EngineConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))
    except (tomllib.TOMLDecodeError, TypeError) as exc:
        raise ConfigError(f"Invalid configuration file {path}: {exc}") from exc


def save_config(path: Path, config: EngineConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
