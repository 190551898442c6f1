"""Plugin discovery and lookup.

Plugins live in three well-known directories under a plugin root::

    <root>/executors/*.py
    <root>/failure_analyzers/*.py   (or failure-analyzers/)
    <root>/debt_detectors/*.py      (or technical-debt-detectors/)

Each module exposes a module-level ``plugin``: a class (instantiated without
arguments) or a ready instance. Modules whose name starts with ``_`` are
ignored. The built-in plugins shipped in this package are discovered the
same way, before any configured root.

The registry is populated once by :meth:`PluginRegistry.load_all` and
treated as read-only afterwards.
"""

from __future__ import annotations

import hashlib
import importlib
import importlib.util
import inspect
import logging
import sys
from collections.abc import Callable, Iterable
from pathlib import Path
from types import ModuleType
from typing import Any

from specexec.errors import PluginValidationError

logger = logging.getLogger(__name__)

BUILTIN_ROOT = Path(__file__).resolve().parent
BUILTIN_PACKAGE = "specexec.plugins"

EXECUTORS = "executors"
FAILURE_ANALYZERS = "failure_analyzers"
DEBT_DETECTORS = "debt_detectors"

CAPABILITY_DIRECTORIES: dict[str, tuple[str, ...]] = {
    EXECUTORS: ("executors",),
    FAILURE_ANALYZERS: ("failure_analyzers", "failure-analyzers"),
    DEBT_DETECTORS: ("debt_detectors", "technical-debt-detectors"),
}


def _has_name(plugin: Any) -> bool:
    name = getattr(plugin, "name", None)
    return isinstance(name, str) and bool(name.strip())


def _is_priority(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_executor(plugin: Any) -> list[str]:
    if not _has_name(plugin):
        raise PluginValidationError("Executor does not declare a name")
    version = getattr(plugin, "version", None)
    if not isinstance(version, str) or not version.strip():
        raise PluginValidationError(f"Executor {plugin.name} does not declare a version")
    get_action_types = getattr(plugin, "get_action_types", None)
    if not callable(get_action_types):
        raise PluginValidationError(f"Executor {plugin.name} does not implement get_action_types")
    action_types = get_action_types()
    if (
        not isinstance(action_types, (list, tuple))
        or not action_types
        or not all(isinstance(item, str) and item for item in action_types)
    ):
        raise PluginValidationError(f"Executor {plugin.name} declares no action types")
    if not callable(getattr(plugin, "execute", None)):
        raise PluginValidationError(f"Executor {plugin.name} does not implement execute")
    return list(action_types)


def validate_analysis_plugin(plugin: Any, kind: str) -> None:
    if not _has_name(plugin):
        raise PluginValidationError(f"{kind} does not declare a name")
    if not _is_priority(getattr(plugin, "priority", None)):
        raise PluginValidationError(f"{kind} {plugin.name} does not declare a numeric priority")
    if not callable(getattr(plugin, "analyze", None)):
        raise PluginValidationError(f"{kind} {plugin.name} does not implement analyze")


class PluginRegistry:
    def __init__(
        self,
        plugin_roots: Iterable[Path] = (),
        *,
        settings: dict[str, dict[str, Any]] | None = None,
        disabled: Iterable[str] = (),
        include_builtins: bool = True,
    ) -> None:
        self.plugin_roots = [Path(root) for root in plugin_roots]
        self.settings = dict(settings or {})
        self.disabled = set(disabled)
        self.include_builtins = include_builtins
        self._executors_by_type: dict[str, list[Any]] = {}
        self._executors: list[Any] = []
        self._failure_analyzers: list[Any] = []
        self._debt_detectors: list[Any] = []
        self.rejected: list[dict[str, str]] = []
        self._loaded = False

    def load_all(self) -> None:
        if self._loaded:
            return
        if self.include_builtins:
            self._load_root(BUILTIN_ROOT, package=BUILTIN_PACKAGE)
        for root in self.plugin_roots:
            if not root.is_dir():
                logger.debug("Plugin root not found: %s", root)
                continue
            self._load_root(root.resolve(), package=None)
        self._loaded = True
        logger.info(
            "Loaded %d executors, %d failure analyzers, %d debt detectors",
            len(self._executors),
            len(self._failure_analyzers),
            len(self._debt_detectors),
        )

    def _load_root(self, root: Path, *, package: str | None) -> None:
        registrars: dict[str, Callable[[Any], None]] = {
            EXECUTORS: self.register_executor,
            FAILURE_ANALYZERS: self.register_failure_analyzer,
            DEBT_DETECTORS: self.register_debt_detector,
        }
        for capability, directory_names in CAPABILITY_DIRECTORIES.items():
            for directory_name in directory_names:
                directory = root / directory_name
                if not directory.is_dir():
                    continue
                for module_path in sorted(directory.glob("*.py")):
                    if module_path.name.startswith("_"):
                        continue
                    source = str(module_path)
                    try:
                        module = self._import(module_path, capability, package)
                        plugin = self._instantiate(module, source)
                        registrars[capability](plugin)
                    except PluginValidationError as exc:
                        self._reject(source, str(exc))
                    except Exception as exc:
                        self._reject(source, f"{type(exc).__name__}: {exc}")

    @staticmethod
    def _import(module_path: Path, capability: str, package: str | None) -> ModuleType:
        if package is not None:
            return importlib.import_module(f"{package}.{capability}.{module_path.stem}")
        digest = hashlib.sha1(str(module_path).encode("utf-8")).hexdigest()[:10]
        module_name = f"specexec_plugin_{capability}_{module_path.stem}_{digest}"
        spec = importlib.util.spec_from_file_location(module_name, module_path)
        if spec is None or spec.loader is None:
            raise PluginValidationError(f"Cannot import plugin module {module_path}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except BaseException:
            sys.modules.pop(module_name, None)
            raise
        return module

    @staticmethod
    def _instantiate(module: ModuleType, source: str) -> Any:
        exported = getattr(module, "plugin", None)
        if exported is None:
            raise PluginValidationError(f"{source} does not export a plugin", source=source)
        if inspect.isclass(exported):
            if inspect.isabstract(exported):
                raise PluginValidationError(
                    f"{source} exports abstract class {exported.__name__}", source=source
                )
            return exported()
        return exported

    def _reject(self, source: str, reason: str) -> None:
        self.rejected.append({"source": source, "reason": reason})
        logger.warning("Skipping plugin %s: %s", source, reason)

    def _prepare(self, plugin: Any) -> bool:
        if plugin.name in self.disabled:
            logger.info("Plugin %s disabled by configuration", plugin.name)
            return False
        settings = self.settings.get(plugin.name)
        configure = getattr(plugin, "configure", None)
        if settings and callable(configure):
            configure(dict(settings))
        return True

    def register_executor(self, plugin: Any) -> None:
        action_types = validate_executor(plugin)
        if not self._prepare(plugin):
            return
        for action_type in action_types:
            self._executors_by_type.setdefault(action_type, []).append(plugin)
            logger.info("Loaded executor: %s v%s -> %s", plugin.name, plugin.version, action_type)
        self._executors.append(plugin)

    def register_failure_analyzer(self, plugin: Any) -> None:
        validate_analysis_plugin(plugin, "Failure analyzer")
        if not self._prepare(plugin):
            return
        self._failure_analyzers.append(plugin)
        self._failure_analyzers.sort(key=lambda item: item.priority, reverse=True)
        logger.info("Loaded failure analyzer: %s (priority %s)", plugin.name, plugin.priority)

    def register_debt_detector(self, plugin: Any) -> None:
        validate_analysis_plugin(plugin, "Debt detector")
        if not self._prepare(plugin):
            return
        self._debt_detectors.append(plugin)
        self._debt_detectors.sort(key=lambda item: item.priority, reverse=True)
        logger.info("Loaded debt detector: %s (priority %s)", plugin.name, plugin.priority)

    def get_executors_for_action_type(self, action_type: str) -> list[Any]:
        return list(self._executors_by_type.get(action_type, []))

    def get_failure_analyzers(self) -> list[Any]:
        return list(self._failure_analyzers)

    def get_debt_detectors(self) -> list[Any]:
        return list(self._debt_detectors)

    @property
    def executor_count(self) -> int:
        return len(self._executors)

    def list_all(self) -> dict[str, Any]:
        return {
            "executors": {
                action_type: [f"{item.name}@{item.version}" for item in executors]
                for action_type, executors in sorted(self._executors_by_type.items())
            },
            "failureAnalyzers": [
                {"name": item.name, "priority": item.priority} for item in self._failure_analyzers
            ],
            "debtDetectors": [
                {"name": item.name, "priority": item.priority} for item in self._debt_detectors
            ],
            "rejected": list(self.rejected),
        }

    async def cleanup_all(self) -> None:
        for executor in self._executors:
            cleanup = getattr(executor, "cleanup", None)
            if not callable(cleanup):
                continue
            try:
                outcome = cleanup()
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as exc:
                logger.warning("Cleanup failed for executor %s: %s", executor.name, exc)
