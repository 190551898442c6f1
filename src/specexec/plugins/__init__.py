from specexec.plugins.base import SEVERITIES, DebtDetector, Executor, FailureAnalyzer
from specexec.plugins.registry import PluginRegistry

__all__ = [
    "SEVERITIES",
    "DebtDetector",
    "Executor",
    "FailureAnalyzer",
    "PluginRegistry",
]
