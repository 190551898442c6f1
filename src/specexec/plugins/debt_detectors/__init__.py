from specexec.plugins.debt_detectors.performance import PerformanceDetector

__all__ = ["PerformanceDetector"]
