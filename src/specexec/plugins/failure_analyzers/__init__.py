from specexec.plugins.failure_analyzers.pattern_based import PatternBasedAnalyzer

__all__ = ["PatternBasedAnalyzer"]
