"""AI message analysis run by background jobs."""
from analysis.engine import AnalysisEngine

__all__ = ["AnalysisEngine"]
