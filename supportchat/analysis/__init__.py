"""Analysis scoring and dispatch."""

from .analyzer import AnalysisResult, ConversationAnalyzer, KeywordAnalyzer, summarize
from .dispatcher import AnalysisDispatcher

__all__ = [
    "AnalysisDispatcher",
    "AnalysisResult",
    "ConversationAnalyzer",
    "KeywordAnalyzer",
    "summarize",
]
