from .base import AgentLog, BaseAgent
from .continuity import ContinuityVerifier
from .quality import QualityEvaluator
from .summarizer import ChapterSummarizer, ChapterSummary

__all__ = [
    "AgentLog",
    "BaseAgent",
    "ContinuityVerifier",
    "QualityEvaluator",
    "ChapterSummarizer",
    "ChapterSummary",
]
