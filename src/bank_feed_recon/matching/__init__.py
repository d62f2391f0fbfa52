"""Match suggestion."""

from .scoring import CandidateScorer, MatchTarget
from .suggester import MatchSuggester

__all__ = ["CandidateScorer", "MatchTarget", "MatchSuggester"]
