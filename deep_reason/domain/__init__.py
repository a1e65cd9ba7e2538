from deep_reason.domain.context import AnalysisContext, EntryPoint, FocusArea, PartialFinding
from deep_reason.domain.hypothesis import Hypothesis
from deep_reason.domain.session import AnalysisSession, FinalSummary, SessionSnapshot, TurnResult
from deep_reason.domain.tournament import Tournament, TournamentConfig, TournamentSnapshot
from deep_reason.domain.turn import CodeReference, ConversationTurn, TurnPayload

__all__ = [
    "AnalysisContext",
    "AnalysisSession",
    "CodeReference",
    "ConversationTurn",
    "EntryPoint",
    "FinalSummary",
    "FocusArea",
    "Hypothesis",
    "PartialFinding",
    "SessionSnapshot",
    "Tournament",
    "TournamentConfig",
    "TournamentSnapshot",
    "TurnPayload",
    "TurnResult",
]
