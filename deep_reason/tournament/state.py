"""TournamentGraphState: the state object passed between round-loop nodes.

The graph carries only identifiers and loop counters.  Hypotheses, rounds
and sessions live on the Tournament aggregate, which the nodes look up
through the RoundRunner they close over.
"""

from __future__ import annotations

from typing import TypedDict


class TournamentGraphState(TypedDict, total=False):
    """LangGraph state for the tournament round loop.

    Fields:
        tournament_id: Id of the tournament being run.
        round_number: Last round started (0 before the first round).
        max_rounds: Safety cap on loop count.
        outcome: "running", "concluded", "failed" or "cancelled".
    """

    tournament_id: str
    round_number: int
    max_rounds: int
    outcome: str
