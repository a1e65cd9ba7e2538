"""Graph builder: constructs the LangGraph tournament round loop.

Topology:

    START → run_round → eliminate → check_conclusion
                 ▲                      ├── "end"  → END
                 └──────── "loop" ──────┘

The graph is compiled once per scheduler and invoked once per tournament.
"""

from __future__ import annotations

from langgraph.graph import END, START, StateGraph

from deep_reason.tournament.nodes import (
    RoundRunner,
    check_conclusion,
    make_eliminate,
    make_run_round,
)
from deep_reason.tournament.state import TournamentGraphState


def build_tournament_graph(runner: RoundRunner):
    """Construct and compile the round-loop graph.

    Args:
        runner: Executes rounds and elimination against live tournaments.

    Returns:
        A compiled LangGraph application.
    """
    graph = StateGraph(TournamentGraphState)

    graph.add_node("run_round", make_run_round(runner))
    graph.add_node("eliminate", make_eliminate(runner))

    graph.add_edge(START, "run_round")
    graph.add_edge("run_round", "eliminate")
    graph.add_conditional_edges(
        "eliminate",
        check_conclusion,
        {
            "end": END,
            "loop": "run_round",
        },
    )

    return graph.compile()


def recursion_limit(max_rounds: int) -> int:
    """Graph steps needed for ``max_rounds`` rounds, with headroom."""
    return 2 * max_rounds + 5
