"""Per-turn state machine and response modes.

    IDLE -> EMBEDDED -> SEARCHED -> NO_RESULTS | RESULTS_FOUND
         -> GENERATING -> STREAMING -> COMPLETED

FAILED and CANCELLED are reachable from every non-terminal state.
"""
from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, List

import structlog

logger = structlog.get_logger("rag.pipeline.state")


class ResponseMode(str, Enum):
    STRICT = "strict"
    HYBRID = "hybrid"

    @classmethod
    def parse(cls, value: str | None) -> "ResponseMode":
        normalized = (value or "").strip().lower()
        if normalized == cls.STRICT.value:
            return cls.STRICT
        if normalized != cls.HYBRID.value:
            logger.warning("Unknown RAG mode, using hybrid", mode=value)
        return cls.HYBRID


class TurnState(str, Enum):
    IDLE = "idle"
    EMBEDDED = "embedded"
    SEARCHED = "searched"
    NO_RESULTS = "no_results"
    RESULTS_FOUND = "results_found"
    GENERATING = "generating"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES: FrozenSet[TurnState] = frozenset(
    {TurnState.COMPLETED, TurnState.FAILED, TurnState.CANCELLED}
)

_FORWARD: Dict[TurnState, FrozenSet[TurnState]] = {
    TurnState.IDLE: frozenset({TurnState.EMBEDDED}),
    TurnState.EMBEDDED: frozenset({TurnState.SEARCHED}),
    TurnState.SEARCHED: frozenset({TurnState.NO_RESULTS, TurnState.RESULTS_FOUND}),
    TurnState.NO_RESULTS: frozenset({TurnState.GENERATING}),
    TurnState.RESULTS_FOUND: frozenset({TurnState.GENERATING}),
    TurnState.GENERATING: frozenset({TurnState.STREAMING}),
    TurnState.STREAMING: frozenset({TurnState.COMPLETED}),
}


class InvalidTransition(RuntimeError):
    pass


def allowed_transitions(state: TurnState) -> FrozenSet[TurnState]:
    if state in TERMINAL_STATES:
        return frozenset()
    return _FORWARD[state] | {TurnState.FAILED, TurnState.CANCELLED}


class TurnTracker:
    """Records the states one turn passes through and rejects illegal moves."""

    def __init__(self, turn_id: str):
        self.turn_id = turn_id
        self.history: List[TurnState] = [TurnState.IDLE]

    @classmethod
    def streaming(cls, turn_id: str) -> "TurnTracker":
        """A tracker already past retrieval, for chunk sources used on their own."""
        tracker = cls(turn_id)
        for state in (
            TurnState.EMBEDDED,
            TurnState.SEARCHED,
            TurnState.RESULTS_FOUND,
            TurnState.GENERATING,
            TurnState.STREAMING,
        ):
            tracker.advance(state)
        return tracker

    @property
    def state(self) -> TurnState:
        return self.history[-1]

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self, new_state: TurnState) -> None:
        if new_state not in allowed_transitions(self.state):
            raise InvalidTransition(f"{self.state.value} -> {new_state.value}")
        self.history.append(new_state)
        logger.debug("Turn state changed", turn_id=self.turn_id, state=new_state.value)

    def fail(self) -> None:
        if not self.is_terminal:
            self.advance(TurnState.FAILED)

    def cancel(self) -> None:
        if not self.is_terminal:
            self.advance(TurnState.CANCELLED)
