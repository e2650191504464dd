"""Signal-driven transition table with wildcard overlays."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum

from infra_conversion.errors import JobTransitionError
from infra_conversion.state_store import INITIAL_JOB_STATE, TERMINAL_JOB_STATE

WILDCARD = "*"

JobState = str
Transitions = Mapping[str, Mapping[JobState, JobState]]


class OverlaySignal(StrEnum):
    """Lifecycle signals implemented once by the engine for every job."""

    INITIALIZING = "initializing"
    FINISH = "finish"
    ABORT = "abort"
    CANCEL = "cancel"
    ERROR = "error"


WAITING_TO_START_STATE: JobState = "waiting_to_start"
ABORTING_STATE: JobState = "aborting"
CANCELING_STATE: JobState = "canceling"

OVERLAY_TRANSITIONS: dict[str, dict[JobState, JobState]] = {
    OverlaySignal.INITIALIZING: {INITIAL_JOB_STATE: WAITING_TO_START_STATE},
    OverlaySignal.FINISH: {WILDCARD: TERMINAL_JOB_STATE},
    OverlaySignal.ABORT: {WILDCARD: ABORTING_STATE},
    OverlaySignal.CANCEL: {WILDCARD: CANCELING_STATE},
    OverlaySignal.ERROR: {WILDCARD: WILDCARD},
}


class TransitionTable:
    """Maps ``signal -> {source state -> target state}``.

    Lookup tries the exact ``(signal, state)`` pair first and falls back to the
    ``(signal, '*')`` entry. A ``'*'`` target keeps the current state. The
    terminal state has no outgoing edges, wildcard entries included.
    """

    def __init__(self, transitions: Transitions) -> None:
        self._transitions: dict[str, dict[JobState, JobState]] = {
            str(signal): {str(source): str(target) for source, target in edges.items()}
            for signal, edges in transitions.items()
        }
        for signal, edges in self._transitions.items():
            if TERMINAL_JOB_STATE in edges:
                raise ValueError(f"Signal {signal!r} declares an edge out of terminal state {TERMINAL_JOB_STATE!r}")
            if not edges:
                raise ValueError(f"Signal {signal!r} declares no transitions")

    @classmethod
    def with_overlays(cls, transitions: Transitions) -> TransitionTable:
        merged: dict[str, Mapping[JobState, JobState]] = dict(OVERLAY_TRANSITIONS)
        for signal, edges in transitions.items():
            if str(signal) in merged:
                raise ValueError(f"Signal {signal!r} is reserved for the engine overlay")
            merged[str(signal)] = edges
        return cls(merged)

    @property
    def signals(self) -> frozenset[str]:
        return frozenset(self._transitions)

    @property
    def states(self) -> frozenset[JobState]:
        states: set[JobState] = {INITIAL_JOB_STATE, TERMINAL_JOB_STATE}
        for edges in self._transitions.values():
            states.update(edges.keys())
            states.update(edges.values())
        states.discard(WILDCARD)
        return frozenset(states)

    def allowed(self, signal: str, current: JobState) -> JobState | None:
        if current == TERMINAL_JOB_STATE:
            return None
        edges = self._transitions.get(signal)
        if edges is None:
            return None
        target = edges.get(current)
        if target is None:
            target = edges.get(WILDCARD)
        if target is None:
            return None
        if target == WILDCARD:
            return current
        return target

    def can_apply(self, signal: str, current: JobState) -> bool:
        return self.allowed(signal, current) is not None

    def resolve(self, signal: str, current: JobState) -> JobState:
        target = self.allowed(signal, current)
        if target is None:
            raise JobTransitionError(signal=signal, state=current)
        return target


def is_terminal_state(state: JobState) -> bool:
    return state == TERMINAL_JOB_STATE


__all__ = [
    "ABORTING_STATE",
    "CANCELING_STATE",
    "OVERLAY_TRANSITIONS",
    "OverlaySignal",
    "TransitionTable",
    "WAITING_TO_START_STATE",
    "WILDCARD",
    "is_terminal_state",
]
