"""Allowed sync process state transitions.

FETCHING_PAGE belongs to the cursor strategy, FETCHING_TOTAL and
QUEUING_PAGES to the page strategy. ERROR is reachable from every
non-terminal state. COMPLETED and ERROR accept nothing.
"""

from __future__ import annotations

from src.bridge.sync.schemas import TERMINAL_STATES, ProcessState

ALLOWED_TRANSITIONS: dict[ProcessState, frozenset[ProcessState]] = {
    ProcessState.INITIALIZING: frozenset({
        ProcessState.FETCHING_TOTAL,
        ProcessState.FETCHING_PAGE,
        ProcessState.PROCESSING_BATCHES,
        ProcessState.ERROR,
    }),
    ProcessState.FETCHING_TOTAL: frozenset({
        ProcessState.QUEUING_PAGES,
        ProcessState.PROCESSING_BATCHES,
        ProcessState.COMPLETED,
        ProcessState.ERROR,
    }),
    ProcessState.QUEUING_PAGES: frozenset({
        ProcessState.PROCESSING_BATCHES,
        ProcessState.ERROR,
    }),
    ProcessState.FETCHING_PAGE: frozenset({
        ProcessState.PROCESSING_BATCHES,
        ProcessState.COMPLETED,
        ProcessState.ERROR,
    }),
    ProcessState.PROCESSING_BATCHES: frozenset({
        ProcessState.COMPLETED,
        ProcessState.ERROR,
    }),
    ProcessState.COMPLETED: frozenset(),
    ProcessState.ERROR: frozenset(),
}


def can_transition(from_state: ProcessState, to_state: ProcessState) -> bool:
    """Return True if ``to_state`` may follow ``from_state``.

    Self-transitions are allowed for non-terminal states so a context
    patch can be written without moving the state.
    """
    if from_state in TERMINAL_STATES:
        return False
    if from_state == to_state:
        return True
    return to_state in ALLOWED_TRANSITIONS[from_state]
