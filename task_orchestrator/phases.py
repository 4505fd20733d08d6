"""
Per-task phase state machine.

    assigned -> coding -> [review] -> merging -> done
    any non-terminal phase -> fail -> blocked | assigned (retry)

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

from typing import Callable, Optional

from .errors import IllegalTransitionError

PHASE_ASSIGNED = "assigned"
PHASE_CODING = "coding"
PHASE_REVIEW = "review"
PHASE_MERGING = "merging"
PHASE_DONE = "done"
PHASE_FAIL = "fail"
PHASE_BLOCKED = "blocked"

TRANSITIONS: dict[str, frozenset[str]] = {
    PHASE_ASSIGNED: frozenset({PHASE_CODING, PHASE_FAIL}),
    PHASE_CODING: frozenset({PHASE_REVIEW, PHASE_MERGING, PHASE_FAIL}),
    PHASE_REVIEW: frozenset({PHASE_MERGING, PHASE_FAIL}),
    PHASE_MERGING: frozenset({PHASE_DONE, PHASE_FAIL}),
    PHASE_FAIL: frozenset({PHASE_BLOCKED, PHASE_ASSIGNED}),
    PHASE_DONE: frozenset(),
    PHASE_BLOCKED: frozenset(),
}

TERMINAL_PHASES = frozenset({PHASE_DONE, PHASE_BLOCKED})


def is_legal_transition(from_phase: str, to_phase: str) -> bool:
    return to_phase in TRANSITIONS.get(from_phase, frozenset())


class PhaseMachine:
    """Tracks one task's current phase and rejects illegal transitions."""

    def __init__(
        self,
        task_id: str,
        phase: str = PHASE_ASSIGNED,
        on_transition: Optional[Callable[[str, str, str], None]] = None,
    ):
        if phase not in TRANSITIONS:
            raise ValueError(f"Unknown phase: {phase}")
        self.task_id = task_id
        self.phase = phase
        self.failure_type: Optional[str] = None
        self.failure_reason = ""
        self.history: list[tuple[str, str]] = []
        self._on_transition = on_transition

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def can_transition(self, to_phase: str) -> bool:
        return is_legal_transition(self.phase, to_phase)

    def transition(self, to_phase: str) -> None:
        """Move to to_phase.

        Raises:
            IllegalTransitionError: to_phase is not reachable from the current phase
        """
        if not self.can_transition(to_phase):
            raise IllegalTransitionError(self.phase, to_phase)
        from_phase = self.phase
        self.phase = to_phase
        self.history.append((from_phase, to_phase))
        if self._on_transition:
            self._on_transition(self.task_id, from_phase, to_phase)

    def fail(self, failure_type: str, reason: str = "") -> None:
        self.transition(PHASE_FAIL)
        self.failure_type = failure_type
        self.failure_reason = reason

    def retry(self) -> None:
        """Start the next attempt from a failed one."""
        self.transition(PHASE_ASSIGNED)
        self.failure_type = None
        self.failure_reason = ""

    def after_coding(self, review_required: bool) -> str:
        """Advance past a successful coding phase. Returns the new phase."""
        self.transition(PHASE_REVIEW if review_required else PHASE_MERGING)
        return self.phase
