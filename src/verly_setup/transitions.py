"""Declarative step transition graph for the setup wizard.

The graph is a :class:`dataknobs_common.transitions.TransitionValidator`.
It only answers "is this edge allowed?" and does not own the current
step; the session reducer does. Steps are integers in the session and
strings in the graph, :func:`validate_step_move` converts between the two.

Example:
    ```python
    from verly_setup.transitions import validate_step_move

    validate_step_move(1, 2)   # ok
    validate_step_move(3, 6)   # raises InvalidTransitionError
    ```
"""

from __future__ import annotations

import logging

from dataknobs_common.transitions import (
    InvalidTransitionError as StatusTransitionError,
)
from dataknobs_common.transitions import TransitionValidator

from .exceptions import InvalidTransitionError

logger = logging.getLogger(__name__)

SETUP_STEPS = TransitionValidator(
    "setup_step",
    {
        "1": {"2"},
        "2": {"1", "3"},
        "3": {"4"},
        "4": {"5"},
        "5": {"6"},
        "6": {"7"},
        "7": set(),
    },
)


def allowed_steps(step: int) -> set[int]:
    """Steps reachable in one move from ``step``."""
    return {int(s) for s in SETUP_STEPS.allowed_transitions.get(str(step), set())}


def validate_step_move(current_step: int, target_step: int) -> None:
    """Validate a move between two numbered steps.

    Raises:
        InvalidTransitionError: If the move is not allowed, or
            ``current_step`` is not a step of the wizard.
    """
    try:
        SETUP_STEPS.validate(str(current_step), str(target_step))
    except StatusTransitionError as e:
        logger.debug("%s: rejected move %s -> %s", SETUP_STEPS.name, current_step, target_step)
        allowed = None if e.allowed is None else {int(s) for s in e.allowed}
        raise InvalidTransitionError(current_step, target_step, allowed=allowed) from e
