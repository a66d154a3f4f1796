from leadflow.services.state_machine import (
    InvalidTransitionError,
    Move,
    Phase,
    Transition,
    can_transition,
    decide_transition,
    transition,
)

__all__ = [
    "InvalidTransitionError",
    "Move",
    "Phase",
    "Transition",
    "can_transition",
    "decide_transition",
    "transition",
]
