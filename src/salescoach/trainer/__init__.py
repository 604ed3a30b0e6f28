"""Trainer core: session lifecycle, optimistic chat, scoring weights and premium gate.

``TrainerService`` is the entry point for views; the other classes are
exposed for callers that wire the pieces themselves.
"""

from .eligibility import EligibilityGate
from .session_machine import Phase, SessionStateMachine, TrainerState
from .service import TrainerService, build_trainer_service
from .weights import WeightResolver, resolve_weights

__all__ = [
    "EligibilityGate",
    "Phase",
    "SessionStateMachine",
    "TrainerService",
    "TrainerState",
    "WeightResolver",
    "build_trainer_service",
    "resolve_weights",
]
