"""Tournament domain primitives: state machines, participant refs, events."""

from tourney.tournament.refs import Caller, ParticipantRef, ParticipantType, Role
from tourney.tournament.state_machine import StateMachine, Transition

__all__ = [
    "Caller",
    "ParticipantRef",
    "ParticipantType",
    "Role",
    "StateMachine",
    "Transition",
]
