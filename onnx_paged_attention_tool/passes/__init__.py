"""Rewrite passes run by the SDPA -> paged-attention transformation.

Order matters: the state-management pass must run before the sequence-length
passes (it wires `max_context_len` into every layer); position-id redirection is
independent and runs last.
"""

from .base import GraphPass, PassContext, PassManager, PatternPass, SchedulingInputs
from .position_ids import PositionIdsPass
from .sequence_length import PrevSequenceLengthPass, TotalSequenceLengthPass
from .state_management import StateManagementPass

__all__ = [
    "GraphPass",
    "PassContext",
    "PassManager",
    "PatternPass",
    "SchedulingInputs",
    "StateManagementPass",
    "PrevSequenceLengthPass",
    "TotalSequenceLengthPass",
    "PositionIdsPass",
]
