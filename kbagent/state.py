from __future__ import annotations

from enum import Enum


class AgentState(str, Enum):
    ACCEPTED = "accepted"
    PLANNING = "planning"
    THINKING = "thinking"
    TOOL_CALLING = "tool_calling"
    VERIFYING = "verifying"
    RESPONDING = "responding"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {AgentState.COMPLETED, AgentState.FAILED, AgentState.TIMEOUT, AgentState.CANCELLED}
)

_ESCAPES = {AgentState.FAILED, AgentState.TIMEOUT, AgentState.CANCELLED}

_TRANSITIONS: dict[AgentState, set[AgentState]] = {
    AgentState.ACCEPTED: {AgentState.PLANNING},
    AgentState.PLANNING: {AgentState.THINKING},
    AgentState.THINKING: {AgentState.TOOL_CALLING, AgentState.RESPONDING},
    AgentState.TOOL_CALLING: {AgentState.VERIFYING, AgentState.PLANNING, AgentState.THINKING},
    AgentState.VERIFYING: {AgentState.PLANNING, AgentState.THINKING, AgentState.TOOL_CALLING},
    AgentState.RESPONDING: {AgentState.COMPLETED},
}


class InvalidTransition(RuntimeError):
    pass


def can_transition(current: AgentState, target: AgentState) -> bool:
    if current.is_terminal:
        return False
    if target in _ESCAPES:
        return True
    return target in _TRANSITIONS.get(current, set())


def check_transition(current: AgentState, target: AgentState) -> AgentState:
    if not can_transition(current, target):
        raise InvalidTransition(f"Illegal run state transition: {current.value} -> {target.value}")
    return target
