"""Interfaces of the collaborators the bus notifies or delivers to."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Protocol

from meshbus.models import AgentState, Message

DeliveryHandler = Callable[[Message], Awaitable[None] | None]


class ActivitySink(Protocol):
    """Receives "agent was just active" notifications."""

    def record_activity(self, agent_id: str) -> None:
        """Record that the agent produced output just now."""


class StateTransitionSink(Protocol):
    """Receives lifecycle transition requests for agents."""

    def request_transition(self, agent_id: str, new_state: AgentState) -> None:
        """Ask the state component to move the agent to ``new_state``."""


class NullActivitySink:
    def record_activity(self, agent_id: str) -> None:
        return None


class NullStateTransitionSink:
    def request_transition(self, agent_id: str, new_state: AgentState) -> None:
        return None
