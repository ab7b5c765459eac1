"""
Conversational search agent.

The model plans, optionally searches, drafts a streamed answer and has the
draft checked against the evidence before the turn is persisted.

Components:
- context: bounded, token-budgeted history for a question
- planner: search decision parsed from plan / search-plan tags
- verifier: second, non-streamed call judging the draft against evidence
- session_lock: per-session single-flight serialization
- orchestrator: the state machine tying the steps together
- prompts: system prompts for each call
"""

from .orchestrator import AgentOrchestrator, AgentOutcome, AgentRequest, AgentState

__all__ = [
    "AgentOrchestrator",
    "AgentOutcome",
    "AgentRequest",
    "AgentState",
]
