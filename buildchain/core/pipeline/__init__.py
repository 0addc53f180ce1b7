"""
Build Pipeline
==============

Turns one confirmed user request into a chain of specialist-agent
invocations with bounded feedback loops and durable, resumable state.

Components:
- ConfirmationGate: Trigger detection and time-bounded confirmation
- BuildOrchestrator: Phase sequencer (discovery through delivery)
- RetryLoopController: Verification and review feedback loops
- PhaseRunner: Records and persists one phase attempt
- PhaseExecutor: Agent invocation with a retry budget
- AgentResourceManager: Reference-counted agent definition files
- ChainStateStore: Crash-consistent session progress
"""

from buildchain.core.pipeline.agent_resources import AgentResourceManager
from buildchain.core.pipeline.chain_state import ChainState, ChainStateStore
from buildchain.core.pipeline.confirmation import ConfirmationGate
from buildchain.core.pipeline.executor import PhaseExecutor
from buildchain.core.pipeline.factory import BuildPipeline, create_pipeline
from buildchain.core.pipeline.orchestrator import BuildOrchestrator
from buildchain.core.pipeline.retry_loops import RetryLoopController
from buildchain.core.pipeline.runner import PhaseRunner

__all__ = [
    "AgentResourceManager",
    "BuildOrchestrator",
    "BuildPipeline",
    "ChainState",
    "ChainStateStore",
    "ConfirmationGate",
    "PhaseExecutor",
    "PhaseRunner",
    "RetryLoopController",
    "create_pipeline",
]
