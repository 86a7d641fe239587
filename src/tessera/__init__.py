"""Tessera: a runtime for autonomous, delegating AI agents.

Tasks are advanced by an ExecutionEngine through a bounded reasoning loop.
Each step may call a tool or delegate to another agent. Outputs are signed,
and completed tasks are written to perpetual vector memory.
"""

from tessera.core.types import TaskOutcome, TaskStatus
from tessera.engine import AgentProfile, DelegationLayer, ExecutionEngine
from tessera.errors import TesseraError
from tessera.registry import CapabilityRegistry
from tessera.runtime import AgentRuntime

__version__ = "0.1.0"

__all__ = [
    "AgentProfile",
    "AgentRuntime",
    "CapabilityRegistry",
    "DelegationLayer",
    "ExecutionEngine",
    "TaskOutcome",
    "TaskStatus",
    "TesseraError",
    "__version__",
]
