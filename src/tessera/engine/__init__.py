"""Task execution: state machine, tool runtime, delegation and the engine loop."""

from tessera.engine.delegation import DelegationLayer
from tessera.engine.engine import AgentProfile, ExecutionEngine
from tessera.engine.remote import RemoteEngine
from tessera.engine.task import ALLOWED_TRANSITIONS, Task
from tessera.engine.tools import ToolRuntime

__all__ = [
    "ALLOWED_TRANSITIONS",
    "AgentProfile",
    "DelegationLayer",
    "ExecutionEngine",
    "RemoteEngine",
    "Task",
    "ToolRuntime",
]
