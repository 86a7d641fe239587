"""Run logging, tool-call context and in-process metrics."""

from tessera.observability.context import ToolCall, current_tool_call, get_current_observer, tool_call
from tessera.observability.logger import ObservabilityLogger
from tessera.observability.metrics import MetricsRegistry, get_metrics_registry, reset_metrics

__all__ = [
    "MetricsRegistry",
    "ObservabilityLogger",
    "ToolCall",
    "current_tool_call",
    "get_current_observer",
    "get_metrics_registry",
    "reset_metrics",
    "tool_call",
]
