"""Per-task run logger with token usage accounting."""

from __future__ import annotations

import json
import os
import tempfile
import time
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

from tessera.core.types import Usage


class ObservabilityLogger:
    """Event and metric trace for a single task.

    Entries are always kept in memory. When ``base_dir`` is given they are
    also appended to ``<base_dir>/<run_id>/logs.jsonl`` and a summary is
    written atomically on ``finalize``.
    """

    def __init__(
        self,
        run_id: str,
        slug: Optional[str] = None,
        base_dir: Optional[Path] = None,
        span_id: Optional[str] = None,
        parent_span_id: Optional[str] = None,
    ):
        self.run_id = run_id
        self.slug = slug
        self.base_dir = base_dir
        self.run_dir: Optional[Path] = base_dir / run_id if base_dir is not None else None
        if self.run_dir is not None:
            self.run_dir.mkdir(parents=True, exist_ok=True)
        self.logs: list[dict[str, Any]] = []
        self.metrics: dict[str, list[dict[str, Any]]] = {}
        self.span_id = span_id or f"span-{uuid.uuid4().hex[:16]}"
        self.parent_span_id = parent_span_id
        self.usage = Usage()

    @property
    def persistent(self) -> bool:
        return self.run_dir is not None

    def events(self, name: str) -> list[dict[str, Any]]:
        return [entry for entry in self.logs if entry["event"] == name]

    def _atomic_write(self, path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w", delete=False, dir=path.parent, encoding="utf-8"
        ) as tmp:
            tmp.write(payload)
            tmp_path = Path(tmp.name)
        os.replace(tmp_path, path)

    def _write_json(self, path: Path, content: Any) -> None:
        payload = json.dumps(content, ensure_ascii=False, indent=2, default=str)
        self._atomic_write(path, payload + "\n")

    def log(self, event: str, data: Dict[str, Any]) -> None:
        """Record an event tagged with this task's span."""
        entry = {
            "run_id": self.run_id,
            "event": event,
            "timestamp": time.time(),
            "data": data,
            "span_id": self.span_id,
        }
        if self.parent_span_id:
            entry["parent_span_id"] = self.parent_span_id
        self.logs.append(entry)
        if self.run_dir is not None:
            with open(self.run_dir / "logs.jsonl", "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")

    def metric(self, key: str, value: Any) -> None:
        """Record a metric value."""
        self.metrics.setdefault(key, []).append(
            {"run_id": self.run_id, "value": value, "timestamp": time.time()}
        )

    def record_usage(self, usage: Usage, *, step: Optional[int] = None) -> None:
        """Accumulate token usage reported by a gateway call or sub-task."""
        self.usage = self.usage.accumulate(usage)
        self.metric("input_tokens", usage.input_tokens)
        self.metric("output_tokens", usage.output_tokens)
        if step is not None:
            self.metric("step", step)

    def finalize(self, status: str, error_kind: Optional[str] = None) -> dict[str, Any]:
        """Build the run summary and, when persistent, write summary.json."""
        summary: dict[str, Any] = {
            "run_id": self.run_id,
            "status": status,
            "total_logs": len(self.logs),
            "metrics": self.metrics,
            "span_id": self.span_id,
            "usage": self.usage.model_dump(),
        }
        if self.slug:
            summary["slug"] = self.slug
        if self.parent_span_id:
            summary["parent_span_id"] = self.parent_span_id
        if error_kind:
            summary["error_kind"] = error_kind
        if self.run_dir is not None:
            summary["run_dir"] = str(self.run_dir)
            self._write_json(self.run_dir / "summary.json", summary)
        return summary


__all__ = ["ObservabilityLogger"]
