"""
Capability registry for tools and sub-agents.

Holds name -> CapabilityDescriptor lookups and structural validation of
invocation payloads. The active state lives in an immutable
``RegistrySnapshot`` that is replaced wholesale (copy-on-write) on every
registration or reload, so a task holding a snapshot is never affected by a
concurrent hot reload.

Descriptors can also be loaded from a YAML catalog::

    capabilities:
      - name: balance_of
        kind: tool
        entrypoint: "tools/ledger.py:balance_of"
        input_schema:
          type: object
          properties: {account: {type: string}}
          required: [account]
"""

from __future__ import annotations

import functools
import importlib
import importlib.util
import inspect
import logging
import sys
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, cast

import yaml

from tessera.core.types import CapabilityDescriptor, CapabilityKind
from tessera.errors import CapabilityNotFound, DuplicateCapability
from tessera.schema import ValidationOutcome, check_schema, validate_payload

logger = logging.getLogger(__name__)

# Prefixes used when agent capabilities are presented to a model next to tools
AGENT_PREFIX = "LA_"
REMOTE_AGENT_PREFIX = "RA_"

ToolCallable = Callable[[Dict[str, Any]], Awaitable[Any]]


def is_async_callable(fn: Any) -> bool:
    """
    Check if a callable is async (coroutine function).

    Handles plain ``async def`` functions, objects with an async
    ``__call__`` and ``functools.partial`` wrappers around either.
    """
    if inspect.iscoroutinefunction(fn):
        return True

    if isinstance(fn, functools.partial):
        return is_async_callable(fn.func)

    call_method = getattr(fn, "__call__", None)
    if call_method and inspect.iscoroutinefunction(call_method):
        return True

    return False


@dataclass(frozen=True)
class RegistrySnapshot:
    """Immutable view of registered capabilities at one point in time."""

    version: int
    descriptors: Mapping[str, CapabilityDescriptor] = field(
        default_factory=lambda: MappingProxyType({})
    )
    implementations: Mapping[str, ToolCallable] = field(
        default_factory=lambda: MappingProxyType({})
    )

    @staticmethod
    def normalize_name(name: str) -> str:
        for prefix in (AGENT_PREFIX, REMOTE_AGENT_PREFIX):
            if name.startswith(prefix):
                return name[len(prefix):]
        return name

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.normalize_name(name) in self.descriptors

    def names(self) -> list[str]:
        return sorted(self.descriptors)

    def resolve(self, name: str) -> CapabilityDescriptor:
        """Return the descriptor for ``name`` or raise CapabilityNotFound."""
        descriptor = self.descriptors.get(self.normalize_name(name))
        if descriptor is None:
            raise CapabilityNotFound(f"Capability '{name}' is not registered")
        return descriptor

    def implementation(self, name: str) -> Optional[ToolCallable]:
        return self.implementations.get(self.normalize_name(name))

    def validate(self, name: str, payload: Any) -> ValidationOutcome:
        """Validate invocation arguments against the input schema."""
        descriptor = self.resolve(name)
        if not isinstance(payload, Mapping):
            return ValidationOutcome(
                ok=False, detail=f"arguments for '{descriptor.name}' must be an object"
            )
        return validate_payload(descriptor.input_schema, dict(payload), name=f"{descriptor.name}_input")

    def validate_output(self, name: str, payload: Any) -> ValidationOutcome:
        """Validate a capability result payload against the output schema."""
        descriptor = self.resolve(name)
        return validate_payload(descriptor.output_schema, payload, name=f"{descriptor.name}_output")

    def definitions(
        self,
        *,
        kind: Optional[CapabilityKind] = None,
        names: Optional[Iterable[str]] = None,
        with_agent_prefix: bool = False,
    ) -> tuple[CapabilityDescriptor, ...]:
        """Descriptors exposed to the model, optionally filtered.

        With ``with_agent_prefix`` agent capabilities are renamed ``LA_<name>``
        (``RA_<name>`` when served by a remote engine) so a model can tell them
        apart from tools; ``resolve`` strips the prefix again.
        """
        wanted = {self.normalize_name(item) for item in names} if names is not None else None
        selected: list[CapabilityDescriptor] = []
        for name in sorted(self.descriptors):
            descriptor = self.descriptors[name]
            if kind is not None and descriptor.kind != kind:
                continue
            if wanted is not None and name not in wanted:
                continue
            if with_agent_prefix and descriptor.kind == "agent":
                prefix = REMOTE_AGENT_PREFIX if descriptor.endpoint else AGENT_PREFIX
                descriptor = descriptor.model_copy(update={"name": f"{prefix}{name}"})
            selected.append(descriptor)
        return tuple(selected)


class CapabilityRegistry:
    """Thread-safe owner of the active RegistrySnapshot."""

    def __init__(
        self,
        descriptors: Iterable[CapabilityDescriptor] = (),
        *,
        base_path: Optional[Path] = None,
    ) -> None:
        self.base_path = base_path or Path.cwd()
        self._lock = threading.RLock()
        self._snapshot = RegistrySnapshot(version=0)
        for descriptor in descriptors:
            self.register(descriptor)

    def snapshot(self) -> RegistrySnapshot:
        """Return the current snapshot (a stable reference for one reasoning step)."""
        return self._snapshot

    @property
    def version(self) -> int:
        return self._snapshot.version

    def register(
        self,
        descriptor: CapabilityDescriptor,
        implementation: Optional[ToolCallable] = None,
    ) -> CapabilityDescriptor:
        """Add a descriptor; raises DuplicateCapability if the name is taken."""
        self._check_schemas(descriptor)
        if implementation is not None:
            self._ensure_async(descriptor.name, implementation)
        with self._lock:
            current = self._snapshot
            if descriptor.name in current.descriptors:
                raise DuplicateCapability(f"Capability '{descriptor.name}' is already registered")
            descriptors = dict(current.descriptors)
            descriptors[descriptor.name] = descriptor
            implementations = dict(current.implementations)
            if implementation is not None:
                implementations[descriptor.name] = implementation
            self._publish(descriptors, implementations)
        logger.debug("Registered %s capability '%s'", descriptor.kind, descriptor.name)
        return descriptor

    def bind(self, name: str, implementation: ToolCallable) -> None:
        """Attach an async implementation to an already registered tool."""
        self._ensure_async(name, implementation)
        with self._lock:
            current = self._snapshot
            descriptor = current.resolve(name)
            implementations = dict(current.implementations)
            implementations[descriptor.name] = implementation
            self._publish(dict(current.descriptors), implementations)

    def resolve(self, name: str) -> CapabilityDescriptor:
        return self._snapshot.resolve(name)

    def validate(self, name: str, payload: Any) -> ValidationOutcome:
        return self._snapshot.validate(name, payload)

    def swap(
        self,
        descriptors: Iterable[CapabilityDescriptor],
        implementations: Optional[Mapping[str, ToolCallable]] = None,
    ) -> RegistrySnapshot:
        """Atomically replace the whole registry (hot reload)."""
        new_descriptors: dict[str, CapabilityDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.name in new_descriptors:
                raise DuplicateCapability(
                    f"Capability '{descriptor.name}' appears twice in reload set"
                )
            self._check_schemas(descriptor)
            new_descriptors[descriptor.name] = descriptor

        new_implementations = dict(implementations or {})
        for name, implementation in new_implementations.items():
            self._ensure_async(name, implementation)

        with self._lock:
            # Keep bindings for tools that survive the reload
            for name, implementation in self._snapshot.implementations.items():
                if name in new_descriptors:
                    new_implementations.setdefault(name, implementation)
            self._publish(new_descriptors, new_implementations)
            logger.info(
                "Registry reloaded to version %d with %d capabilities",
                self._snapshot.version,
                len(new_descriptors),
            )
            return self._snapshot

    def load_catalog(self, path: Path, *, replace: bool = False) -> list[str]:
        """
        Load capability descriptors from a YAML catalog.

        Args:
            path: Catalog file with a top-level ``capabilities`` sequence
            replace: Swap the whole registry instead of adding to it

        Returns:
            Names of the loaded capabilities

        Raises:
            FileNotFoundError: If the catalog does not exist
            ValueError: If the YAML is malformed
        """
        catalog_path = path if path.is_absolute() else self.base_path / path
        if not catalog_path.exists():
            raise FileNotFoundError(f"Capability catalog not found at {catalog_path}")

        with open(catalog_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)

        if raw is None:
            raw = {}
        if not isinstance(raw, Mapping):
            raise ValueError(f"Capability catalog at {catalog_path} must be a mapping")

        entries = raw.get("capabilities", [])
        if not isinstance(entries, Sequence) or isinstance(entries, (str, bytes)):
            raise ValueError(f"'capabilities' must be a sequence in {catalog_path}")

        descriptors: list[CapabilityDescriptor] = []
        implementations: dict[str, ToolCallable] = {}
        for entry in entries:
            if not isinstance(entry, Mapping):
                continue
            descriptor = CapabilityDescriptor(
                name=str(entry.get("name", "")),
                kind=cast(CapabilityKind, str(entry.get("kind", "tool"))),
                description=str(entry.get("description", "")),
                input_schema=self._ensure_dict(entry.get("input_schema", {"type": "object"})),
                output_schema=self._ensure_dict(entry.get("output_schema", {})),
                entrypoint=entry.get("entrypoint") or None,
                transient_errors=tuple(
                    str(item) for item in entry.get("transient_errors", []) if isinstance(item, str)
                ),
            )
            descriptors.append(descriptor)
            if descriptor.kind == "tool" and descriptor.entrypoint:
                implementations[descriptor.name] = cast(
                    ToolCallable, self.resolve_entrypoint(descriptor.entrypoint)
                )

        if replace:
            self.swap(descriptors, implementations)
        else:
            for descriptor in descriptors:
                self.register(descriptor, implementations.get(descriptor.name))
        return [descriptor.name for descriptor in descriptors]

    def resolve_entrypoint(self, entrypoint: str) -> Callable[..., Any]:
        """
        Resolve entrypoint string to callable.

        Args:
            entrypoint: ``path/to/module.py:callable`` (relative to base_path)
                or ``package.module:callable``

        Raises:
            ValueError: If entrypoint format is invalid
            ImportError: If module cannot be loaded
            AttributeError: If callable not found in module
        """
        if ":" not in entrypoint:
            raise ValueError(f"Invalid entrypoint format: {entrypoint} (expected 'module:callable')")

        module_ref, callable_name = entrypoint.rsplit(":", 1)

        if module_ref.endswith(".py"):
            module_path = self.base_path / module_ref
            if not module_path.exists():
                raise FileNotFoundError(f"Entrypoint module not found: {module_path}")
            spec = importlib.util.spec_from_file_location(
                f"_tessera_dynamic_{abs(hash(str(module_path)))}", module_path
            )
            if spec is None or spec.loader is None:
                raise ImportError(f"Cannot create module spec for {module_path}")
            module = importlib.util.module_from_spec(spec)
            sys.modules[spec.name] = module
            spec.loader.exec_module(module)
        else:
            module = importlib.import_module(module_ref)

        if not hasattr(module, callable_name):
            raise AttributeError(f"Callable '{callable_name}' not found in {module_ref}")

        attr = getattr(module, callable_name)
        if not callable(attr):
            raise TypeError(f"Entrypoint '{callable_name}' in {module_ref} is not callable")
        return cast(Callable[..., Any], attr)

    def _publish(
        self,
        descriptors: Dict[str, CapabilityDescriptor],
        implementations: Dict[str, ToolCallable],
    ) -> None:
        self._snapshot = RegistrySnapshot(
            version=self._snapshot.version + 1,
            descriptors=MappingProxyType(descriptors),
            implementations=MappingProxyType(implementations),
        )

    @staticmethod
    def _check_schemas(descriptor: CapabilityDescriptor) -> None:
        check_schema(descriptor.input_schema, name=f"{descriptor.name} input schema")
        check_schema(descriptor.output_schema, name=f"{descriptor.name} output schema")

    @staticmethod
    def _ensure_async(name: str, implementation: Any) -> None:
        if not is_async_callable(implementation):
            raise ValueError(
                f"Capability '{name}' must be async. Synchronous implementations are not supported."
            )

    @staticmethod
    def _ensure_dict(value: Any) -> Dict[str, Any]:
        if isinstance(value, Mapping):
            return {str(key): val for key, val in value.items()}
        return {}


__all__ = [
    "AGENT_PREFIX",
    "CapabilityRegistry",
    "REMOTE_AGENT_PREFIX",
    "RegistrySnapshot",
    "ToolCallable",
    "is_async_callable",
]
