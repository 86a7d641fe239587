"""
Agent runtime: wires registry, memory, identity and engines together.

The runtime is the process-level entry point used by the HTTP API. It owns
one CapabilityRegistry, one MemoryManager, one identity provider, one model
gateway and one DelegationLayer, shared by any number of ExecutionEngines.
Each agent is also registered as an ``agent`` capability so other agents can
delegate to it.

Agents can be declared next to capabilities in a YAML catalog. Agents served
by another Tessera API are listed under ``remote_engines``; agents with
``expose_agent_prefix`` see them with the ``RA_`` prefix::

    agents:
      - id: planner
        system_prompt: "Break the request into steps."
        capabilities: [researcher, auditor, balance_of]
      - id: researcher
        engine: research
    remote_engines:
      - url: "https://audit.internal/api/v1"
        agents: [auditor]
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections import OrderedDict
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any, Iterable, Optional, Union

import httpx
import yaml

from tessera.core.types import CapabilityDescriptor, TaskOutcome, TaskStatus
from tessera.engine.delegation import DelegationLayer
from tessera.engine.engine import AgentProfile, ExecutionEngine
from tessera.engine.remote import RemoteEngine
from tessera.engine.tools import Sleeper
from tessera.errors import InvalidInput, TaskNotFound
from tessera.gateway.base import ModelGateway
from tessera.gateway.openai_compat import OpenAICompatibleGateway
from tessera.identity.provider import Ed25519IdentityProvider, IdentityProvider
from tessera.memory.embedding import HashEmbedder
from tessera.memory.manager import MemoryManager
from tessera.memory.store import InMemoryVectorStore
from tessera.registry import CapabilityRegistry, RegistrySnapshot
from tessera.settings import EngineLimits, get_engine_settings, resolve_limits

logger = logging.getLogger(__name__)

AGENT_INPUT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {"prompt": {"type": "string"}},
    "required": ["prompt"],
}


class AgentRuntime:
    """Routes task operations to the engine that owns each task."""

    def __init__(
        self,
        *,
        registry: CapabilityRegistry,
        gateway: ModelGateway,
        identity: IdentityProvider,
        memory: Optional[MemoryManager] = None,
        limits: Optional[EngineLimits] = None,
        runs_dir: Optional[Path] = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.registry = registry
        self.gateway = gateway
        self.identity = identity
        self.memory = memory
        self.limits = limits or resolve_limits()
        self.runs_dir = runs_dir
        self.delegation = DelegationLayer(max_depth=self.limits.max_delegation_depth)
        self._sleep = sleep
        self._engines: list[ExecutionEngine] = []
        self._remotes: list[RemoteEngine] = []
        self._agents: dict[str, ExecutionEngine] = {}
        # Lookup cache; misses fall back to asking each engine
        self._owners: OrderedDict[str, ExecutionEngine] = OrderedDict()

    @property
    def engines(self) -> tuple[ExecutionEngine, ...]:
        return tuple(self._engines)

    @property
    def remotes(self) -> tuple[RemoteEngine, ...]:
        return tuple(self._remotes)

    @property
    def agent_ids(self) -> list[str]:
        return sorted(self._agents)

    def add_engine(self, agents: Iterable[Union[AgentProfile, str]]) -> ExecutionEngine:
        """Create an engine serving ``agents`` and expose them as capabilities."""
        profiles = [
            agent if isinstance(agent, AgentProfile) else AgentProfile(agent_id=str(agent))
            for agent in agents
        ]
        for profile in profiles:
            if profile.agent_id in self._agents:
                raise ValueError(f"Agent '{profile.agent_id}' is already served by another engine")

        engine = ExecutionEngine(
            profiles,
            registry=self.registry,
            gateway=self.gateway,
            identity=self.identity,
            memory=self.memory,
            delegation=self.delegation,
            limits=self.limits,
            runs_dir=self.runs_dir,
            sleep=self._sleep,
        )
        for agent_id in engine.agent_ids:
            self._agents[agent_id] = engine
            if agent_id not in self.registry.snapshot():
                profile = engine.profile(agent_id)
                self.registry.register(
                    CapabilityDescriptor(
                        name=agent_id,
                        kind="agent",
                        description=profile.description or f"Delegate a prompt to agent {agent_id}",
                        input_schema=AGENT_INPUT_SCHEMA,
                    )
                )
        self._engines.append(engine)
        return engine

    def add_remote_engine(
        self,
        base_url: str,
        agents: Iterable[Union[str, Mapping[str, Any]]],
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> RemoteEngine:
        """Expose agents served by another Tessera API as ``RA_`` capabilities."""
        descriptions: dict[str, str] = {}
        for agent in agents:
            if isinstance(agent, Mapping):
                agent_id = str(agent.get("agent_id") or agent.get("id") or "")
                description = str(agent.get("description") or "")
            else:
                agent_id, description = str(agent), ""
            agent_id = RegistrySnapshot.normalize_name(agent_id)
            if not agent_id:
                continue
            if agent_id in self._agents:
                raise ValueError(f"Agent '{agent_id}' is already served by a local engine")
            descriptions[agent_id] = description
        if not descriptions:
            raise ValueError(f"Remote engine {base_url} serves no agents")

        remote = RemoteEngine.from_settings(base_url, tuple(descriptions), self.identity)
        remote.transport = transport
        remote.sleep = self._sleep
        for agent_id, description in descriptions.items():
            self.registry.register(
                CapabilityDescriptor(
                    name=agent_id,
                    kind="agent",
                    description=description or f"Delegate a prompt to remote agent {agent_id}",
                    input_schema=AGENT_INPUT_SCHEMA,
                    endpoint=base_url,
                )
            )
        self.delegation.register_remote(remote)
        self._remotes.append(remote)
        logger.info("Remote engine %s serves %s", base_url, ", ".join(descriptions))
        return remote

    async def connect_remote_engine(
        self, base_url: str, *, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> RemoteEngine:
        """Ask another Tessera API which agents it serves, then add them."""
        directory = RemoteEngine.from_settings(base_url, (), self.identity)
        directory.transport = transport
        agents = await directory.discover()
        return self.add_remote_engine(base_url, agents, transport=transport)

    def engine_for(self, agent_id: str) -> ExecutionEngine:
        engine = self._agents.get(RegistrySnapshot.normalize_name(agent_id))
        if engine is None:
            raise InvalidInput(f"Unknown agent '{agent_id}'")
        return engine

    def _owner(self, task_id: str) -> ExecutionEngine:
        engine = self._owners.get(task_id)
        if engine is not None:
            self._owners.move_to_end(task_id)
            return engine
        # Delegated sub-tasks are created by engines directly
        for candidate in self._engines:
            try:
                candidate.get_status(task_id)
            except TaskNotFound:
                continue
            self._remember_owner(task_id, candidate)
            return candidate
        raise TaskNotFound(f"Task '{task_id}' not found")

    async def submit(
        self,
        agent_id: str,
        task_input: Any,
        *,
        deadline_s: Optional[float] = None,
        call_stack: Sequence[str] = (),
    ) -> str:
        engine = self.engine_for(agent_id)
        task_id = await engine.submit(
            agent_id, task_input, deadline_s=deadline_s, call_stack=call_stack
        )
        self._remember_owner(task_id, engine)
        return task_id

    def _remember_owner(self, task_id: str, engine: ExecutionEngine) -> None:
        self._owners[task_id] = engine
        self._owners.move_to_end(task_id)
        while len(self._owners) > self.limits.outcome_retention:
            self._owners.popitem(last=False)

    async def step(self, task_id: str) -> TaskStatus:
        return await self._owner(task_id).step(task_id)

    async def run(self, task_id: str) -> TaskOutcome:
        return await self._owner(task_id).run(task_id)

    async def execute(
        self, agent_id: str, task_input: Any, *, deadline_s: Optional[float] = None
    ) -> TaskOutcome:
        task_id = await self.submit(agent_id, task_input, deadline_s=deadline_s)
        return await self.run(task_id)

    def get_status(self, task_id: str) -> TaskStatus:
        return self._owner(task_id).get_status(task_id)

    def get_result(self, task_id: str) -> TaskOutcome:
        return self._owner(task_id).get_result(task_id)

    def run_summary(self, task_id: str) -> dict[str, Any]:
        return self._owner(task_id).run_summary(task_id)

    async def cancel(self, task_id: str) -> bool:
        return await self._owner(task_id).cancel(task_id)

    def load_agents(self, path: Path) -> list[str]:
        """Load ``agents`` (one engine per ``engine`` group) and ``remote_engines`` from a YAML catalog."""
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, Mapping):
            raise ValueError(f"Catalog at {path} must be a mapping")

        entries = raw.get("agents", [])
        if not isinstance(entries, Sequence) or isinstance(entries, (str, bytes)):
            raise ValueError(f"'agents' must be a sequence in {path}")

        groups: dict[str, list[AgentProfile]] = {}
        for entry in entries:
            if not isinstance(entry, Mapping) or not entry.get("id"):
                continue
            capabilities = entry.get("capabilities")
            profile = AgentProfile(
                agent_id=str(entry["id"]),
                system_prompt=str(entry.get("system_prompt", "")),
                description=str(entry.get("description", "")),
                capabilities=tuple(str(item) for item in capabilities) if isinstance(capabilities, list) else None,
                expose_agent_prefix=bool(entry.get("expose_agent_prefix", False)),
            )
            groups.setdefault(str(entry.get("engine", "default")), []).append(profile)

        loaded: list[str] = []
        for profiles in groups.values():
            engine = self.add_engine(profiles)
            loaded.extend(engine.agent_ids)

        remotes = raw.get("remote_engines", [])
        if not isinstance(remotes, Sequence) or isinstance(remotes, (str, bytes)):
            raise ValueError(f"'remote_engines' must be a sequence in {path}")
        for entry in remotes:
            if not isinstance(entry, Mapping) or not entry.get("url"):
                continue
            agents = entry.get("agents")
            if not isinstance(agents, list):
                raise ValueError(f"Remote engine {entry['url']} in {path} must list its agents")
            remote = self.add_remote_engine(str(entry["url"]), agents)
            loaded.extend(remote.agent_ids)
        return loaded

    @classmethod
    def from_settings(
        cls,
        *,
        gateway: Optional[ModelGateway] = None,
        catalog_path: Optional[Path] = None,
    ) -> "AgentRuntime":
        """Build a runtime from TESSERA_* settings."""
        settings = get_engine_settings()
        limits = resolve_limits()

        if settings.IDENTITY_MASTER_SEED:
            identity = Ed25519IdentityProvider.from_seed_hex(
                settings.IDENTITY_MASTER_SEED,
                keystore_dir=Path(settings.KEYSTORE_DIR) if settings.KEYSTORE_DIR else None,
            )
        elif settings.KEYSTORE_DIR:
            identity = Ed25519IdentityProvider(keystore_dir=Path(settings.KEYSTORE_DIR))
        else:
            logger.warning(
                "No TESSERA_IDENTITY_MASTER_SEED or TESSERA_KEYSTORE_DIR set; agent keys are ephemeral"
            )
            identity = Ed25519IdentityProvider(master_seed=os.urandom(32))

        store = InMemoryVectorStore(
            persist_path=Path(settings.MEMORY_STORE_PATH) if settings.MEMORY_STORE_PATH else None
        )
        memory = MemoryManager(
            store,
            HashEmbedder(),
            identity,
            cache_ttl_s=settings.MEMORY_CACHE_TTL_S,
            sign_records=limits.sign_memory_records,
        )

        catalog = catalog_path or (Path(settings.CATALOG_PATH) if settings.CATALOG_PATH else None)
        if catalog is not None:
            catalog = catalog.resolve()
        registry = CapabilityRegistry(base_path=catalog.parent if catalog is not None else None)
        if catalog is not None:
            registry.load_catalog(catalog)

        runtime = cls(
            registry=registry,
            gateway=gateway or OpenAICompatibleGateway.from_settings(),
            identity=identity,
            memory=memory,
            limits=limits,
            runs_dir=Path(settings.RUNS_BASE_DIR) if settings.RUN_LOGS_ENABLED else None,
        )
        if catalog is not None:
            runtime.load_agents(catalog)
        return runtime


__all__ = ["AGENT_INPUT_SCHEMA", "AgentRuntime"]
