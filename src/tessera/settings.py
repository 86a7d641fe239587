"""Global settings for engine limits and runtime defaults."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

AdmissionMode = Literal["reject", "block"]


class EngineSettings(BaseSettings):
    """Environment-driven configuration for execution engines."""

    model_config = SettingsConfigDict(
        env_prefix="TESSERA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    MAX_STEPS: int = Field(
        default=8,
        description="Maximum reasoning steps per task before StepLimitExceeded.",
    )
    MAX_RETRIES: int = Field(
        default=3,
        description="Total attempts for a capability failing with a transient error.",
    )
    BACKOFF_BASE_MS: int = Field(
        default=100,
        description="Initial backoff between transient retries (doubles per attempt).",
    )
    BACKOFF_MAX_MS: int = Field(
        default=2000,
        description="Upper bound for a single backoff delay.",
    )
    MAX_DELEGATION_DEPTH: int = Field(
        default=4,
        description="Maximum length of the agent call stack for delegated tasks.",
    )
    MAX_CONCURRENT_TASKS: int = Field(
        default=32,
        description="Admission limit for non-terminal tasks per engine.",
    )
    ADMISSION_MODE: str = Field(
        default="reject",
        description="Behaviour when the engine is saturated (reject|block).",
    )
    ADMISSION_TIMEOUT_S: float = Field(
        default=5.0,
        description="Seconds submit() waits for a slot in block mode.",
    )
    OUTCOME_RETENTION: int = Field(
        default=1024,
        description="Finished task outcomes kept per engine before the oldest are evicted.",
    )
    MEMORY_TOP_K: int = Field(
        default=5,
        description="Number of memory records folded into each context.",
    )
    MEMORY_CACHE_TTL_S: float = Field(
        default=30.0,
        description="TTL for cached memory queries (0 disables the cache).",
    )
    SIGN_MEMORY_RECORDS: bool = Field(
        default=True,
        description="Attach a provenance signature to every memory record.",
    )
    MEMORY_STORE_PATH: str | None = Field(
        default=None,
        description="JSONL file backing the in-memory vector store (unset keeps memory in-process).",
    )
    CATALOG_PATH: str | None = Field(
        default=None,
        description="YAML catalog of agents and capabilities loaded at startup.",
    )
    RUN_LOGS_ENABLED: bool = Field(
        default=False,
        description="Write per-task JSONL run logs under RUNS_BASE_DIR.",
    )
    RUNS_BASE_DIR: str = Field(
        default=".tessera/runs",
        description="Directory for per-task observability artefacts.",
    )
    IDENTITY_MASTER_SEED: str | None = Field(
        default=None,
        description="Hex master seed used to derive per-agent Ed25519 keys.",
    )
    KEYSTORE_DIR: str | None = Field(
        default=None,
        description="Directory holding <agent_id>.key hex seeds.",
    )
    GATEWAY_BASE_URL: str = Field(
        default="https://api.openai.com/v1",
        description="Base URL of an OpenAI-compatible chat completions API.",
    )
    GATEWAY_API_KEY: str | None = Field(
        default=None,
        description="Bearer token for the model gateway.",
    )
    GATEWAY_MODEL: str = Field(
        default="gpt-4o-mini",
        description="Model identifier sent to the gateway.",
    )
    GATEWAY_TIMEOUT_S: float = Field(
        default=60.0,
        description="HTTP timeout for gateway requests.",
    )
    REMOTE_TIMEOUT_S: float = Field(
        default=30.0,
        description="HTTP timeout for requests to remote Tessera engines.",
    )
    REMOTE_POLL_INTERVAL_S: float = Field(
        default=0.5,
        description="Delay between status polls of a task delegated to a remote engine.",
    )
    REQUIRE_SIGNED_SUBMISSIONS: bool = Field(
        default=False,
        description="Reject task submissions without a valid X-Tessera-Signature.",
    )
    API_PREFIX: str = Field(
        default="/api/v1",
        description="Route prefix for the HTTP API.",
    )

    @model_validator(mode="after")
    def validate_limits(self) -> "EngineSettings":
        """Normalize ADMISSION_MODE and reject nonsensical limits."""
        normalized = self.ADMISSION_MODE.strip().lower()
        if normalized not in {"reject", "block"}:
            raise ValueError("TESSERA_ADMISSION_MODE must be one of reject, block")
        object.__setattr__(self, "ADMISSION_MODE", normalized)

        for name in ("MAX_STEPS", "MAX_RETRIES", "MAX_CONCURRENT_TASKS", "OUTCOME_RETENTION"):
            if getattr(self, name) < 1:
                raise ValueError(f"TESSERA_{name} must be >= 1")
        if self.MAX_DELEGATION_DEPTH < 0:
            raise ValueError("TESSERA_MAX_DELEGATION_DEPTH must be >= 0")
        return self


@dataclass(slots=True, frozen=True)
class EngineLimits:
    """Resolved numeric limits consumed by an ExecutionEngine."""

    max_steps: int = 8
    max_retries: int = 3
    backoff_base_ms: int = 100
    backoff_max_ms: int = 2000
    max_delegation_depth: int = 4
    max_concurrent_tasks: int = 32
    admission_mode: AdmissionMode = "reject"
    admission_timeout_s: float = 5.0
    outcome_retention: int = 1024
    memory_top_k: int = 5
    sign_memory_records: bool = True

    def backoff_seconds(self, attempt: int) -> float:
        """Delay before retry ``attempt`` (0-based), exponential and capped."""
        delay_ms = min(self.backoff_base_ms * (2**attempt), self.backoff_max_ms)
        return max(delay_ms, 0) / 1000


@lru_cache
def get_engine_settings() -> EngineSettings:
    """Return cached engine settings."""
    return EngineSettings()


def resolve_limits(**overrides: object) -> EngineLimits:
    """Build EngineLimits from settings, applying keyword overrides."""
    settings = get_engine_settings()
    values: dict[str, object] = {
        "max_steps": settings.MAX_STEPS,
        "max_retries": settings.MAX_RETRIES,
        "backoff_base_ms": settings.BACKOFF_BASE_MS,
        "backoff_max_ms": settings.BACKOFF_MAX_MS,
        "max_delegation_depth": settings.MAX_DELEGATION_DEPTH,
        "max_concurrent_tasks": settings.MAX_CONCURRENT_TASKS,
        "admission_mode": settings.ADMISSION_MODE,
        "admission_timeout_s": settings.ADMISSION_TIMEOUT_S,
        "outcome_retention": settings.OUTCOME_RETENTION,
        "memory_top_k": settings.MEMORY_TOP_K,
        "sign_memory_records": settings.SIGN_MEMORY_RECORDS,
    }
    for key, value in overrides.items():
        if key not in values:
            raise ValueError(f"Unknown engine limit '{key}'")
        if value is not None:
            values[key] = value
    return EngineLimits(**values)  # type: ignore[arg-type]


__all__ = [
    "AdmissionMode",
    "EngineLimits",
    "EngineSettings",
    "get_engine_settings",
    "resolve_limits",
]
