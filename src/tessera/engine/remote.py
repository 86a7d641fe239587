"""
Delegation to agents served by another Tessera API.

A RemoteEngine stands in for an ExecutionEngine running in a different
process. Sub-tasks are submitted to ``<base_url>/tasks`` with the delegating
agent's Ed25519 signature over the exact request body, then polled until
they are terminal. The remote outcome comes back as an ordinary TaskOutcome,
and a completed output is accepted only with a signature that verifies.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

import httpx

from tessera.core.types import Signature, TaskOutcome, TaskStatus
from tessera.engine.task import Task
from tessera.engine.tools import Sleeper
from tessera.errors import (
    AttestationUnavailable,
    CapabilityFailure,
    DeadlineExceeded,
    DelegationCycle,
    DelegationDepthExceeded,
    EngineSaturated,
    InvalidInput,
    SignatureInvalid,
    TaskNotFound,
    TesseraError,
    TransientCapabilityFailure,
)
from tessera.identity.provider import (
    SCHEME,
    IdentityProvider,
    canonical_bytes,
    payload_digest,
    verify_signature,
)
from tessera.registry import RegistrySnapshot
from tessera.settings import get_engine_settings

logger = logging.getLogger(__name__)

SIGNER_HEADER = "X-Tessera-Signer"
PUBLIC_KEY_HEADER = "X-Tessera-Public-Key"
SIGNATURE_HEADER = "X-Tessera-Signature"

# Error codes a remote API reports that keep their meaning locally
REMOTE_ERRORS: dict[str, type[TesseraError]] = {
    error.kind: error
    for error in (
        DelegationCycle,
        DelegationDepthExceeded,
        EngineSaturated,
        InvalidInput,
        SignatureInvalid,
        TaskNotFound,
    )
}


def signed_headers(signature: Signature) -> dict[str, str]:
    return {
        SIGNER_HEADER: signature.signer,
        PUBLIC_KEY_HEADER: signature.public_key,
        SIGNATURE_HEADER: signature.signature,
    }


def signature_from_headers(headers: Mapping[str, str], body: bytes) -> Optional[Signature]:
    """
    Rebuild the Signature a caller attached to ``body``.

    Returns None when the request carries no signature headers.

    Raises:
        SignatureInvalid: If the headers are incomplete
    """
    values = {name: headers.get(name) for name in (SIGNER_HEADER, PUBLIC_KEY_HEADER, SIGNATURE_HEADER)}
    if not any(values.values()):
        return None
    missing = sorted(name for name, value in values.items() if not value)
    if missing:
        raise SignatureInvalid(f"Signed request is missing {', '.join(missing)}")
    return Signature(
        signer=str(values[SIGNER_HEADER]),
        payload_hash=payload_digest(body).hex(),
        signature=str(values[SIGNATURE_HEADER]),
        public_key=str(values[PUBLIC_KEY_HEADER]),
        scheme=SCHEME,
    )


@dataclass
class RemoteEngine:
    """
    Agents served by a Tessera API in another process.

    Exposes the ``submit``/``run``/``cancel`` subset of ExecutionEngine that
    the delegation layer uses. ``transport`` can be an ``httpx.MockTransport``
    in tests.
    """

    base_url: str
    agent_ids: tuple[str, ...]
    identity: IdentityProvider
    timeout_s: float = 30.0
    poll_interval_s: float = 0.5
    transport: Optional[httpx.AsyncBaseTransport] = None
    sleep: Sleeper = asyncio.sleep
    clock: Callable[[], float] = time.time
    extra_headers: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.agent_ids = tuple(RegistrySnapshot.normalize_name(item) for item in self.agent_ids)

    @classmethod
    def from_settings(
        cls, base_url: str, agent_ids: tuple[str, ...], identity: IdentityProvider
    ) -> "RemoteEngine":
        settings = get_engine_settings()
        return cls(
            base_url=base_url,
            agent_ids=agent_ids,
            identity=identity,
            timeout_s=settings.REMOTE_TIMEOUT_S,
            poll_interval_s=settings.REMOTE_POLL_INTERVAL_S,
        )

    async def discover(self) -> list[dict[str, Any]]:
        """Agents the remote API advertises on ``/agents``."""
        data = await self._request("GET", "/agents")
        if not isinstance(data, list):
            raise CapabilityFailure(f"Remote engine {self.base_url} returned a malformed agent list")
        return [item for item in data if isinstance(item, dict) and item.get("agent_id")]

    async def submit(self, agent_id: str, task_input: Any, *, parent: Task) -> str:
        """Create a task for ``agent_id`` on the remote API, signed by the parent's agent."""
        body: dict[str, Any] = {
            "agent_id": RegistrySnapshot.normalize_name(agent_id),
            "input": task_input,
            "call_stack": list(parent.call_stack),
        }
        if parent.deadline is not None:
            remaining = parent.deadline - self.clock()
            if remaining <= 0:
                raise DeadlineExceeded(f"Task {parent.id} passed its deadline")
            body["deadline_s"] = remaining

        content = canonical_bytes(body)
        signature = await self.identity.sign(parent.agent_id, content)
        headers = {"Content-Type": "application/json", **signed_headers(signature)}
        data = await self._request("POST", "/tasks", content=content, headers=headers)
        task_id = data.get("task_id") if isinstance(data, dict) else None
        if not task_id:
            raise CapabilityFailure(f"Remote engine {self.base_url} did not return a task id")
        logger.debug("Submitted remote task %s to %s for %s", task_id, self.base_url, agent_id)
        return str(task_id)

    async def run(self, task_id: str) -> TaskOutcome:
        """Poll ``task_id`` until it is terminal and return its outcome."""
        while True:
            data = await self._request("GET", f"/tasks/{task_id}")
            try:
                status = TaskStatus(data.get("status"))
            except (AttributeError, ValueError):
                raise CapabilityFailure(
                    f"Remote engine {self.base_url} reported no valid status for {task_id}"
                ) from None
            if status.terminal:
                break
            await self.sleep(self.poll_interval_s)

        data = await self._request("GET", f"/tasks/{task_id}/result")
        try:
            outcome = TaskOutcome.model_validate(data)
        except ValueError as exc:
            raise CapabilityFailure(
                f"Remote engine {self.base_url} returned a malformed result for {task_id}"
            ) from exc

        if outcome.ok and not self._attested(outcome):
            raise AttestationUnavailable(
                f"Output of remote task {task_id} from {self.base_url} carries no valid signature"
            )
        return outcome

    async def cancel(self, task_id: str) -> bool:
        data = await self._request("POST", f"/tasks/{task_id}/cancel")
        return bool(data.get("cancelled")) if isinstance(data, dict) else False

    @staticmethod
    def _attested(outcome: TaskOutcome) -> bool:
        if outcome.signature is None or outcome.output is None:
            return False
        if outcome.signature.signer != outcome.agent_id:
            return False
        return verify_signature(outcome.signature, outcome.output.encode("utf-8"))

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = self.base_url.rstrip("/") + path
        headers = {**self.extra_headers, **kwargs.pop("headers", {})}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s, transport=self.transport) as client:
                response = await client.request(method, url, headers=headers, **kwargs)
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            raise TransientCapabilityFailure(
                f"Remote engine {self.base_url} is unreachable: {exc}"
            ) from exc
        except httpx.HTTPError as exc:
            raise CapabilityFailure(f"Request to remote engine {self.base_url} failed: {exc}") from exc

        if response.is_error:
            raise self._error_for(response)
        try:
            return response.json()
        except ValueError as exc:
            raise CapabilityFailure(f"Remote engine {self.base_url} returned invalid JSON") from exc

    def _error_for(self, response: httpx.Response) -> TesseraError:
        try:
            body = response.json()
        except ValueError:
            body = None
        code = body.get("code") if isinstance(body, dict) else None
        message = body.get("message") if isinstance(body, dict) else None
        detail = f"Remote engine {self.base_url}: {message or f'HTTP {response.status_code}'}"

        error_type = REMOTE_ERRORS.get(str(code)) if code else None
        if error_type is None:
            error_type = TransientCapabilityFailure if response.status_code >= 500 else CapabilityFailure
        return error_type(detail)


__all__ = [
    "PUBLIC_KEY_HEADER",
    "REMOTE_ERRORS",
    "RemoteEngine",
    "SIGNATURE_HEADER",
    "SIGNER_HEADER",
    "signature_from_headers",
    "signed_headers",
]
