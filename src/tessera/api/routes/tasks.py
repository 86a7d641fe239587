"""Task submission, status, result and cancellation routes."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, Request, status

from tessera.api.models import (
    AgentInfo,
    TaskCancelResponse,
    TaskResultResponse,
    TaskStatusResponse,
    TaskSubmitRequest,
    TaskSubmitResponse,
)
from tessera.engine.remote import signature_from_headers
from tessera.errors import SignatureInvalid
from tessera.identity.provider import verify_signature
from tessera.runtime import AgentRuntime
from tessera.settings import get_engine_settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["tasks"])


def get_runtime(request: Request) -> AgentRuntime:
    runtime: AgentRuntime = request.app.state.runtime
    return runtime


def _schedule(request: Request, runtime: AgentRuntime, task_id: str) -> None:
    """Drive the task in the background, keeping a reference until it finishes."""
    background: set[asyncio.Task[object]] = request.app.state.background_tasks
    job = asyncio.create_task(runtime.run(task_id), name=f"tessera-{task_id}")
    background.add(job)
    job.add_done_callback(background.discard)


async def _verify_submission(request: Request) -> None:
    """Check the X-Tessera-Signature headers against the raw request body."""
    body = await request.body()
    signature = signature_from_headers(request.headers, body)
    if signature is None:
        if get_engine_settings().REQUIRE_SIGNED_SUBMISSIONS:
            raise SignatureInvalid("Task submissions must be signed")
        return
    if not verify_signature(signature, body):
        raise SignatureInvalid(f"Signature of '{signature.signer}' does not match the request body")
    logger.debug("Accepted submission signed by %s", signature.signer)


@router.get("/agents", response_model=list[AgentInfo])
async def list_agents(runtime: AgentRuntime = Depends(get_runtime)) -> list[AgentInfo]:
    agents: list[AgentInfo] = []
    for agent_id in runtime.agent_ids:
        profile = runtime.engine_for(agent_id).profile(agent_id)
        agents.append(AgentInfo(agent_id=agent_id, description=profile.description or None))
    return agents


@router.post(
    "/tasks",
    response_model=TaskSubmitResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_task(
    req: TaskSubmitRequest,
    request: Request,
    runtime: AgentRuntime = Depends(get_runtime),
) -> TaskSubmitResponse:
    """Submit a task; it runs in the background unless ``wait`` is set."""
    await _verify_submission(request)
    task_id = await runtime.submit(
        req.agent_id, req.input, deadline_s=req.deadline_s, call_stack=req.call_stack
    )
    if req.wait:
        outcome = await runtime.run(task_id)
        return TaskSubmitResponse(task_id=task_id, status=outcome.status)

    _schedule(request, runtime, task_id)
    return TaskSubmitResponse(task_id=task_id, status=runtime.get_status(task_id))


@router.get("/tasks/{task_id}", response_model=TaskStatusResponse)
async def get_task_status(
    task_id: str, runtime: AgentRuntime = Depends(get_runtime)
) -> TaskStatusResponse:
    return TaskStatusResponse(task_id=task_id, status=runtime.get_status(task_id))


@router.get("/tasks/{task_id}/result", response_model=TaskResultResponse)
async def get_task_result(
    task_id: str, runtime: AgentRuntime = Depends(get_runtime)
) -> TaskResultResponse:
    """Terminal outcome; 409 while the task is still running."""
    return TaskResultResponse.from_outcome(runtime.get_result(task_id))


@router.post("/tasks/{task_id}/cancel", response_model=TaskCancelResponse)
async def cancel_task(
    task_id: str, runtime: AgentRuntime = Depends(get_runtime)
) -> TaskCancelResponse:
    cancelled = await runtime.cancel(task_id)
    return TaskCancelResponse(task_id=task_id, cancelled=cancelled)
