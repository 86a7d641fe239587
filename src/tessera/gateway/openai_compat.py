"""Gateway for OpenAI-compatible ``/chat/completions`` endpoints."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from tessera.core.types import (
    CapabilityDescriptor,
    Context,
    GatewayRequest,
    GatewayResponse,
    Usage,
)
from tessera.errors import ModelGatewayFailure
from tessera.settings import get_engine_settings

logger = logging.getLogger(__name__)


def _tool_definition(descriptor: CapabilityDescriptor) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": descriptor.name,
            "description": descriptor.description,
            "parameters": descriptor.input_schema or {"type": "object"},
        },
    }


def render_messages(context: Context) -> list[dict[str, Any]]:
    """Translate a Context into chat completion messages."""
    rendered: list[dict[str, Any]] = []
    for message in context.messages:
        if message.role == "capability_result":
            rendered.append(
                {
                    "role": "tool",
                    "tool_call_id": message.invocation_id or "",
                    "content": message.content,
                }
            )
        elif message.capability_call is not None:
            call = message.capability_call
            rendered.append(
                {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [
                        {
                            "id": call.invocation_id,
                            "type": "function",
                            "function": {
                                "name": call.name,
                                "arguments": json.dumps(call.arguments, sort_keys=True),
                            },
                        }
                    ],
                }
            )
        else:
            rendered.append({"role": message.role, "content": message.content})
    return rendered


def parse_completion(data: dict[str, Any]) -> GatewayResponse:
    """Turn a chat completion body into a GatewayResponse."""
    usage_raw = data.get("usage") or {}
    usage = Usage(
        input_tokens=int(usage_raw.get("prompt_tokens", 0) or 0),
        output_tokens=int(usage_raw.get("completion_tokens", 0) or 0),
        requests=1,
    )

    choices = data.get("choices") or []
    if not choices:
        raise ModelGatewayFailure("Gateway response contained no choices")
    message = choices[0].get("message") or {}

    tool_calls = message.get("tool_calls") or []
    if tool_calls:
        call = tool_calls[0]
        function = call.get("function") or {}
        raw_arguments = function.get("arguments") or "{}"
        try:
            arguments = json.loads(raw_arguments) if isinstance(raw_arguments, str) else raw_arguments
        except json.JSONDecodeError:
            # Let schema validation report the problem back to the model
            arguments = {"_raw": raw_arguments}
        if not isinstance(arguments, dict):
            arguments = {"_raw": arguments}
        return GatewayResponse.invoke(
            str(function.get("name", "")),
            arguments,
            invocation_id=str(call.get("id") or f"call-{len(tool_calls)}"),
            usage=usage,
        )

    return GatewayResponse.answer(str(message.get("content") or ""), usage=usage)


@dataclass
class OpenAICompatibleGateway:
    """
    Minimal OpenAI-compatible chat completions gateway.

    ``transport`` can be an ``httpx.MockTransport`` in tests.
    """

    base_url: str
    api_key: Optional[str] = None
    model: str = "gpt-4o-mini"
    timeout_s: float = 60.0
    temperature: float = 0.2
    transport: Optional[httpx.AsyncBaseTransport] = None
    extra_headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_settings(cls) -> "OpenAICompatibleGateway":
        settings = get_engine_settings()
        return cls(
            base_url=settings.GATEWAY_BASE_URL,
            api_key=settings.GATEWAY_API_KEY,
            model=settings.GATEWAY_MODEL,
            timeout_s=settings.GATEWAY_TIMEOUT_S,
        )

    async def complete(self, request: GatewayRequest) -> GatewayResponse:
        url = self.base_url.rstrip("/") + "/chat/completions"
        headers = dict(self.extra_headers)
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        payload: dict[str, Any] = {
            "model": self.model,
            "messages": render_messages(request.context),
            "temperature": self.temperature,
            "user": request.agent_id,
        }
        if request.capabilities:
            payload["tools"] = [_tool_definition(item) for item in request.capabilities]

        try:
            async with httpx.AsyncClient(timeout=self.timeout_s, transport=self.transport) as client:
                response = await client.post(url, headers=headers, json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            raise ModelGatewayFailure(
                f"Gateway returned HTTP {exc.response.status_code}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise ModelGatewayFailure(f"Gateway request failed: {exc}") from exc

        if not isinstance(data, dict):
            raise ModelGatewayFailure("Gateway response body is not an object")
        return parse_completion(data)


__all__ = ["OpenAICompatibleGateway", "parse_completion", "render_messages"]
