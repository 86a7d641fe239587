"""Tests for the scripted and OpenAI-compatible model gateways."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from tessera.core.types import (
    CapabilityDescriptor,
    CapabilityInvocation,
    Context,
    GatewayRequest,
    GatewayResponse,
    Message,
    Usage,
)
from tessera.errors import ModelGatewayFailure
from tessera.gateway import OpenAICompatibleGateway, ScriptedGateway
from tessera.gateway.openai_compat import parse_completion, render_messages

BALANCE_INPUT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {"account": {"type": "string"}},
    "required": ["account"],
}


def _request() -> GatewayRequest:
    invocation = CapabilityInvocation(
        name="balance_of", arguments={"account": "alice"}, invocation_id="call-1"
    )
    return GatewayRequest(
        agent_id="ledger",
        context=Context(
            messages=(
                Message(role="system", content="You are a ledger assistant."),
                Message(role="user", content="What is Alice's balance?"),
                Message(
                    role="assistant",
                    content="Invoking balance_of",
                    capability_call=invocation,
                    invocation_id="call-1",
                ),
                Message(role="capability_result", content='{"balance": 100}', invocation_id="call-1"),
            )
        ),
        capabilities=(
            CapabilityDescriptor(
                name="balance_of",
                kind="tool",
                description="Return the balance of an account",
                input_schema=BALANCE_INPUT_SCHEMA,
            ),
        ),
    )


class TestScriptedGateway:
    @pytest.mark.asyncio
    async def test_replays_script_then_default(self) -> None:
        gateway = ScriptedGateway(
            [GatewayResponse.answer("first")],
            default=lambda request: GatewayResponse.answer(f"echo {request.agent_id}"),
        )
        assert (await gateway.complete(_request())).final_answer == "first"
        assert (await gateway.complete(_request())).final_answer == "echo ledger"
        assert gateway.calls == 2

    @pytest.mark.asyncio
    async def test_raises_scripted_exception(self) -> None:
        gateway = ScriptedGateway([ConnectionError("reset by peer")])
        with pytest.raises(ConnectionError):
            await gateway.complete(_request())

    @pytest.mark.asyncio
    async def test_exhausted_script(self) -> None:
        gateway = ScriptedGateway()
        with pytest.raises(ModelGatewayFailure):
            await gateway.complete(_request())


def test_render_messages() -> None:
    rendered = render_messages(_request().context)

    assert [item["role"] for item in rendered] == ["system", "user", "assistant", "tool"]
    tool_call = rendered[2]["tool_calls"][0]
    assert tool_call["id"] == "call-1"
    assert json.loads(tool_call["function"]["arguments"]) == {"account": "alice"}
    assert rendered[3] == {"role": "tool", "tool_call_id": "call-1", "content": '{"balance": 100}'}


def test_parse_completion_variants() -> None:
    answer = parse_completion(
        {
            "choices": [{"message": {"role": "assistant", "content": "Alice has 100"}}],
            "usage": {"prompt_tokens": 12, "completion_tokens": 4},
        }
    )
    assert answer.final_answer == "Alice has 100"
    assert answer.usage == Usage(input_tokens=12, output_tokens=4, requests=1)

    malformed = parse_completion(
        {
            "choices": [
                {
                    "message": {
                        "tool_calls": [
                            {"id": "c9", "function": {"name": "balance_of", "arguments": "{oops"}}
                        ]
                    }
                }
            ]
        }
    )
    assert malformed.invocation is not None
    assert malformed.invocation.arguments == {"_raw": "{oops"}

    with pytest.raises(ModelGatewayFailure):
        parse_completion({"choices": []})


class TestOpenAICompatibleGateway:
    @pytest.mark.asyncio
    async def test_tool_call_round_trip(self) -> None:
        seen: dict[str, Any] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "choices": [
                        {
                            "message": {
                                "role": "assistant",
                                "content": None,
                                "tool_calls": [
                                    {
                                        "id": "call-2",
                                        "type": "function",
                                        "function": {
                                            "name": "balance_of",
                                            "arguments": '{"account": "bob"}',
                                        },
                                    }
                                ],
                            }
                        }
                    ],
                    "usage": {"prompt_tokens": 40, "completion_tokens": 8},
                },
            )

        gateway = OpenAICompatibleGateway(
            base_url="https://llm.example/v1/",
            api_key="sk-test",
            model="test-model",
            transport=httpx.MockTransport(handler),
        )
        response = await gateway.complete(_request())

        assert seen["url"] == "https://llm.example/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["model"] == "test-model"
        assert seen["body"]["tools"][0]["function"]["name"] == "balance_of"
        assert seen["body"]["tools"][0]["function"]["parameters"] == BALANCE_INPUT_SCHEMA
        assert response.invocation is not None
        assert response.invocation.invocation_id == "call-2"
        assert response.invocation.arguments == {"account": "bob"}
        assert response.usage.total_tokens == 48

    @pytest.mark.asyncio
    async def test_http_error_becomes_gateway_failure(self) -> None:
        gateway = OpenAICompatibleGateway(
            base_url="https://llm.example/v1",
            transport=httpx.MockTransport(lambda request: httpx.Response(502, text="bad gateway")),
        )
        with pytest.raises(ModelGatewayFailure, match="HTTP 502"):
            await gateway.complete(_request())

    @pytest.mark.asyncio
    async def test_non_json_body(self) -> None:
        gateway = OpenAICompatibleGateway(
            base_url="https://llm.example/v1",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>")),
        )
        with pytest.raises(ModelGatewayFailure):
            await gateway.complete(_request())

    def test_from_settings(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TESSERA_GATEWAY_BASE_URL", "http://localhost:11434/v1")
        monkeypatch.setenv("TESSERA_GATEWAY_MODEL", "llama3")
        gateway = OpenAICompatibleGateway.from_settings()
        assert gateway.base_url == "http://localhost:11434/v1"
        assert gateway.model == "llama3"
