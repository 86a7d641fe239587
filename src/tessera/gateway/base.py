"""Model gateway contract and a scripted gateway for offline runs."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Callable, Iterable, Optional, Protocol, Union

from tessera.core.types import GatewayRequest, GatewayResponse
from tessera.errors import ModelGatewayFailure

ScriptStep = Union[GatewayResponse, Callable[[GatewayRequest], GatewayResponse], BaseException]


class ModelGateway(Protocol):
    """Maps a Context plus capability descriptors to a GatewayResponse."""

    async def complete(self, request: GatewayRequest) -> GatewayResponse:
        ...


class ScriptedGateway:
    """
    Replays a fixed script of responses.

    Each step is a GatewayResponse, a callable receiving the request, or an
    exception instance to raise. Once the script is exhausted ``default`` is
    used if given, otherwise the call fails with ModelGatewayFailure. Every
    request is recorded in ``requests`` for assertions.
    """

    def __init__(
        self,
        script: Iterable[ScriptStep] = (),
        *,
        default: Optional[ScriptStep] = None,
        delay_s: float = 0.0,
    ) -> None:
        self._script: deque[ScriptStep] = deque(script)
        self._default = default
        self.delay_s = delay_s
        self.requests: list[GatewayRequest] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    def extend(self, steps: Iterable[ScriptStep]) -> None:
        self._script.extend(steps)

    async def complete(self, request: GatewayRequest) -> GatewayResponse:
        self.requests.append(request)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)

        if self._script:
            step = self._script.popleft()
        elif self._default is not None:
            step = self._default
        else:
            raise ModelGatewayFailure("Scripted gateway has no response left")

        if isinstance(step, BaseException):
            raise step
        if isinstance(step, GatewayResponse):
            return step
        return step(request)


__all__ = ["ModelGateway", "ScriptStep", "ScriptedGateway"]
