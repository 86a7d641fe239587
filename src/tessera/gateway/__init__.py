"""Model gateways."""

from tessera.gateway.base import ModelGateway, ScriptedGateway
from tessera.gateway.openai_compat import OpenAICompatibleGateway

__all__ = ["ModelGateway", "OpenAICompatibleGateway", "ScriptedGateway"]
