"""Remote chat providers: OpenAI, Anthropic and MiniMax over httpx.

Each provider makes exactly one HTTP attempt and returns the raw model text.
Normalization into ``{reply, actions}`` happens in the router so every
backend goes through the same parser.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from workbench_agent.actions import ACTION_TYPES
from workbench_agent.config import AgentConfig
from workbench_agent.errors import (
    ProviderAuthError,
    ProviderNetworkError,
    ProviderParseError,
)
from workbench_agent.models import (
    PROVIDER_ANTHROPIC,
    PROVIDER_MINIMAX,
    PROVIDER_OPENAI,
    Message,
    ProviderConfig,
)

logger = logging.getLogger(__name__)

DEFAULT_ANTHROPIC_VERSION = "2023-06-01"


def build_system_prompt(snapshot: dict) -> str:
    """System prompt: output contract, action vocabulary, and current context."""
    return (
        "You are the Workbench Agent. Give clear suggestions grounded in the context "
        "data below and output JSON only, shaped as "
        '{"reply":"string","actions":[{"id":"string","type":"string","title":"string",'
        '"reason":"string","payload":{},"requiresApproval":true}]}. '
        f"Action type must be one of: {','.join(ACTION_TYPES)}. "
        "If no action is needed, return an empty actions array. "
        f"Current context: {json.dumps(snapshot, ensure_ascii=False, default=str)}"
    )


class RemoteProvider:
    """Base class: one POST to ``base_url + endpoint``, one content field back."""

    name = ""
    endpoint = ""

    def __init__(self, agent_config: AgentConfig | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self._agent = agent_config or AgentConfig()
        self._transport = transport

    async def complete(self, config: ProviderConfig, messages: list[Message], snapshot: dict) -> str:
        """Send the conversation and return the model's raw text.

        Raises:
            ProviderAuthError: empty API key.
            ProviderNetworkError: transport failure or non-2xx status.
            ProviderParseError: body lacks the expected content field.
        """
        api_key = (config.api_key or "").strip()
        if not api_key:
            raise ProviderAuthError(f"{self.label} API key is empty")

        url = f"{config.base_url.rstrip('/')}{self.endpoint}"
        body = self.build_body(config, messages, build_system_prompt(snapshot))
        headers = self.build_headers(config, api_key)

        try:
            async with httpx.AsyncClient(
                timeout=self._agent.http_timeout_s, transport=self._transport
            ) as client:
                response = await client.post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise ProviderNetworkError(f"{self.label} request failed: {e}") from e

        if not response.is_success:
            raise ProviderNetworkError(
                f"{self.label} error {response.status_code}: {response.text[:500] or 'no body'}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderParseError(f"{self.label} parse failed: {e}") from e

        content = self.extract_content(data)
        if not isinstance(content, str):
            raise ProviderParseError(f"{self.label} response missing content")
        logger.debug(f"{self.name} returned {len(content)} chars")
        return content

    @property
    def label(self) -> str:
        return self.name

    def build_headers(self, config: ProviderConfig, api_key: str) -> dict:
        return {"Authorization": f"Bearer {api_key}"}

    def build_body(self, config: ProviderConfig, messages: list[Message], system_prompt: str) -> dict:
        raise NotImplementedError

    def extract_content(self, data: Any) -> Any:
        raise NotImplementedError


def _chat_messages(messages: list[Message], system_prompt: str) -> list[dict]:
    """System prompt first, then the conversation as user/assistant turns."""
    return [{"role": "system", "content": system_prompt}] + [
        {"role": "assistant" if m.role == "assistant" else "user", "content": m.content}
        for m in messages
    ]


def _first_choice_content(data: Any) -> Any:
    try:
        return data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return None


class OpenAIProvider(RemoteProvider):
    name = PROVIDER_OPENAI
    endpoint = "/chat/completions"

    @property
    def label(self) -> str:
        return "OpenAI"

    def build_body(self, config, messages, system_prompt):
        return {
            "model": config.model,
            "temperature": self._agent.temperature,
            "messages": _chat_messages(messages, system_prompt),
        }

    def extract_content(self, data):
        return _first_choice_content(data)


class AnthropicProvider(RemoteProvider):
    name = PROVIDER_ANTHROPIC
    endpoint = "/messages"

    @property
    def label(self) -> str:
        return "Anthropic"

    def build_headers(self, config, api_key):
        return {
            "x-api-key": api_key,
            "anthropic-version": config.api_version or DEFAULT_ANTHROPIC_VERSION,
        }

    def build_body(self, config, messages, system_prompt):
        # Messages API has no system role inside the conversation
        return {
            "model": config.model,
            "max_tokens": self._agent.max_tokens,
            "temperature": self._agent.temperature,
            "system": system_prompt,
            "messages": [
                {"role": "assistant" if m.role == "assistant" else "user", "content": m.content}
                for m in messages
            ],
        }

    def extract_content(self, data):
        try:
            return data["content"][0]["text"]
        except (KeyError, IndexError, TypeError):
            return None


class MiniMaxProvider(RemoteProvider):
    name = PROVIDER_MINIMAX
    endpoint = "/text/chatcompletion_v2"

    @property
    def label(self) -> str:
        return "MiniMax"

    def build_body(self, config, messages, system_prompt):
        return {
            "model": config.model,
            "messages": _chat_messages(messages, system_prompt),
            "stream": False,
            "temperature": self._agent.temperature,
            "max_tokens": self._agent.max_tokens,
        }

    def extract_content(self, data):
        return _first_choice_content(data)


def build_providers(
    agent_config: AgentConfig | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, RemoteProvider]:
    """All remote providers keyed by provider name."""
    return {
        cls.name: cls(agent_config, transport=transport)
        for cls in (OpenAIProvider, AnthropicProvider, MiniMaxProvider)
    }
