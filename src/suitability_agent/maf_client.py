"""Compliance co-pilot access to Microsoft Agent Framework chat clients.

Only the escalation path talks to a language model, so the framework is
imported here and nowhere else. Tests substitute any object with an async
``complete`` method.
"""

from __future__ import annotations

from dataclasses import dataclass
from importlib import import_module
from itertools import groupby
from typing import Any, Callable, Dict, Iterable, List, Tuple

from agent_framework import ChatMessage as MAFChatMessage, Role

from .config import ModelSettings

# Session authors mapped onto chat roles.
_ROLE_BY_AUTHOR = {
    "client": "user",
    "user": "user",
    "assistant": "assistant",
    "adviser": "system",
    "system": "system",
}


@dataclass(slots=True)
class ChatMessage:
    """Chat turn handed to the compliance responder."""

    role: str
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


class MAFIntegrationError(RuntimeError):
    """Raised when no compliance model client can be built."""


def _azure_client(settings: ModelSettings) -> Tuple[str, str, Dict[str, Any]]:
    return (
        "agent_framework.azure",
        "AzureOpenAIChatClient",
        {
            "api_key": settings.api_key,
            "deployment_name": settings.model,
            "endpoint": settings.endpoint,
            "api_version": settings.api_version,
        },
    )


def _openai_client(settings: ModelSettings) -> Tuple[str, str, Dict[str, Any]]:
    return (
        "agent_framework.openai",
        "OpenAIChatClient",
        {"api_key": settings.api_key, "model_id": settings.model, "base_url": settings.endpoint},
    )


_PROVIDERS: Dict[str, Callable[[ModelSettings], Tuple[str, str, Dict[str, Any]]]] = {
    "azure": _azure_client,
    "azure-openai": _azure_client,
    "azure_openai": _azure_client,
    "openai": _openai_client,
}


def to_framework_role(role: str) -> Role:
    mapped = _ROLE_BY_AUTHOR.get(role.strip().lower())
    if mapped is None:
        raise ValueError(f"Unsupported transcript role for the compliance model: {role}")
    return Role(mapped)


def fold_turns(messages: Iterable[ChatMessage]) -> List[ChatMessage]:
    """Join adjacent turns that land on the same chat role.

    A suitability transcript often holds a re-prompt directly followed by the
    next question. The model sees each run of same-role turns as one message.
    """

    folded: List[ChatMessage] = []
    keyed = ((to_framework_role(message.role).value, message.content) for message in messages)
    for role, run in groupby(keyed, key=lambda item: item[0]):
        text = "\n\n".join(content for _, content in run if content).strip()
        folded.append(ChatMessage(role=str(role), content=text))
    return folded


class MAFChatClient:
    """Sends compliance transcripts to the configured model provider."""

    def __init__(self, settings: ModelSettings) -> None:
        if not settings.api_key:
            raise MAFIntegrationError(
                "SUITABILITY_MODEL_API_KEY is not set; the compliance "
                "co-pilot cannot reach a live model."
            )
        self._settings = settings
        self._client = self._build(settings)

    @property
    def model(self) -> str:
        return self._settings.model

    @staticmethod
    def _build(settings: ModelSettings):
        factory = _PROVIDERS.get(settings.provider.strip().lower())
        if factory is None:
            raise MAFIntegrationError(
                f"Unsupported compliance model provider '{settings.provider}'."
            )
        module_name, class_name, kwargs = factory(settings)
        try:
            client_cls = getattr(import_module(module_name), class_name)
        except ModuleNotFoundError as exc:  # pragma: no cover - MAF runtime
            raise MAFIntegrationError(
                f"Agent Framework module '{exc.name or module_name}' is not installed."
            ) from exc
        return client_cls(**kwargs)

    async def complete(self, messages: Iterable[ChatMessage]) -> ChatMessage:
        """Return the model's reply to a compliance transcript."""

        payload = [
            MAFChatMessage(role=to_framework_role(turn.role), text=turn.content)
            for turn in fold_turns(messages)
        ]
        response = await self._client.get_response(messages=payload)
        return ChatMessage(role="assistant", content=response.text or "")
