"""Render chat history into a model-specific prompt string."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

import httpx

from .backend_client import BackendClient
from .errors import BackendFailure
from .models import Message, ModelDescriptor

logger = logging.getLogger(__name__)


def _role_and_content(message: Message | Mapping[str, Any]) -> tuple[str, str]:
    if isinstance(message, Message):
        return message.role, message.content
    role = message.get("role", message.get("from"))
    return role, message.get("content", "")


def build_prompt(
    messages: Iterable[Message | Mapping[str, Any]],
    model: ModelDescriptor,
    preprompt: str | None = None,
) -> str:
    """Build the prompt for ``model``, ending with the assistant start token.

    Each turn renders as ``<start><content><end><message_end>`` using the
    user or assistant tokens of the descriptor. ``preprompt`` overrides the
    descriptor's own preprompt when given.
    """
    parts = [model.preprompt if preprompt is None else preprompt]
    for message in messages:
        role, content = _role_and_content(message)
        if role == "user":
            parts.append(model.user_message_token + content + model.user_message_end_token)
        elif role == "assistant":
            parts.append(model.assistant_message_token + content + model.assistant_message_end_token)
        else:
            raise ValueError(f"Unsupported message role: {role!r}")
        parts.append(model.message_end_token)
    parts.append(model.assistant_message_token)
    return "".join(parts)


async def resolve_preprompt(model: ModelDescriptor, backend: BackendClient) -> str:
    """Return the preprompt text, downloading it when the model points at a URL."""
    if not model.preprompt_url:
        return model.preprompt
    try:
        resp = await backend.request("preprompt", "GET", model.preprompt_url)
    except httpx.HTTPError as e:
        raise BackendFailure(f"Preprompt fetch for '{model.id}' from {model.preprompt_url} failed: {e}") from e
    if not resp.is_success:
        raise BackendFailure(
            f"Preprompt fetch for '{model.id}' failed with status {resp.status_code}",
            status_code=resp.status_code,
        )
    logger.debug("Loaded preprompt for %s from %s", model.id, model.preprompt_url)
    return resp.text
