"""Text-generation client and the chat reply pipeline built on it."""

from __future__ import annotations

import json
import logging
import random
from collections.abc import AsyncIterator, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from .backend_client import BackendClient
from .config import RuntimeConfig
from .endpoints import ResolvedEndpoint, select_endpoint
from .errors import BackendFailure
from .models import Message, ModelDescriptor
from .normalize import normalize
from .prompt import build_prompt, resolve_preprompt

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamToken:
    text: str
    special: bool = False
    generated_text: str | None = None


def merged_parameters(model: ModelDescriptor, overrides: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """Model parameters overlaid with caller overrides; full-text echo disabled."""
    merged = model.parameter_dict()
    if overrides:
        merged.update({k: v for k, v in overrides.items() if v is not None})
    merged["return_full_text"] = False
    return merged


def _extract_generated_text(payload: Any) -> str:
    if isinstance(payload, list) and payload:
        payload = payload[0]
    if isinstance(payload, dict) and isinstance(payload.get("generated_text"), str):
        return payload["generated_text"]
    raise BackendFailure("Generation backend returned no generated_text")


async def generate(
    prompt: str,
    model: ModelDescriptor,
    endpoint: ResolvedEndpoint,
    backend: BackendClient,
    parameters: Mapping[str, Any] | None = None,
) -> str:
    """Single non-streaming generation call; returns the raw generated text."""
    body = {"inputs": prompt, "parameters": merged_parameters(model, parameters)}
    try:
        resp = await backend.request("generation", "POST", endpoint.url, json=body, headers=endpoint.headers())
    except httpx.HTTPError as e:
        raise BackendFailure(f"Generation request to {endpoint.url} failed: {e}") from e

    if not resp.is_success:
        raise BackendFailure(
            f"Generation backend {endpoint.url} answered with status {resp.status_code}: {resp.text[:500]}",
            status_code=resp.status_code,
        )
    try:
        payload = resp.json()
    except ValueError as e:
        raise BackendFailure(f"Generation backend {endpoint.url} returned invalid JSON") from e
    return _extract_generated_text(payload)


def _parse_stream_line(line: str) -> StreamToken | None:
    if not line.startswith("data:"):
        return None
    data = line[len("data:"):].strip()
    if not data:
        return None
    try:
        event = json.loads(data)
    except json.JSONDecodeError as e:
        raise BackendFailure(f"Malformed stream event: {data[:200]}") from e
    if not isinstance(event, dict):
        raise BackendFailure(f"Unexpected stream event: {data[:200]}")
    if event.get("error"):
        raise BackendFailure(f"Generation backend error: {event['error']}")
    token = event.get("token") or {}
    return StreamToken(
        text=token.get("text", ""),
        special=bool(token.get("special", False)),
        generated_text=event.get("generated_text"),
    )


async def generate_stream(
    prompt: str,
    model: ModelDescriptor,
    endpoint: ResolvedEndpoint,
    backend: BackendClient,
    parameters: Mapping[str, Any] | None = None,
) -> AsyncIterator[StreamToken]:
    """Stream tokens from a server-sent-events generation endpoint."""
    body = {"inputs": prompt, "parameters": merged_parameters(model, parameters), "stream": True}
    try:
        async for line in backend.stream_lines(
            "generation", "POST", endpoint.url, json=body, headers=endpoint.headers()
        ):
            token = _parse_stream_line(line)
            if token is not None:
                yield token
    except httpx.HTTPStatusError as e:
        raise BackendFailure(
            f"Generation backend {endpoint.url} answered with status {e.response.status_code}",
            status_code=e.response.status_code,
        ) from e
    except httpx.HTTPError as e:
        raise BackendFailure(f"Generation stream from {endpoint.url} failed: {e}") from e


async def generate_from_default_endpoint(
    prompt: str,
    runtime: RuntimeConfig,
    backend: BackendClient,
    parameters: Mapping[str, Any] | None = None,
    rng: random.Random | None = None,
) -> str:
    """Generate with the fallback model and return cleaned text."""
    model = runtime.fallback_model
    endpoint = select_endpoint(model, runtime, rng)
    stops = merged_parameters(model, parameters).get("stop") or []
    raw = await generate(prompt, model, endpoint, backend, parameters)
    return normalize(raw, stops, runtime.sep_token)


async def generate_reply(
    messages: Iterable[Message],
    model: ModelDescriptor,
    runtime: RuntimeConfig,
    backend: BackendClient,
    parameters: Mapping[str, Any] | None = None,
    rng: random.Random | None = None,
) -> str:
    """Full pipeline: endpoint, prompt, generation, normalization."""
    endpoint = select_endpoint(model, runtime, rng)
    prompt = build_prompt(messages, model, await resolve_preprompt(model, backend))
    logger.info("Generating with model=%s endpoint=%s", model.id, endpoint.url)
    stops = merged_parameters(model, parameters).get("stop") or []
    raw = await generate(prompt, model, endpoint, backend, parameters)
    return normalize(raw, stops, runtime.sep_token)


async def stream_reply(
    messages: Iterable[Message],
    model: ModelDescriptor,
    runtime: RuntimeConfig,
    backend: BackendClient,
    parameters: Mapping[str, Any] | None = None,
    rng: random.Random | None = None,
) -> AsyncIterator[dict[str, str]]:
    """Streaming pipeline: yields token events, then one final event with the cleaned reply."""
    endpoint = select_endpoint(model, runtime, rng)
    prompt = build_prompt(messages, model, await resolve_preprompt(model, backend))
    logger.info("Streaming with model=%s endpoint=%s", model.id, endpoint.url)
    stops = merged_parameters(model, parameters).get("stop") or []

    pieces: list[str] = []
    generated_text: str | None = None
    async for token in generate_stream(prompt, model, endpoint, backend, parameters):
        if token.generated_text is not None:
            generated_text = token.generated_text
        if token.special:
            continue
        pieces.append(token.text)
        yield {"type": "token", "text": token.text}

    raw = generated_text if generated_text is not None else "".join(pieces)
    yield {"type": "final", "text": normalize(raw, stops, runtime.sep_token)}
