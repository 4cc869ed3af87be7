"""Model catalog: registry fetch, defaulting policy, id validation."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import httpx
from pydantic import TypeAdapter, ValidationError

from .backend_client import BackendClient
from .config import RuntimeConfig
from .errors import CatalogUnavailable, InvalidDescriptor, UnknownModel
from .models import ModelDescriptor, describe_validation_error

logger = logging.getLogger(__name__)

_CATALOG_ADAPTER = TypeAdapter(list[ModelDescriptor])

# Models that have been deprecated
OLD_MODELS: list[dict[str, Any]] = []


def _registry_entry_to_descriptor(runtime: RuntimeConfig, entry: Any) -> Any:
    """Merge one registry entry over the defaulting policy for its name."""
    if not isinstance(entry, dict):
        return entry
    name = entry.get("name")
    base = runtime.model_defaults.defaults_for(name) if isinstance(name, str) else {}
    descriptor = dict(base)
    descriptor.update(
        {
            "id": name,
            "name": name,
            "owner": entry.get("owner"),
            "display_name": name,
            "is_quantized": entry.get("is_quantized", False),
        }
    )
    address = entry.get("address")
    if isinstance(address, str) and address:
        descriptor["endpoints"] = [{"url": runtime.endpoint_url_for(address), "weight": 1}]
    return descriptor


def parse_catalog(runtime: RuntimeConfig, entries: list[Any]) -> list[ModelDescriptor]:
    """Normalize and validate registry entries; any bad entry fails the lot."""
    processed = [_registry_entry_to_descriptor(runtime, entry) for entry in entries]
    try:
        return _CATALOG_ADAPTER.validate_python(processed)
    except ValidationError as e:
        detail = describe_validation_error(e)
        raise InvalidDescriptor(f"Invalid model in registry catalog: {detail}", field=detail.split(":", 1)[0]) from e


async def _fetch_registry_entries(runtime: RuntimeConfig, backend: BackendClient) -> list[Any]:
    url = f"{runtime.registry_url}/list_models"
    try:
        resp = await backend.request("registry", "GET", url)
    except httpx.HTTPError as e:
        raise CatalogUnavailable(f"Registry unreachable at {url}: {e}") from e

    if not resp.is_success:
        raise CatalogUnavailable(f"Registry {url} answered with status {resp.status_code}")
    try:
        data = resp.json()
    except ValueError as e:
        raise CatalogUnavailable(f"Registry {url} returned invalid JSON") from e
    if not isinstance(data, list):
        raise CatalogUnavailable(f"Registry {url} returned {type(data).__name__}, expected a list")
    return data


async def fetch_catalog(runtime: RuntimeConfig, backend: BackendClient) -> list[ModelDescriptor]:
    """Fetch the current catalog; returns [] when the registry is unavailable."""
    try:
        entries = await _fetch_registry_entries(runtime, backend)
    except CatalogUnavailable as e:
        logger.warning("Model catalog unavailable, using fallback model: %s", e)
        return []

    models = parse_catalog(runtime, entries)
    logger.debug("Fetched %d models from registry", len(models))
    return models


async def registry_health(runtime: RuntimeConfig, backend: BackendClient) -> dict[str, Any]:
    """One registry listing, reported as reachability plus catalog validity."""
    started = time.monotonic()
    try:
        models = parse_catalog(runtime, await _fetch_registry_entries(runtime, backend))
    except CatalogUnavailable as e:
        return {"status": "unavailable", "error": str(e), "models": 0}
    except InvalidDescriptor as e:
        logger.error("Registry catalog is invalid (field=%s): %s", e.field, e)
        return {"status": "invalid", "error": str(e), "field": e.field, "models": 0}
    return {
        "status": "healthy",
        "models": len(models),
        "latency_ms": round((time.monotonic() - started) * 1000, 1),
    }


async def load_catalog(runtime: RuntimeConfig, backend: BackendClient) -> list[ModelDescriptor]:
    models = await fetch_catalog(runtime, backend)
    return models or [runtime.fallback_model]


def validate_model_id(models: list[ModelDescriptor]) -> Callable[[str], bool]:
    """Build a one-of check over the catalog's model ids."""
    if not models:
        raise ValueError("Cannot validate model ids against an empty catalog")
    allowed = frozenset(m.id for m in models)

    def is_valid(model_id: str) -> bool:
        return model_id in allowed

    return is_valid


def find_model(models: list[ModelDescriptor], model_id: str) -> ModelDescriptor:
    for model in models:
        if model.id == model_id:
            return model
    raise UnknownModel(model_id)
