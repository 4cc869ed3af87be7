from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError
from pydantic_settings import BaseSettings

from .errors import InvalidDescriptor
from .models import Endpoint, ModelDescriptor, describe_validation_error

ENDPOINT_MODES = {"generate_stream", "direct"}


class Settings(BaseSettings):
    models_config_path: str = "/config/models.yaml"
    registry_url: str = "http://localhost:8765"
    endpoint_mode: str = "generate_stream"
    access_token: str = ""
    sep_token: str = "</s>"
    default_endpoint_url: str = ""
    store_path: str = "/data/parley/store.json"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000

    model_config = {"env_prefix": "PARLEY_"}


settings = Settings()


def load_models_config(path: str | None = None) -> dict:
    """Load fallback model and defaulting policy from YAML config."""
    config_path = Path(path or settings.models_config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Models config not found: {config_path}")
    with open(config_path) as f:
        return yaml.safe_load(f) or {}


@dataclass(frozen=True)
class ModelDefaults:
    """Per-model base descriptors; the '*' entry applies to every model."""

    table: dict[str, dict[str, Any]] = field(default_factory=dict)

    def defaults_for(self, name: str) -> dict[str, Any]:
        merged: dict[str, Any] = {}
        for key in ("*", name):
            entry = self.table.get(key) or {}
            for k, v in entry.items():
                if k == "parameters" and isinstance(v, dict):
                    merged["parameters"] = {**merged.get("parameters", {}), **v}
                elif isinstance(v, list):
                    merged[k] = [dict(item) if isinstance(item, dict) else item for item in v]
                else:
                    merged[k] = v
        return merged


@dataclass(frozen=True)
class RuntimeConfig:
    """Process-wide read-only state handed to every pipeline entry point."""

    fallback_model: ModelDescriptor
    default_endpoint: Endpoint
    model_defaults: ModelDefaults = field(default_factory=ModelDefaults)
    registry_url: str = "http://localhost:8765"
    endpoint_mode: str = "generate_stream"
    access_token: str = ""
    sep_token: str = "</s>"

    def endpoint_url_for(self, address: str) -> str:
        if self.endpoint_mode == "direct":
            return f"http://{address}"
        return f"http://{address}/generate_stream"


def build_runtime(config: dict, app_settings: Settings | None = None) -> RuntimeConfig:
    """Construct the runtime config from settings and the parsed YAML file."""
    app_settings = app_settings or settings
    mode = app_settings.endpoint_mode.strip().lower()
    if mode not in ENDPOINT_MODES:
        raise ValueError(
            f"Unknown endpoint mode '{app_settings.endpoint_mode}' "
            f"(expected one of: {', '.join(sorted(ENDPOINT_MODES))})"
        )

    raw_fallback = config.get("fallback")
    if not isinstance(raw_fallback, dict):
        raise InvalidDescriptor("models config must define a 'fallback' model", field="fallback")
    try:
        fallback = ModelDescriptor.model_validate(raw_fallback)
    except ValidationError as e:
        raise InvalidDescriptor(
            f"Invalid fallback model: {describe_validation_error(e)}",
            field="fallback",
        ) from e

    if app_settings.default_endpoint_url:
        default_endpoint = Endpoint(url=app_settings.default_endpoint_url)
    elif fallback.endpoints:
        default_endpoint = fallback.endpoints[0]
    else:
        raise InvalidDescriptor(
            "No default endpoint: set PARLEY_DEFAULT_ENDPOINT_URL or give the fallback model an endpoint",
            field="fallback.endpoints",
        )

    table = config.get("model_defaults") or {}
    if not isinstance(table, dict):
        raise InvalidDescriptor("'model_defaults' must be a mapping", field="model_defaults")

    return RuntimeConfig(
        fallback_model=fallback,
        default_endpoint=default_endpoint,
        model_defaults=ModelDefaults(table=table),
        registry_url=app_settings.registry_url.rstrip("/"),
        endpoint_mode=mode,
        access_token=app_settings.access_token,
        sep_token=app_settings.sep_token,
    )
