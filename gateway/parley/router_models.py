"""Model routes: catalog listing and per-session active model."""

import logging

from fastapi import APIRouter, Depends, Query

from .backend_client import BackendClient
from .catalog import OLD_MODELS, fetch_catalog, validate_model_id
from .config import RuntimeConfig
from .conversation_store import ConversationStore
from .http_utils import get_backend, get_runtime, get_session_id, get_store
from .models import ModelDescriptor

router = APIRouter(tags=["models"])
logger = logging.getLogger(__name__)

PUBLIC_MODEL_FIELDS = {
    "id",
    "name",
    "website_url",
    "model_url",
    "dataset_name",
    "dataset_url",
    "display_name",
    "owner",
    "is_quantized",
    "description",
    "prompt_examples",
    "parameters",
}


def public_model_info(model: ModelDescriptor) -> dict:
    """Descriptor fields safe to expose to clients (no tokens or endpoints)."""
    return model.model_dump(include=PUBLIC_MODEL_FIELDS, mode="json")


@router.get("/models")
async def list_models(
    model: str | None = Query(None),
    runtime: RuntimeConfig = Depends(get_runtime),
    backend: BackendClient = Depends(get_backend),
    store: ConversationStore = Depends(get_store),
    session_id: str = Depends(get_session_id),
):
    """List the catalog; ``?model=<id>`` switches the session's active model."""
    fetched = await fetch_catalog(runtime, backend)
    models = fetched or [runtime.fallback_model]
    is_valid = validate_model_id(models)

    if model is not None:
        if is_valid(model):
            store.patch_settings(session_id, {"active_model": model})
            logger.info("Session %s switched active model to %s", session_id, model)
        else:
            logger.info("Ignoring unknown model '%s' for session %s", model, session_id)

    settings = store.get_settings(session_id)
    active = settings.get("active_model")
    # Sessions still on the fallback model move to the first registry model
    if fetched and (active is None or active == runtime.fallback_model.id):
        active = models[0].id
        store.patch_settings(session_id, {"active_model": active})

    return {
        "models": [public_model_info(m) for m in models],
        "active_model": active or runtime.fallback_model.id,
        "old_models": OLD_MODELS,
    }
