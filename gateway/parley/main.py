"""Parley Gateway: chat back-end proxying conversations to text-generation servers."""

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request

from .backend_client import BackendClient
from .catalog import registry_health
from .config import RuntimeConfig, build_runtime, load_models_config, settings
from .conversation_store import ConversationStore
from .errors import BackendFailure, InvalidDescriptor, ParleyError, UnknownModel
from .http_utils import error_response, get_backend, get_runtime
from .router_conversation import GENERATION_ERROR
from .router_conversation import router as conversation_router
from .router_models import router as models_router

logger = logging.getLogger(__name__)


def create_app(
    runtime: RuntimeConfig | None = None,
    backend: BackendClient | None = None,
    store: ConversationStore | None = None,
) -> FastAPI:
    """Build the app; anything not injected is constructed from settings at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup: load models config, open the store, init httpx pool."""
        logging.basicConfig(
            level=getattr(logging, settings.log_level.upper(), logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

        if app.state.runtime is None:
            app.state.runtime = build_runtime(load_models_config(), settings)
            logger.info(
                "Loaded fallback model '%s' and %d model defaults from %s",
                app.state.runtime.fallback_model.id,
                len(app.state.runtime.model_defaults.table),
                settings.models_config_path,
            )
        if app.state.store is None:
            app.state.store = ConversationStore(settings.store_path)
        if app.state.backend is None:
            app.state.backend = BackendClient()
        await app.state.backend.start()
        logger.info("Parley Gateway started (registry=%s)", app.state.runtime.registry_url)

        yield

        await app.state.backend.stop()
        logger.info("Parley Gateway stopped")

    app = FastAPI(title="Parley Gateway", version="1.0.0", lifespan=lifespan)
    app.state.runtime = runtime
    app.state.backend = backend
    app.state.store = store

    # --- Error handling ---

    @app.exception_handler(ParleyError)
    async def parley_exception_handler(request: Request, exc: ParleyError):
        if isinstance(exc, UnknownModel):
            return error_response(404, "Model not found", str(exc))
        if isinstance(exc, BackendFailure):
            logger.error("Generation failed on %s: %s", request.url.path, exc)
            return error_response(502, GENERATION_ERROR)
        if isinstance(exc, InvalidDescriptor):
            logger.error("Invalid model configuration (field=%s): %s", exc.field, exc)
            return error_response(500, "Invalid model configuration", str(exc))
        logger.error("Unhandled gateway error: %s", exc)
        return error_response(500, "Internal server error")

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        if isinstance(exc, httpx.ConnectError):
            return error_response(503, "Backend unavailable", str(exc))
        if isinstance(exc, (httpx.ReadTimeout, httpx.WriteTimeout)):
            return error_response(504, "Backend timeout", str(exc))
        logger.exception("Unhandled error: %s", exc)
        return error_response(500, "Internal server error")

    # --- Health endpoint ---

    @app.get("/health")
    async def health(request: Request):
        """Registry reachability, catalog validity and paused upstream hosts."""
        backend = get_backend(request)
        registry = await registry_health(get_runtime(request), backend)
        return {
            "status": "healthy" if registry["status"] == "healthy" else "degraded",
            "registry": registry,
            "models": registry["models"] or 1,
            "fallback": not registry["models"],
            "paused_hosts": backend.paused_hosts(),
        }

    app.include_router(models_router)
    app.include_router(conversation_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
