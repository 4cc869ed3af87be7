"""HTTP helpers for gateway route handlers."""

from fastapi import Request
from fastapi.responses import JSONResponse

from .backend_client import BackendClient
from .config import RuntimeConfig
from .conversation_store import ConversationStore

SESSION_HEADER = "X-Session-Id"
ANONYMOUS_SESSION = "anonymous"


def error_response(status_code: int, error_label: str, detail: str | None = None) -> JSONResponse:
    """Return a stable gateway error envelope."""
    content = {"error": error_label}
    if detail:
        content["detail"] = detail[:1000]
    return JSONResponse(status_code=status_code, content=content)


def get_runtime(request: Request) -> RuntimeConfig:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise RuntimeError("Runtime config is not initialized")
    return runtime


def get_backend(request: Request) -> BackendClient:
    backend = getattr(request.app.state, "backend", None)
    if backend is None:
        raise RuntimeError("Backend client is not initialized")
    return backend


def get_store(request: Request) -> ConversationStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise RuntimeError("Conversation store is not initialized")
    return store


def get_session_id(request: Request) -> str:
    session_id = request.headers.get(SESSION_HEADER, "").strip()
    return session_id or ANONYMOUS_SESSION
