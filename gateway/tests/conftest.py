"""Shared fixtures: runtime config, fake upstream servers, store, app client."""

from __future__ import annotations

import json

import httpx
import pytest
import sse_starlette.sse as sse_module
from httpx import ASGITransport, AsyncClient

from parley.backend_client import BackendClient
from parley.config import Settings, build_runtime
from parley.conversation_store import ConversationStore
from parley.main import create_app

REGISTRY_URL = "http://registry.test"

FALLBACK_MODEL = {
    "id": "default",
    "name": "default",
    "display_name": "Default",
    "user_message_token": "<|prompter|>",
    "assistant_message_token": "<|assistant|>",
    "message_end_token": "</s>",
    "endpoints": [{"url": "http://fallback.test:8888/generate_stream", "weight": 1}],
}

MODEL_DEFAULTS = {
    "*": {
        "user_message_token": "<|prompter|>",
        "assistant_message_token": "<|assistant|>",
        "message_end_token": "</s>",
        "parameters": {
            "temperature": 0.9,
            "top_p": 0.95,
            "truncate": 1000,
            "max_new_tokens": 1024,
        },
    },
    "llama-7b": {
        "preprompt": "You are a helpful assistant.\n",
        "parameters": {"stop": ["User:"]},
    },
}

REGISTRY_MODELS = [
    {"name": "llama-7b", "owner": "alice", "address": "10.0.0.5:8080", "is_quantized": True},
    {"name": "falcon-7b", "owner": "bob", "address": "10.0.0.6:8080", "is_quantized": False},
]


def make_runtime(config: dict | None = None, **settings_overrides):
    app_settings = Settings(registry_url=REGISTRY_URL, **settings_overrides)
    if config is None:
        config = {"fallback": FALLBACK_MODEL, "model_defaults": MODEL_DEFAULTS}
    return build_runtime(config, app_settings)


class FakeUpstream:
    """Plays the model registry and the text-generation servers."""

    def __init__(self) -> None:
        self.registry_models: list | dict = []
        self.registry_status: int | None = 200
        self.generated_text = "Hello there</s>"
        self.generate_status = 200
        self.stream_events: list[dict] = []
        self.preprompt_text = "Remote preprompt.\n"
        self.preprompt_error: Exception | None = None
        self.requests: list[httpx.Request] = []

    @property
    def generation_requests(self) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if r.url.path != "/list_models" and r.url.host != "preprompt.test"
        ]

    def last_generation_body(self) -> dict:
        return json.loads(self.generation_requests[-1].content)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/list_models":
            if self.registry_status is None:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(self.registry_status, json=self.registry_models)
        if request.url.host == "preprompt.test":
            if self.preprompt_error is not None:
                raise self.preprompt_error
            return httpx.Response(200, text=self.preprompt_text)

        body = json.loads(request.content)
        if body.get("stream"):
            text = "".join(f"data:{json.dumps(event)}\n\n" for event in self.stream_events)
            return httpx.Response(
                self.generate_status,
                text=text,
                headers={"content-type": "text/event-stream"},
            )
        if self.generate_status != 200:
            return httpx.Response(self.generate_status, text="CUDA out of memory on shard 0")
        return httpx.Response(200, json=[{"generated_text": self.generated_text}])


@pytest.fixture(autouse=True)
def _reset_sse_exit_event(monkeypatch):
    # Older sse-starlette releases cache an exit event bound to the first event loop
    app_status = getattr(sse_module, "AppStatus", None)
    if app_status is not None:
        monkeypatch.setattr(app_status, "should_exit_event", None, raising=False)


@pytest.fixture
def runtime():
    return make_runtime()


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
async def backend(upstream):
    client = BackendClient(transport=httpx.MockTransport(upstream.handler))
    await client.start()
    yield client
    await client.stop()


@pytest.fixture
def store(tmp_path):
    return ConversationStore(str(tmp_path / "store.json"))


@pytest.fixture
async def client(runtime, backend, store):
    app = create_app(runtime=runtime, backend=backend, store=store)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
