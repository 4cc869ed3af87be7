"""Conversation routes: create, read, share, send message, summarize, prompt preview."""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException
from sse_starlette.sse import EventSourceResponse

from .backend_client import BackendClient
from .catalog import fetch_catalog, find_model, load_catalog, validate_model_id
from .config import RuntimeConfig
from .conversation_store import ConversationStore
from .errors import BackendFailure, UnknownModel
from .generation import generate_from_default_endpoint, generate_reply, merged_parameters, stream_reply
from .http_utils import get_backend, get_runtime, get_session_id, get_store
from .models import (
    Conversation,
    CreateConversationRequest,
    Message,
    PromptPreview,
    SendMessageRequest,
)
from .prompt import build_prompt, resolve_preprompt

router = APIRouter(tags=["conversation"])
logger = logging.getLogger(__name__)

GENERATION_ERROR = "Could not generate a response"
PREVIEW_NOTE = (
    "This is a preview of the prompt that will be sent to the model when retrying the message. "
    "It may differ from what was sent in the past if the parameters have been updated since"
)
SUMMARIZE_INSTRUCTION = "Please summarize the following message as a single sentence of less than 5 words:\n"
SUMMARY_MAX_NEW_TOKENS = 20


def _require_conversation(store: ConversationStore, conversation_id: str, session_id: str) -> Conversation:
    conversation = store.get_conversation(conversation_id, session_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


def _message_index(conversation: Conversation, message_id: str) -> int:
    for index, message in enumerate(conversation.messages):
        if message.id == message_id:
            return index
    raise HTTPException(status_code=404, detail="Message not found")


@router.get("/conversations")
async def list_conversations(
    store: ConversationStore = Depends(get_store),
    session_id: str = Depends(get_session_id),
):
    return {
        "conversations": [
            {
                "id": c.id,
                "title": c.title,
                "model": c.model,
                "updated_at": c.updated_at.isoformat(),
            }
            for c in store.list_conversations(session_id)
        ]
    }


@router.post("/conversation")
async def create_conversation(
    body: CreateConversationRequest,
    runtime: RuntimeConfig = Depends(get_runtime),
    backend: BackendClient = Depends(get_backend),
    store: ConversationStore = Depends(get_store),
    session_id: str = Depends(get_session_id),
):
    """Start a conversation, optionally as a copy of a shared one."""
    fetched = await fetch_catalog(runtime, backend)
    model_id = body.model
    if model_id == runtime.fallback_model.id and fetched:
        model_id = fetched[0].id
    if not validate_model_id(fetched or [runtime.fallback_model])(model_id):
        raise UnknownModel(model_id)

    title = ""
    messages: list[Message] = []
    meta = {}
    if body.from_share:
        shared = store.get_shared_conversation(body.from_share)
        if shared is None:
            raise HTTPException(status_code=404, detail="Conversation not found")
        title = shared.get("title", "")
        messages = [Message.model_validate(m) for m in shared.get("messages", [])]
        meta = {"from_share_id": body.from_share}

    conversation = store.create_conversation(
        session_id, model_id, title=title, messages=messages, meta=meta
    )
    logger.info("Created conversation %s with model=%s", conversation.id, model_id)
    return {"conversation_id": conversation.id}


@router.get("/conversation/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    store: ConversationStore = Depends(get_store),
    session_id: str = Depends(get_session_id),
):
    conversation = _require_conversation(store, conversation_id, session_id)
    return conversation.model_dump(mode="json")


@router.post("/conversation/{conversation_id}")
async def send_message(
    conversation_id: str,
    body: SendMessageRequest,
    runtime: RuntimeConfig = Depends(get_runtime),
    backend: BackendClient = Depends(get_backend),
    store: ConversationStore = Depends(get_store),
    session_id: str = Depends(get_session_id),
):
    """Append a user turn (or retry from ``id``) and generate the assistant reply."""
    conversation = _require_conversation(store, conversation_id, session_id)
    model = find_model(await load_catalog(runtime, backend), conversation.model)

    history = list(conversation.messages)
    if body.id is not None:
        history = history[: _message_index(conversation, body.id)]
        user_message = Message(id=body.id, role="user", content=body.inputs)
    else:
        user_message = Message(role="user", content=body.inputs)
    history.append(user_message)

    def _persist(reply: str) -> Message:
        assistant = Message(role="assistant", content=reply)
        store.save_conversation(
            conversation.model_copy(update={"messages": [*history, assistant]})
        )
        return assistant

    if not body.stream:
        reply = await generate_reply(history, model, runtime, backend, body.parameters)
        return {"message": _persist(reply).model_dump(mode="json")}

    async def event_generator():
        try:
            async for event in stream_reply(history, model, runtime, backend, body.parameters):
                if event["type"] == "token":
                    yield {"event": "token", "data": json.dumps({"text": event["text"]})}
                else:
                    assistant = _persist(event["text"])
                    yield {"event": "final", "data": json.dumps(assistant.model_dump(mode="json"))}
        except BackendFailure as e:
            logger.error("Streaming generation failed for conversation %s: %s", conversation.id, e)
            yield {"event": "error", "data": json.dumps({"error": GENERATION_ERROR})}

    return EventSourceResponse(event_generator())


@router.post("/conversation/{conversation_id}/summarize")
async def summarize(
    conversation_id: str,
    runtime: RuntimeConfig = Depends(get_runtime),
    backend: BackendClient = Depends(get_backend),
    store: ConversationStore = Depends(get_store),
    session_id: str = Depends(get_session_id),
):
    """Title the conversation from its first user message using the default model."""
    conversation = _require_conversation(store, conversation_id, session_id)
    first = next((m for m in conversation.messages if m.role == "user"), None)
    if first is None:
        raise HTTPException(status_code=400, detail="Conversation has no user message")

    prompt = build_prompt(
        [Message(role="user", content=SUMMARIZE_INSTRUCTION + first.content)],
        runtime.fallback_model,
    )
    title = await generate_from_default_endpoint(
        prompt, runtime, backend, {"max_new_tokens": SUMMARY_MAX_NEW_TOKENS}
    )
    if title:
        store.save_conversation(conversation.model_copy(update={"title": title}))
    return {"title": title or conversation.title}


@router.post("/conversation/{conversation_id}/share")
async def share(
    conversation_id: str,
    store: ConversationStore = Depends(get_store),
    session_id: str = Depends(get_session_id),
):
    conversation = _require_conversation(store, conversation_id, session_id)
    return {"shared_id": store.share_conversation(conversation)}


@router.get("/conversation/{conversation_id}/message/{message_id}/prompt")
async def prompt_preview(
    conversation_id: str,
    message_id: str,
    runtime: RuntimeConfig = Depends(get_runtime),
    backend: BackendClient = Depends(get_backend),
    store: ConversationStore = Depends(get_store),
    session_id: str = Depends(get_session_id),
):
    """Rebuild the prompt that a retry of ``message_id`` would send."""
    conversation = _require_conversation(store, conversation_id, session_id)
    index = _message_index(conversation, message_id)
    model = find_model(await load_catalog(runtime, backend), conversation.model)

    prompt = build_prompt(
        conversation.messages[: index + 1],
        model,
        await resolve_preprompt(model, backend),
    )
    return PromptPreview(
        note=PREVIEW_NOTE,
        prompt=prompt,
        model=model.name,
        parameters=merged_parameters(model),
    ).model_dump()
