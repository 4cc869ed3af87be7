"""Persistent conversation, shared-conversation and session settings storage."""

from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .models import Conversation, Message

COLLECTIONS = ("conversations", "shared_conversations", "settings")


class ConversationStore:
    """Thread-safe JSON-backed document store.

    Documents live in three collections keyed by id (or session id for
    settings) and are written through to disk on every change.
    """

    def __init__(self, path: str):
        self._path = Path(path)
        self._lock = threading.Lock()
        self._loaded = False
        self._data: dict[str, Any] = {"version": 1, **{name: {} for name in COLLECTIONS}}

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        if self._path.exists():
            try:
                raw = json.loads(self._path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError):
                raw = {}
            for name in COLLECTIONS:
                docs = raw.get(name)
                if isinstance(docs, dict):
                    self._data[name] = docs
        self._loaded = True

    def _persist(self) -> None:
        temp_path = self._path.with_suffix(f"{self._path.suffix}.tmp")
        payload = json.dumps(self._data, ensure_ascii=True, indent=2, sort_keys=True)
        temp_path.write_text(payload, encoding="utf-8")
        temp_path.replace(self._path)

    # --- Conversations ---

    def create_conversation(
        self,
        session_id: str,
        model: str,
        *,
        title: str = "",
        messages: list[Message] | None = None,
        meta: dict[str, Any] | None = None,
    ) -> Conversation:
        with self._lock:
            self._ensure_loaded()
            if not title:
                owned = sum(
                    1 for doc in self._data["conversations"].values()
                    if doc.get("session_id") == session_id
                )
                title = f"Untitled {owned + 1}"
            conversation = Conversation(
                id=uuid.uuid4().hex,
                title=title,
                model=model,
                messages=list(messages or []),
                session_id=session_id,
                meta=dict(meta or {}),
            )
            self._data["conversations"][conversation.id] = conversation.model_dump(mode="json")
            self._persist()
            return conversation

    def get_conversation(self, conversation_id: str, session_id: str) -> Conversation | None:
        """Return the conversation if it exists and belongs to the session."""
        with self._lock:
            self._ensure_loaded()
            doc = self._data["conversations"].get(conversation_id)
            if not isinstance(doc, dict) or doc.get("session_id") != session_id:
                return None
            return Conversation.model_validate(doc)

    def list_conversations(self, session_id: str) -> list[Conversation]:
        """Conversations owned by the session, most recently updated first."""
        with self._lock:
            self._ensure_loaded()
            owned = [
                Conversation.model_validate(doc)
                for doc in self._data["conversations"].values()
                if isinstance(doc, dict) and doc.get("session_id") == session_id
            ]
        return sorted(owned, key=lambda c: c.updated_at, reverse=True)

    def save_conversation(self, conversation: Conversation) -> Conversation:
        updated = conversation.model_copy(update={"updated_at": datetime.now(timezone.utc)})
        with self._lock:
            self._ensure_loaded()
            self._data["conversations"][updated.id] = updated.model_dump(mode="json")
            self._persist()
        return updated

    # --- Shared conversations ---

    def share_conversation(self, conversation: Conversation) -> str:
        shared_id = uuid.uuid4().hex
        with self._lock:
            self._ensure_loaded()
            self._data["shared_conversations"][shared_id] = {
                "id": shared_id,
                "title": conversation.title,
                "model": conversation.model,
                "messages": [m.model_dump(mode="json") for m in conversation.messages],
                "created_at": datetime.now(timezone.utc).isoformat(),
            }
            self._persist()
        return shared_id

    def get_shared_conversation(self, shared_id: str) -> dict[str, Any] | None:
        with self._lock:
            self._ensure_loaded()
            doc = self._data["shared_conversations"].get(shared_id)
            return dict(doc) if isinstance(doc, dict) else None

    # --- Session settings ---

    def get_settings(self, session_id: str) -> dict[str, Any]:
        with self._lock:
            self._ensure_loaded()
            values = self._data["settings"].get(session_id, {})
            return dict(values) if isinstance(values, dict) else {}

    def patch_settings(self, session_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self._ensure_loaded()
            current = self._data["settings"].get(session_id, {})
            merged = dict(current) if isinstance(current, dict) else {}
            for key, value in updates.items():
                if value is None:
                    merged.pop(key, None)
                else:
                    merged[key] = value
            merged["updated_at"] = datetime.now(timezone.utc).isoformat()
            self._data["settings"][session_id] = merged
            self._persist()
            return dict(merged)
