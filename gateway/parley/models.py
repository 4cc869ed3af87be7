import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Literal

from pydantic import (
    AfterValidator,
    AliasChoices,
    AnyHttpUrl,
    BaseModel,
    ConfigDict,
    Field,
    PositiveInt,
    TypeAdapter,
    ValidationError,
    model_validator,
)

_HTTP_URL = TypeAdapter(AnyHttpUrl)


def _check_url(value: str) -> str:
    # Validate without letting pydantic rewrite the string (trailing slashes etc.)
    try:
        _HTTP_URL.validate_python(value)
    except ValidationError:
        raise ValueError(f"invalid URL: {value!r}") from None
    return value


HttpUrlStr = Annotated[str, AfterValidator(_check_url)]


def describe_validation_error(exc: ValidationError) -> str:
    """Render the first validation error as '<field.path>: <message>'."""
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    loc = ".".join(str(part) for part in first.get("loc", ())) or "<root>"
    return f"{loc}: {first.get('msg', 'invalid value')}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


# --- Model catalog ---


class Endpoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: HttpUrlStr
    weight: PositiveInt = 1


class PromptExample(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str = Field(..., min_length=1)
    prompt: str = Field(..., min_length=1)


class GenerationParameters(BaseModel):
    """Sampling parameters; unknown keys (top_p, top_k, ...) pass through."""

    model_config = ConfigDict(frozen=True, extra="allow")

    temperature: float = Field(..., ge=0.0, le=1.0)
    truncate: PositiveInt
    max_new_tokens: PositiveInt
    stop: list[str] | None = None


class ModelDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore", protected_namespaces=())

    # Used as an identifier in the store
    id: str = Field(..., min_length=1)
    # Used for routing and inference
    name: str = Field(..., min_length=1)
    display_name: str | None = Field(default=None, min_length=1)
    owner: str | None = Field(default=None, min_length=1)
    is_quantized: bool = False
    description: str | None = Field(default=None, min_length=1)
    website_url: HttpUrlStr | None = None
    model_url: HttpUrlStr | None = None
    dataset_name: str | None = Field(default=None, min_length=1)
    dataset_url: HttpUrlStr | None = None

    user_message_token: str
    user_message_end_token: str = ""
    assistant_message_token: str
    assistant_message_end_token: str = ""
    message_end_token: str = ""
    preprompt: str = ""
    preprompt_url: HttpUrlStr | None = None

    prompt_examples: list[PromptExample] | None = None
    endpoints: list[Endpoint] | None = None
    parameters: GenerationParameters | None = None

    @model_validator(mode="before")
    @classmethod
    def default_id_to_name(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("id") and data.get("name"):
            return {**data, "id": data["name"]}
        return data

    def parameter_dict(self) -> dict[str, Any]:
        if self.parameters is None:
            return {}
        return self.parameters.model_dump(exclude_none=True)


# --- Conversations ---


class Message(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: Literal["user", "assistant"] = Field(
        ..., validation_alias=AliasChoices("role", "from")
    )
    content: str


class Conversation(BaseModel):
    id: str
    title: str
    model: str
    messages: list[Message] = Field(default_factory=list)
    session_id: str
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    meta: dict[str, Any] = Field(default_factory=dict)


class CreateConversationRequest(BaseModel):
    model: str = Field(..., min_length=1)
    from_share: str | None = None


class SendMessageRequest(BaseModel):
    inputs: str = Field(..., min_length=1)
    # Retry from this message: it and everything after it are replaced
    id: str | None = None
    stream: bool = True
    parameters: dict[str, Any] | None = None


class PromptPreview(BaseModel):
    note: str
    prompt: str
    model: str
    parameters: dict[str, Any]
