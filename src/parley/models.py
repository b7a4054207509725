import base64
import os
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_serializer, field_validator, model_validator

from common.ids import generate_id

DEFAULT_SESSION_NAME = "Untitled Session"
DEFAULT_PROVIDER = "openai"
PENDING_ATTACHMENTS_KEY = "pending_attachments"

Role = Literal["system", "user", "assistant"]
AttachmentType = Literal["image", "audio", "video", "text", "file"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def provider_from_model(model: str) -> str:
    """Derive the provider from a litellm-style model string.

    ``anthropic/claude-3-5-haiku`` -> ``anthropic``; bare names such as
    ``gpt-4o`` route to the default provider, as litellm does.
    """
    if "/" in model:
        return model.split("/", 1)[0]
    return DEFAULT_PROVIDER if model else ""


class Attachment(BaseModel):
    id: str = Field(default_factory=generate_id)
    type: AttachmentType = "file"
    mime_type: str = ""
    name: str = ""
    file_path: str = ""
    url: str = ""
    size: int = 0
    content: bytes = b""
    metadata: dict[str, Any] = Field(default_factory=dict)

    # Raw bytes in memory, base64 text on disk.
    @field_serializer("content", when_used="json")
    def _serialize_content(self, value: bytes) -> str:
        return base64.b64encode(value).decode("ascii")

    @field_validator("content", mode="before")
    @classmethod
    def _decode_content(cls, value: Any) -> Any:
        if isinstance(value, str):
            return base64.b64decode(value)
        return value

    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.file_path:
            return os.path.basename(self.file_path)
        if self.url:
            return self.url
        return f"{self.type}_attachment"


class Message(BaseModel):
    id: str = Field(default_factory=generate_id)
    role: Role
    content: str = ""
    timestamp: datetime = Field(default_factory=utc_now)
    attachments: list[Attachment] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def clone(self, new_id: str | None = None) -> "Message":
        copy = self.model_copy(deep=True)
        if new_id is not None:
            copy.id = new_id
        return copy

    def to_llm_message(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content}


class Conversation(BaseModel):
    id: str
    model: str = ""
    provider: str = ""
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, gt=0)
    system_prompt: str | None = None
    created: datetime = Field(default_factory=utc_now)
    updated: datetime = Field(default_factory=utc_now)
    messages: list[Message] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def add_message(self, message: Message) -> None:
        self.messages.append(message)
        self.updated = utc_now()

    def set_model(self, model: str) -> None:
        self.model = model
        self.provider = provider_from_model(model)
        self.updated = utc_now()

    def set_parameters(
        self, temperature: float | None = None, max_tokens: int | None = None
    ) -> None:
        if temperature is not None and not 0.0 <= temperature <= 2.0:
            raise ValueError("temperature must be between 0.0 and 2.0")
        if max_tokens is not None and max_tokens <= 0:
            raise ValueError("max_tokens must be > 0 when set")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.updated = utc_now()

    def clear_messages(self) -> None:
        self.messages = []
        self.updated = utc_now()

    def truncate(self, count: int) -> None:
        if count < 0:
            raise ValueError("count must be >= 0")
        self.messages = self.messages[:count]
        self.updated = utc_now()

    def history_for_llm(self) -> list[dict[str, Any]]:
        history: list[dict[str, Any]] = []
        if self.system_prompt:
            history.append({"role": "system", "content": self.system_prompt})
        history.extend(m.to_llm_message() for m in self.messages)
        return history


class SessionInfo(BaseModel):
    id: str
    name: str
    created: datetime
    updated: datetime
    message_count: int = 0
    model: str = ""
    provider: str = ""
    tags: list[str] = Field(default_factory=list)
    parent_id: str | None = None
    branch_name: str | None = None
    child_count: int = 0
    is_branch: bool = False


class Session(BaseModel):
    id: str = Field(frozen=True)
    name: str = DEFAULT_SESSION_NAME
    conversation: Conversation
    config: dict[str, Any] = Field(default_factory=dict)
    created: datetime = Field(default_factory=utc_now)
    updated: datetime = Field(default_factory=utc_now)
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    parent_id: str | None = None
    branch_point: int | None = None
    branch_name: str | None = None
    child_ids: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _conversation_mirrors_id(self) -> "Session":
        if self.conversation.id != self.id:
            self.conversation.id = self.id
        return self

    @classmethod
    def create(cls, session_id: str, name: str | None = None) -> "Session":
        now = utc_now()
        return cls(
            id=session_id,
            name=name or DEFAULT_SESSION_NAME,
            conversation=Conversation(id=session_id, created=now, updated=now),
            created=now,
            updated=now,
        )

    @property
    def messages(self) -> list[Message]:
        return self.conversation.messages

    @property
    def is_branch(self) -> bool:
        return self.parent_id is not None

    def touch(self) -> None:
        self.updated = utc_now()

    def add_tag(self, tag: str) -> bool:
        if tag in self.tags:
            return False
        self.tags.append(tag)
        self.touch()
        return True

    def remove_tag(self, tag: str) -> bool:
        if tag not in self.tags:
            return False
        self.tags = [t for t in self.tags if t != tag]
        self.touch()
        return True

    def add_child(self, child_id: str) -> None:
        if child_id not in self.child_ids:
            self.child_ids.append(child_id)
            self.touch()

    def public_metadata(self) -> dict[str, Any]:
        return {k: v for k, v in self.metadata.items() if k != PENDING_ATTACHMENTS_KEY}

    def to_info(self) -> SessionInfo:
        return SessionInfo(
            id=self.id,
            name=self.name,
            created=self.created,
            updated=self.updated,
            message_count=len(self.conversation.messages),
            model=self.conversation.model,
            provider=self.conversation.provider,
            tags=list(self.tags),
            parent_id=self.parent_id,
            branch_name=self.branch_name,
            child_count=len(self.child_ids),
            is_branch=self.is_branch,
        )


class SearchMatch(BaseModel):
    type: Literal["message", "name", "system_prompt", "tag"]
    role: str = ""
    content: str
    context: str
    position: int
    message_index: int = -1


class SearchResult(BaseModel):
    session: SessionInfo
    matches: list[SearchMatch] = Field(default_factory=list)

    def matches_of(self, match_type: str) -> list[SearchMatch]:
        return [m for m in self.matches if m.type == match_type]


class BranchTree(BaseModel):
    session: SessionInfo
    children: list["BranchTree"] = Field(default_factory=list)


class MergeType(str, Enum):
    CONTINUATION = "continuation"
    REBASE = "rebase"


class MergeOptions(BaseModel):
    type: MergeType = MergeType.CONTINUATION
    merge_point: int | None = None
    create_branch: bool = False
    branch_name: str | None = None


class MergeResult(BaseModel):
    target_id: str
    source_id: str
    session_id: str
    merged_count: int
    new_branch_id: str | None = None


class RecoveryState(BaseModel):
    session_id: str
    session_name: str
    timestamp: datetime = Field(default_factory=utc_now)
    message_count: int = 0
    session: Session | None = None
    storage_backend: str = ""
    app_version: str = ""
