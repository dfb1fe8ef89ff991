"""Shared typing contracts for the execution engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Mapping, Protocol, Sequence


class TokenCounterProtocol(Protocol):
    """Protocol describing tokenizer implementations."""

    model_name: str | None

    def count(self, text: str) -> int:
        """Return the precise token count for *text*."""
        ...

    def estimate(self, text: str) -> int:
        """Return a deterministic fallback estimate when precise counts fail."""
        ...


@dataclass(slots=True, frozen=True)
class AssistantConfig:
    """Read-only view of a stored assistant.

    ``allowed_actions`` entries may be bare (``createEvent``) or namespaced
    (``calendar.createEvent``).
    """

    assistant_id: str
    company_id: str
    provider_key: str = "openai"
    model: str | None = None
    system_prompt: str | None = None
    allowed_actions: tuple[str, ...] = ()
    language: str | None = None
    name: str | None = None
    remote_assistant_id: str | None = None


@dataclass(slots=True, frozen=True)
class ActionContext:
    """Tenant identifiers handed to integrations when they list their actions."""

    company_id: str
    assistant_id: str
    user_id: str | None = None
    session_id: str | None = None
    language: str | None = None

    def as_payload(self) -> dict[str, Any]:
        payload = {
            "company_id": self.company_id,
            "assistant_id": self.assistant_id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "language": self.language,
        }
        return {key: value for key, value in payload.items() if value not in (None, "")}


AttachmentKind = Literal["image", "document"]


@dataclass(slots=True, frozen=True)
class Attachment:
    """Reference to a file attached to the user turn."""

    name: str
    mime_type: str = "application/octet-stream"
    url: str | None = None
    data: str | None = None
    file_id: str | None = None

    @property
    def kind(self) -> AttachmentKind:
        return "image" if self.mime_type.lower().startswith("image/") else "document"


@dataclass(slots=True, frozen=True)
class SessionRef:
    """Conversation the exchange belongs to, with prior turns in chat format."""

    session_id: str
    user_id: str | None = None
    history: Sequence[Mapping[str, Any]] = ()


@dataclass(slots=True, frozen=True)
class ResponseFormat:
    """Structured output request: free JSON or JSON constrained by ``schema``."""

    type: Literal["json_object", "json_schema"] = "json_object"
    schema: Mapping[str, Any] | None = None
    name: str = "response"
    strict: bool = True

    def as_openai_format(self) -> dict[str, Any]:
        if self.type == "json_schema" and self.schema is not None:
            return {
                "type": "json_schema",
                "json_schema": {"name": self.name, "schema": dict(self.schema), "strict": self.strict},
            }
        return {"type": "json_object"}


class ApiKeyResolver(Protocol):
    """Looks up per-tenant provider credentials such as ``openai_api_key``."""

    async def get_api_key(self, tenant_id: str, key_name: str) -> str | None:
        ...


FetchMode = Literal["text", "binary"]


class AttachmentFetcher(Protocol):
    """Loads attachment content; raises on failure.

    ``mode="text"`` returns extracted text, ``mode="binary"`` returns raw bytes.
    """

    async def fetch_content(self, attachment: Attachment, mode: FetchMode) -> str | bytes:
        ...
