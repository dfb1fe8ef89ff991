"""Attachment fetching and user-turn content assembly."""

from __future__ import annotations

import asyncio
import base64
import binascii
import io
import logging
from dataclasses import dataclass
from typing import Any, List, Sequence

import httpx
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from ..ai_types import Attachment, AttachmentFetcher, FetchMode

LOGGER = logging.getLogger(__name__)

DEFAULT_ATTACHMENT_CHAR_LIMIT = 50_000

__all__ = [
    "AttachmentError",
    "DEFAULT_ATTACHMENT_CHAR_LIMIT",
    "HttpAttachmentFetcher",
    "build_user_content",
    "failure_marker",
    "format_document",
]


class AttachmentError(RuntimeError):
    """Raised by a fetcher when an attachment cannot be loaded."""


class HttpAttachmentFetcher:
    """Loads attachments from inline base64 ``data`` or over HTTP from ``url``.

    PDF documents are text-extracted with pypdf; other documents are decoded
    as UTF-8.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        reader_cls: type = PdfReader,
    ) -> None:
        self._client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
        self._owns_client = client is None
        self._reader_cls = reader_cls

    async def fetch_content(self, attachment: Attachment, mode: FetchMode) -> str | bytes:
        raw = await self._read_bytes(attachment)
        if mode == "binary":
            return raw
        return self._extract_text(attachment, raw)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _read_bytes(self, attachment: Attachment) -> bytes:
        if attachment.data:
            try:
                return base64.b64decode(attachment.data, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise AttachmentError(f"Attachment {attachment.name} has invalid base64 data") from exc
        if not attachment.url:
            raise AttachmentError(f"Attachment {attachment.name} has no data or url")
        response = await self._client.get(attachment.url)
        response.raise_for_status()
        return response.content

    def _extract_text(self, attachment: Attachment, raw: bytes) -> str:
        if attachment.mime_type.lower() == "application/pdf" or attachment.name.lower().endswith(".pdf"):
            try:
                reader = self._reader_cls(io.BytesIO(raw))
            except PdfReadError as exc:
                raise AttachmentError(f"Unable to open PDF {attachment.name}: {exc}") from exc
            chunks = []
            for page in reader.pages:
                chunk = str(page.extract_text() or "").strip()
                if chunk:
                    chunks.append(chunk)
            return "\n\n".join(chunks)
        return raw.decode("utf-8", errors="replace")


@dataclass(slots=True)
class _Loaded:
    attachment: Attachment
    content: str | bytes | None = None
    failed: bool = False


def failure_marker(name: str) -> str:
    return f"[Could not load {name}]"


def format_document(name: str, text: str, char_limit: int) -> str:
    """Wrap extracted document text, truncating it to ``char_limit`` characters."""

    if len(text) > char_limit:
        omitted = len(text) - char_limit
        text = f"{text[:char_limit]}\n[Truncated: {omitted} characters omitted]"
    return f"\n\n--- Attached File: {name} ---\n{text}\n--- End of File ---"


async def build_user_content(
    user_input: str,
    attachments: Sequence[Attachment],
    fetcher: AttachmentFetcher | None,
    *,
    char_limit: int = DEFAULT_ATTACHMENT_CHAR_LIMIT,
) -> str | List[dict[str, Any]]:
    """Build the content of the user message.

    Attachments are fetched concurrently. Images become ``image_url`` parts,
    documents are appended to the text, and failures leave an inline marker.
    Returns a plain string when no image part survived.
    """

    if not attachments:
        return user_input

    loaded = await asyncio.gather(*(_load(attachment, fetcher) for attachment in attachments))

    text = user_input
    image_parts: List[dict[str, Any]] = []
    for item in loaded:
        attachment = item.attachment
        if item.failed:
            text += f"\n\n{failure_marker(attachment.name)}"
        elif attachment.kind == "image":
            raw = item.content if isinstance(item.content, bytes) else str(item.content).encode("utf-8")
            encoded = base64.b64encode(raw).decode("ascii")
            image_parts.append(
                {"type": "image_url", "image_url": {"url": f"data:{attachment.mime_type};base64,{encoded}"}}
            )
        else:
            content = item.content
            if isinstance(content, bytes):
                content = content.decode("utf-8", errors="replace")
            text += format_document(attachment.name, content or "", char_limit)

    if not image_parts:
        return text
    return [{"type": "text", "text": text}, *image_parts]


async def _load(attachment: Attachment, fetcher: AttachmentFetcher | None) -> _Loaded:
    if fetcher is None:
        LOGGER.warning("No attachment fetcher configured; cannot load %s", attachment.name)
        return _Loaded(attachment, failed=True)
    mode: FetchMode = "binary" if attachment.kind == "image" else "text"
    try:
        content = await fetcher.fetch_content(attachment, mode)
    except Exception:
        LOGGER.warning("Failed to load attachment %s", attachment.name, exc_info=True)
        return _Loaded(attachment, failed=True)
    return _Loaded(attachment, content=content)
