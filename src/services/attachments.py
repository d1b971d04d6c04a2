"""Attachment ingestion for conversational turns.

Images become image parts, documents become text appended to the user's
message, and formats the models cannot read (audio, video, archives,
executables) stop the turn with an acknowledgement instead of a model call.
"""

import asyncio
import base64
import io
import logging
import os
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from core.exceptions import ValidationError
from llm.models import ImagePart, TextPart
from .collaborators import AttachmentFetcher

logger = logging.getLogger(__name__)


class Attachment(BaseModel):
    """A file sent along with a user message, by URL or inline base64."""
    file_name: str
    mime_type: str = "application/octet-stream"
    url: Optional[str] = None
    data: Optional[str] = None

    @property
    def link(self) -> str:
        return self.url or f"attachment://{self.file_name}"


class AttachmentKind(str, Enum):
    IMAGE = "image"
    PDF = "pdf"
    TEXT = "text"
    AUDIO = "audio"
    VIDEO = "video"
    UNSUPPORTED = "unsupported"


TEXT_MIME_TYPES = {
    "application/json",
    "application/csv",
    "application/xml",
    "application/x-ndjson",
    "application/x-yaml",
}
TEXT_EXTENSIONS = {".txt", ".csv", ".md", ".json", ".xml", ".yaml", ".yml", ".log", ".tsv", ".html"}
IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".webp"}
AUDIO_EXTENSIONS = {".mp3", ".wav", ".m4a", ".ogg", ".flac", ".aac"}
VIDEO_EXTENSIONS = {".mp4", ".mov", ".avi", ".mkv", ".webm"}


def classify_attachment(attachment: Attachment) -> AttachmentKind:
    """Decide how an attachment is ingested, by MIME type first, then extension."""
    mime = (attachment.mime_type or "").lower().split(";")[0].strip()
    extension = os.path.splitext(attachment.file_name or "")[1].lower()

    if mime.startswith("image/"):
        return AttachmentKind.IMAGE
    if mime == "application/pdf":
        return AttachmentKind.PDF
    if mime.startswith("text/") or mime in TEXT_MIME_TYPES:
        return AttachmentKind.TEXT
    if mime.startswith("audio/"):
        return AttachmentKind.AUDIO
    if mime.startswith("video/"):
        return AttachmentKind.VIDEO

    if extension in IMAGE_EXTENSIONS:
        return AttachmentKind.IMAGE
    if extension == ".pdf":
        return AttachmentKind.PDF
    if extension in TEXT_EXTENSIONS:
        return AttachmentKind.TEXT
    if extension in AUDIO_EXTENSIONS:
        return AttachmentKind.AUDIO
    if extension in VIDEO_EXTENSIONS:
        return AttachmentKind.VIDEO
    return AttachmentKind.UNSUPPORTED


def acknowledgement_for(attachment: Attachment, kind: AttachmentKind) -> str:
    """Canned reply for an attachment the models cannot read."""
    if kind == AttachmentKind.AUDIO:
        return (
            f"I received your audio file \"{attachment.file_name}\" ({attachment.link}). "
            "I can't listen to audio directly, but I can help once it is transcribed. "
            "Would you like me to help you transcribe it or summarize a transcript?"
        )
    if kind == AttachmentKind.VIDEO:
        return (
            f"I received your video file \"{attachment.file_name}\" ({attachment.link}). "
            "I can't watch videos directly, but if you share a transcript or describe the part "
            "you need help with, I'll take it from there."
        )
    return (
        f"I received your file \"{attachment.file_name}\" ({attachment.link}). "
        "This file type isn't something I can read directly. If you can share it as a PDF, "
        "text, CSV or image, I'll be glad to help with it."
    )


def truncate_text(text: str, max_chars: int, file_name: str) -> str:
    if len(text) <= max_chars:
        return text
    return (
        f"{text[:max_chars]}\n[... truncated: {file_name} exceeds {max_chars} characters, "
        f"{len(text) - max_chars} characters omitted]"
    )


def _extract_pdf_text(raw_bytes: bytes) -> str:
    import pdfplumber

    pages = []
    with pdfplumber.open(io.BytesIO(raw_bytes)) as pdf:
        for page in pdf.pages:
            text = page.extract_text() or ""
            if text:
                pages.append(text)
    return "\n\n".join(pages)


class IngestedAttachments(BaseModel):
    """Result of ingesting a turn's attachments."""
    image_parts: List[ImagePart] = []
    text_blocks: List[str] = []
    acknowledgement: Optional[str] = None

    @property
    def short_circuit(self) -> bool:
        return self.acknowledgement is not None

    def user_content(self, user_input: str) -> List:
        text = user_input
        if self.text_blocks:
            text = "\n\n".join([user_input, *self.text_blocks])
        return [TextPart(text=text), *self.image_parts]


class AttachmentIngestor:
    """Fetch and convert attachments into message content."""

    def __init__(self, fetcher: AttachmentFetcher, max_chars: int = 50000):
        self.fetcher = fetcher
        self.max_chars = max_chars

    async def _read_bytes(self, attachment: Attachment) -> bytes:
        if attachment.data:
            try:
                return base64.b64decode(attachment.data)
            except (ValueError, TypeError) as e:
                raise ValidationError(f"Attachment {attachment.file_name} is not valid base64: {e}")
        if attachment.url:
            return await self.fetcher.fetch_bytes(attachment.url)
        raise ValidationError(f"Attachment {attachment.file_name} has neither data nor url")

    async def ingest(self, attachments: Optional[List[Attachment]]) -> IngestedAttachments:
        """Convert attachments in order.

        The first unsupported attachment ends ingestion with an
        acknowledgement; nothing is downloaded for it.
        """
        ingested = IngestedAttachments()
        for attachment in attachments or []:
            kind = classify_attachment(attachment)

            if kind in (AttachmentKind.AUDIO, AttachmentKind.VIDEO, AttachmentKind.UNSUPPORTED):
                logger.info(f"Attachment {attachment.file_name} ({attachment.mime_type}) not readable by models")
                ingested.acknowledgement = acknowledgement_for(attachment, kind)
                return ingested

            raw = await self._read_bytes(attachment)
            if kind == AttachmentKind.IMAGE:
                mime = attachment.mime_type if attachment.mime_type.startswith("image/") else "image/png"
                ingested.image_parts.append(ImagePart(data=raw, mime_type=mime))
                continue

            if kind == AttachmentKind.PDF:
                text = await asyncio.to_thread(_extract_pdf_text, raw)
            else:
                text = raw.decode("utf-8", errors="replace")

            text = truncate_text(text, self.max_chars, attachment.file_name)
            ingested.text_blocks.append(f"--- Attachment: {attachment.file_name} ---\n{text}")

        return ingested
