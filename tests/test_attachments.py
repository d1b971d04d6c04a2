"""Tests for attachment ingestion."""

import base64
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from core.exceptions import ValidationError
from llm.models import ImagePart, TextPart
from services.attachments import (
    Attachment,
    AttachmentIngestor,
    AttachmentKind,
    classify_attachment,
    truncate_text,
)


def _fetcher(payload=b""):
    fetcher = MagicMock()
    fetcher.fetch_bytes = AsyncMock(return_value=payload)
    return fetcher


class TestClassifyAttachment:

    @pytest.mark.parametrize("file_name,mime_type,kind", [
        ("photo.png", "image/png", AttachmentKind.IMAGE),
        ("report.pdf", "application/pdf", AttachmentKind.PDF),
        ("data.csv", "text/csv", AttachmentKind.TEXT),
        ("data.csv", "application/octet-stream", AttachmentKind.TEXT),
        ("call.mp3", "audio/mpeg", AttachmentKind.AUDIO),
        ("demo.mp4", "video/mp4", AttachmentKind.VIDEO),
        ("setup.exe", "application/x-msdownload", AttachmentKind.UNSUPPORTED),
        ("archive.zip", "application/zip", AttachmentKind.UNSUPPORTED),
    ])
    def test_kinds(self, file_name, mime_type, kind):
        assert classify_attachment(Attachment(file_name=file_name, mime_type=mime_type)) == kind


class TestAttachmentIngestor:

    @pytest.mark.asyncio
    async def test_video_short_circuits_without_download(self):
        fetcher = _fetcher()
        ingestor = AttachmentIngestor(fetcher)

        ingested = await ingestor.ingest([
            Attachment(file_name="demo.mp4", mime_type="video/mp4", url="https://files.test/demo.mp4"),
        ])

        assert ingested.short_circuit
        assert "https://files.test/demo.mp4" in ingested.acknowledgement
        fetcher.fetch_bytes.assert_not_called()

    @pytest.mark.asyncio
    async def test_audio_offers_transcription(self):
        ingested = await AttachmentIngestor(_fetcher()).ingest([
            Attachment(file_name="call.mp3", mime_type="audio/mpeg", url="https://files.test/call.mp3"),
        ])

        assert "transcribe" in ingested.acknowledgement

    @pytest.mark.asyncio
    async def test_image_becomes_image_part(self):
        raw = b"\x89PNG\r\n"
        ingested = await AttachmentIngestor(_fetcher()).ingest([
            Attachment(file_name="photo.png", mime_type="image/png", data=base64.b64encode(raw).decode()),
        ])

        content = ingested.user_content("What is this?")
        assert content[0] == TextPart(text="What is this?")
        assert isinstance(content[1], ImagePart)
        assert content[1].data == raw

    @pytest.mark.asyncio
    async def test_text_is_appended_to_user_message(self):
        fetcher = _fetcher(b"id,status\n1,open\n")
        ingested = await AttachmentIngestor(fetcher).ingest([
            Attachment(file_name="tickets.csv", mime_type="text/csv", url="https://files.test/tickets.csv"),
        ])

        text = ingested.user_content("Summarize")[0].text
        assert text.startswith("Summarize\n\n--- Attachment: tickets.csv ---\n")
        assert "1,open" in text
        fetcher.fetch_bytes.assert_awaited_once_with("https://files.test/tickets.csv")

    @pytest.mark.asyncio
    async def test_long_text_is_truncated(self):
        ingested = await AttachmentIngestor(_fetcher(b"a" * 120), max_chars=100).ingest([
            Attachment(file_name="notes.txt", mime_type="text/plain", url="https://files.test/notes.txt"),
        ])

        assert "[... truncated: notes.txt exceeds 100 characters, 20 characters omitted]" in ingested.text_blocks[0]

    @pytest.mark.asyncio
    async def test_pdf_text_is_extracted(self):
        with patch("services.attachments._extract_pdf_text", return_value="Quarterly revenue") as extract:
            ingested = await AttachmentIngestor(_fetcher(b"%PDF-1.4")).ingest([
                Attachment(file_name="q3.pdf", mime_type="application/pdf", url="https://files.test/q3.pdf"),
            ])

        extract.assert_called_once_with(b"%PDF-1.4")
        assert "Quarterly revenue" in ingested.text_blocks[0]

    @pytest.mark.asyncio
    async def test_attachment_without_source(self):
        with pytest.raises(ValidationError):
            await AttachmentIngestor(_fetcher()).ingest([Attachment(file_name="notes.txt", mime_type="text/plain")])


def test_truncate_text_leaves_short_text():
    assert truncate_text("short", 10, "a.txt") == "short"
