"""Describe message attachments as text the agent can read.

Images and videos are named only; audio is transcribed through ElevenLabs
when a key is configured; text files are downloaded and inlined.
"""

from __future__ import annotations

from typing import Sequence

import httpx
from loguru import logger

from lettacord.bus.events import AttachmentRef

ELEVENLABS_STT_URL = "https://api.elevenlabs.io/v1/speech-to-text"


def attachment_kind(attachment: AttachmentRef) -> str:
    content_type = attachment.content_type or ""
    if content_type.startswith("image/"):
        return "image"
    if content_type.startswith("audio/"):
        return "audio"
    if content_type.startswith("video/"):
        return "video"
    if content_type.startswith("text/") or attachment.name.endswith((".txt", ".md")):
        return "text file"
    return "file"


class AttachmentDescriber:
    """Callable describer: ``await describer(attachments) -> str``."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        elevenlabs_api_key: str | None = None,
    ):
        self._http = http
        self._elevenlabs_api_key = elevenlabs_api_key
        self._transcriptions: dict[str, str] = {}  # url -> transcript (failures too)

    async def __call__(self, attachments: Sequence[AttachmentRef]) -> str:
        if not attachments:
            return ""

        descriptions: list[str] = []
        for attachment in attachments:
            kind = attachment_kind(attachment)
            content = ""
            if kind == "audio" and self._elevenlabs_api_key:
                content = await self.transcribe(attachment)
            elif kind == "text file":
                content = await self.read_text(attachment)

            description = f'{kind} "{attachment.name}" ({round(attachment.size / 1024)}KB)'
            if content:
                label = "Transcript" if kind == "audio" else "Content"
                description += f" - {label}: {content}"
            descriptions.append(description)

        return f" [Attachments: {', '.join(descriptions)}]"

    async def transcribe(self, attachment: AttachmentRef) -> str:
        cached = self._transcriptions.get(attachment.url)
        if cached is not None:
            logger.info(f"Using cached transcription for: {attachment.url}")
            return cached

        try:
            logger.info(f"Transcribing audio: {attachment.url} ({attachment.content_type})")
            audio = await self._http.get(attachment.url)
            audio.raise_for_status()
            response = await self._http.post(
                ELEVENLABS_STT_URL,
                headers={"xi-api-key": self._elevenlabs_api_key or ""},
                data={
                    "model_id": "scribe_v1",
                    "tag_audio_events": "true",
                    "language_code": "eng",
                    "diarize": "true",
                },
                files={"file": (attachment.name, audio.content, attachment.content_type or "audio/mpeg")},
            )
            response.raise_for_status()
            result = (response.json() or {}).get("text") or "[No transcription available]"
        except Exception as e:
            logger.error(f"Failed to transcribe audio: {e}")
            result = "[Failed to transcribe audio]"

        # Failures are cached too so a broken file isn't retried every batch
        self._transcriptions[attachment.url] = result
        return result

    async def read_text(self, attachment: AttachmentRef) -> str:
        try:
            logger.info(f"Reading text file: {attachment.url} ({attachment.name})")
            response = await self._http.get(attachment.url)
            response.raise_for_status()
            return response.text
        except Exception as e:
            logger.error(f"Failed to read text file: {e}")
            return "[Failed to read text file]"
