"""
hosted_speech.py — optional hosted TTS/STT functions.

The quota flag is per-instance state: one exhausted provider account never
silences a different client, and tests can reset it per case.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

log = logging.getLogger("voicechat.hosted_speech")


class HostedSpeechError(Exception):
    """Hosted TTS/STT request failed for a reason other than quota."""


@dataclass(frozen=True)
class Transcription:
    text: str
    detected_language: Optional[str] = None


def _error_text(response: httpx.Response, default: str) -> str:
    try:
        data = response.json()
    except ValueError:
        return default
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return default


class HostedSpeechClient:
    TTS_PATH = "/elevenlabs-tts"
    STT_PATH = "/elevenlabs-stt"

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_sec: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout_sec)
        self.quota_exhausted = False

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def reset_quota_flag(self) -> None:
        if self.quota_exhausted:
            log.info("event=hosted_quota_reset")
        self.quota_exhausted = False

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            return {}
        return {"apikey": self._api_key, "Authorization": f"Bearer {self._api_key}"}

    async def text_to_speech(self, text: str, language: str = "en") -> Optional[bytes]:
        """Return encoded audio, or None when the caller should use the platform voice."""
        if self.quota_exhausted:
            log.debug("event=hosted_tts_skipped reason=quota_exhausted")
            return None

        try:
            response = await self._client.post(
                self.base_url + self.TTS_PATH,
                json={"text": text, "language": language},
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            raise HostedSpeechError(f"Text-to-speech request failed: {exc}") from exc

        if response.is_success:
            return response.content

        message = _error_text(response, "Text-to-speech failed")
        if response.status_code == 402 or "quota exceeded" in message.lower():
            log.warning("event=hosted_quota_exhausted status=%d fallback=platform_voice", response.status_code)
            self.quota_exhausted = True
            return None
        raise HostedSpeechError(message)

    async def speech_to_text(
        self,
        audio: bytes,
        language: str = "en",
        filename: str = "recording.webm",
        content_type: str = "audio/webm",
    ) -> Transcription:
        try:
            response = await self._client.post(
                self.base_url + self.STT_PATH,
                files={"audio": (filename, audio, content_type)},
                data={"language": language},
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            raise HostedSpeechError(f"Speech-to-text request failed: {exc}") from exc

        if not response.is_success:
            raise HostedSpeechError(_error_text(response, "Speech-to-text failed"))

        try:
            data = response.json()
        except ValueError as exc:
            raise HostedSpeechError("Speech-to-text returned an unreadable response") from exc
        if not isinstance(data, dict):
            raise HostedSpeechError("Speech-to-text returned an unreadable response")
        log.info("event=hosted_stt_complete chars=%d", len(data.get("text") or ""))
        return Transcription(text=data.get("text") or "", detected_language=data.get("language"))
