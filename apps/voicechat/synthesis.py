"""
synthesis.py — SpeechSynthesisAdapter
=====================================
Wraps a platform text-to-speech engine (the browser's speechSynthesis via
the bridge) behind one awaitable `speak()`.

• One utterance audible at a time: every speak() cancels the previous one.
• speak() never raises: interruption, cancellation and engine errors all
  resolve it, because the conversation loop must proceed regardless.
• Long utterances can stall with the engine "paused" while still speaking;
  a keep-alive pump resumes it until the utterance ends.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Optional, Protocol

from apps.voicechat.hosted_speech import HostedSpeechClient, HostedSpeechError
from apps.voicechat.languages import language_names, to_locale
from config import SynthesisTuning

log = logging.getLogger("voicechat.synthesis")

BENIGN_ERRORS = frozenset({"interrupted", "canceled"})


@dataclass(frozen=True)
class Voice:
    name: str
    lang: str
    default: bool = False


@dataclass(frozen=True)
class Utterance:
    id: str
    text: str
    lang: str
    voice: Optional[str] = None
    rate: float = 0.95
    pitch: float = 1.0


class SynthesisListener(Protocol):
    def on_utterance_end(self, utterance_id: str) -> None: ...

    def on_utterance_error(self, utterance_id: str, error: str) -> None: ...


class SpeechEngine(Protocol):
    listener: Optional[SynthesisListener]

    @property
    def speaking(self) -> bool: ...

    @property
    def paused(self) -> bool: ...

    def voices(self) -> list[Voice]: ...

    def speak(self, utterance: Utterance) -> None: ...

    def play_audio(self, utterance_id: str, audio: bytes, mime: str) -> None: ...

    def cancel(self) -> None: ...

    def resume(self) -> None: ...


def _norm(tag: str) -> str:
    return tag.replace("_", "-").lower()


def select_voice(voices: list[Voice], locale: str) -> Optional[Voice]:
    """Best voice for *locale*: exact tag, then language prefix, then name heuristic."""
    wanted = _norm(locale)
    prefix = wanted.split("-")[0]

    for voice in voices:
        if _norm(voice.lang) == wanted:
            return voice
    for voice in voices:
        if _norm(voice.lang).split("-")[0] == prefix:
            return voice

    names = language_names(locale)
    for voice in voices:
        lowered = voice.name.lower()
        if any(name in lowered for name in names):
            return voice
    return None


class SpeechSynthesisAdapter:
    def __init__(
        self,
        engine: Optional[SpeechEngine],
        tuning: Optional[SynthesisTuning] = None,
        hosted: Optional[HostedSpeechClient] = None,
    ) -> None:
        self._engine = engine
        self._tuning = tuning or SynthesisTuning()
        self._hosted = hosted
        self._pending: Optional[tuple[str, asyncio.Future]] = None
        if engine is not None:
            engine.listener = self

    @property
    def supported(self) -> bool:
        return self._engine is not None

    async def speak(self, text: str, language: str = "en") -> None:
        text = (text or "").strip()
        if not text:
            return
        engine = self._engine
        if engine is None:
            log.warning("event=tts_unsupported action=skip chars=%d", len(text))
            return

        self.stop_all()

        utterance_id = uuid.uuid4().hex
        done: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending = (utterance_id, done)
        locale = to_locale(language)
        log.info("event=tts_start id=%s locale=%s chars=%d", utterance_id[:8], locale, len(text))

        keepalive: Optional[asyncio.Task] = None
        try:
            if not await self._play_hosted(engine, utterance_id, text, language, done):
                if done.done():
                    return
                voice = select_voice(engine.voices(), locale)
                engine.speak(Utterance(
                    id=utterance_id,
                    text=text,
                    lang=locale,
                    voice=voice.name if voice else None,
                    rate=self._tuning.rate,
                    pitch=self._tuning.pitch,
                ))
            keepalive = asyncio.create_task(self._keepalive(engine, done))

            ceiling = (
                self._tuning.speak_timeout_base_sec
                + len(text) * self._tuning.speak_timeout_per_char_sec
            )
            try:
                await asyncio.wait_for(asyncio.shield(done), timeout=ceiling)
            except asyncio.TimeoutError:
                log.warning("event=timeout scope=tts_utterance id=%s limit=%.1fs", utterance_id[:8], ceiling)
                if self._is_current(utterance_id):
                    self.stop_all()
            log.info("event=tts_complete id=%s", utterance_id[:8])
        finally:
            if keepalive is not None:
                keepalive.cancel()
            if self._is_current(utterance_id):
                self._pending = None

    async def _play_hosted(
        self,
        engine: SpeechEngine,
        utterance_id: str,
        text: str,
        language: str,
        done: asyncio.Future,
    ) -> bool:
        """Try hosted audio first.  False means: use the platform voice."""
        if self._hosted is None or self._hosted.quota_exhausted:
            return False
        try:
            audio = await self._hosted.text_to_speech(text, language)
        except HostedSpeechError as exc:
            log.warning("event=hosted_tts_failed error=%s fallback=platform_voice", exc)
            return False
        if audio is None or done.done():
            return False
        engine.play_audio(utterance_id, audio, "audio/mpeg")
        return True

    async def _keepalive(self, engine: SpeechEngine, done: asyncio.Future) -> None:
        interval = self._tuning.keepalive_interval_sec
        while not done.done():
            await asyncio.sleep(interval)
            if engine.speaking and engine.paused:
                log.debug("event=tts_keepalive_resume")
                engine.resume()

    def _is_current(self, utterance_id: str) -> bool:
        return self._pending is not None and self._pending[0] == utterance_id

    def stop_all(self) -> None:
        """Silence the engine and release whoever is awaiting speak()."""
        if self._engine is not None:
            self._engine.cancel()
        pending, self._pending = self._pending, None
        if pending is not None and not pending[1].done():
            log.info("event=tts_cancelled id=%s", pending[0][:8])
            pending[1].set_result(None)

    # -- SynthesisListener (called by the engine) ------------------------------

    def on_utterance_end(self, utterance_id: str) -> None:
        if self._is_current(utterance_id) and not self._pending[1].done():
            self._pending[1].set_result(None)

    def on_utterance_error(self, utterance_id: str, error: str) -> None:
        if error in BENIGN_ERRORS:
            log.debug("event=tts_interrupted id=%s error=%s", utterance_id[:8], error)
        else:
            log.warning("event=tts_error id=%s error=%s", utterance_id[:8], error)
        self.on_utterance_end(utterance_id)
