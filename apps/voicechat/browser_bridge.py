"""
browser_bridge.py — platform speech engines hosted by the browser.

The browser owns the microphone, SpeechRecognition and speechSynthesis; the
call runs here.  Each engine below mirrors the browser object it drives and
talks to it through JSON messages on the call's WebSocket.

Python → browser
----------------
    recognition.start {api, config}   recognition.stop   recognition.abort
    synthesis.speak {id, text, lang, voice, rate, pitch}
    synthesis.audio {id, audio (base64), mime}
    synthesis.cancel   synthesis.resume
    microphone.request

Browser → Python
----------------
    hello {capabilities: {recognition: [...], synthesis: bool, voices: [...]}}
    recognition.started   recognition.result {resultIndex, results: [{transcript, isFinal}]}
    recognition.error {error}   recognition.end
    synthesis.end {id}   synthesis.error {id, error}   synthesis.state {speaking, paused}
    synthesis.voices {voices}
    microphone.result {granted}
"""

from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import Any, Optional

from apps.voicechat.recognition import (
    RecognitionBusyError,
    RecognitionEvents,
    RecognitionResult,
    detect_recognition_api,
)
from apps.voicechat.synthesis import SynthesisListener, Utterance, Voice

log = logging.getLogger("voicechat.browser_bridge")


class BridgeClosedError(Exception):
    """The browser side of the call has gone away."""


def _parse_voices(raw: Any) -> tuple[Voice, ...]:
    voices = []
    for item in raw or ():
        if isinstance(item, dict) and item.get("name") and item.get("lang"):
            voices.append(Voice(name=str(item["name"]), lang=str(item["lang"]), default=bool(item.get("default"))))
    return tuple(voices)


@dataclass(frozen=True)
class PlatformCapabilities:
    recognition_apis: tuple[str, ...] = ()
    synthesis: bool = False
    voices: tuple[Voice, ...] = ()

    @classmethod
    def from_hello(cls, payload: dict) -> "PlatformCapabilities":
        caps = payload.get("capabilities") or {}
        apis = caps.get("recognition") or ()
        if isinstance(apis, str):
            apis = (apis,)
        return cls(
            recognition_apis=tuple(str(a) for a in apis),
            synthesis=bool(caps.get("synthesis")),
            voices=_parse_voices(caps.get("voices")),
        )


class BrowserBridge:
    """Outbound command queue plus inbound event routing for one call."""

    def __init__(self) -> None:
        self.outbox: asyncio.Queue[dict] = asyncio.Queue()
        self.closed = False
        self.recognition: Optional[BrowserRecognitionEngine] = None
        self.speech: Optional[BrowserSpeechEngine] = None
        self.microphone: Optional[BrowserMicrophoneAccess] = None

    def send(self, message: dict) -> None:
        if self.closed:
            log.debug("event=bridge_send_dropped type=%s", message.get("type"))
            return
        self.outbox.put_nowait(message)

    def dispatch(self, message: dict) -> bool:
        """Route one browser event.  Returns False for unknown message types."""
        kind = str(message.get("type", ""))
        if kind.startswith("recognition.") and self.recognition is not None:
            return self.recognition.handle(kind, message)
        if kind.startswith("synthesis.") and self.speech is not None:
            return self.speech.handle(kind, message)
        if kind == "microphone.result" and self.microphone is not None:
            self.microphone.resolve(bool(message.get("granted")))
            return True
        return False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.microphone is not None:
            self.microphone.resolve(False)
        log.debug("event=bridge_closed")


class BrowserRecognitionEngine:
    def __init__(self, bridge: BrowserBridge, api: str) -> None:
        self._bridge = bridge
        self.api = api
        self.events: Optional[RecognitionEvents] = None
        self.continuous = False
        self.interim_results = False
        self.lang = "en-US"
        self.max_alternatives = 1
        self._running = False

    def start(self) -> None:
        if self._running:
            raise RecognitionBusyError("recognition session still active")
        if self._bridge.closed:
            raise BridgeClosedError("browser disconnected")
        self._bridge.send({
            "type": "recognition.start",
            "api": self.api,
            "config": {
                "continuous": self.continuous,
                "interimResults": self.interim_results,
                "lang": self.lang,
                "maxAlternatives": self.max_alternatives,
            },
        })
        self._running = True

    def stop(self) -> None:
        self._bridge.send({"type": "recognition.stop"})

    def abort(self) -> None:
        self._bridge.send({"type": "recognition.abort"})

    def handle(self, kind: str, message: dict) -> bool:
        events = self.events
        if kind == "recognition.end":
            self._running = False
            if events:
                events.on_engine_end()
        elif kind == "recognition.started":
            self._running = True
            if events:
                events.on_engine_start()
        elif kind == "recognition.result":
            results = [
                RecognitionResult(transcript=str(r.get("transcript", "")), is_final=bool(r.get("isFinal")))
                for r in message.get("results") or ()
                if isinstance(r, dict)
            ]
            if events:
                events.on_engine_result(results, int(message.get("resultIndex") or 0))
        elif kind == "recognition.error":
            if events:
                events.on_engine_error(str(message.get("error") or "unknown"))
        else:
            return False
        return True


class BrowserSpeechEngine:
    def __init__(self, bridge: BrowserBridge, voices: tuple[Voice, ...] = ()) -> None:
        self._bridge = bridge
        self._voices = list(voices)
        self.listener: Optional[SynthesisListener] = None
        self._speaking = False
        self._paused = False

    @property
    def speaking(self) -> bool:
        return self._speaking

    @property
    def paused(self) -> bool:
        return self._paused

    def voices(self) -> list[Voice]:
        return list(self._voices)

    def speak(self, utterance: Utterance) -> None:
        self._bridge.send({
            "type": "synthesis.speak",
            "id": utterance.id,
            "text": utterance.text,
            "lang": utterance.lang,
            "voice": utterance.voice,
            "rate": utterance.rate,
            "pitch": utterance.pitch,
        })
        self._speaking = True
        self._paused = False

    def play_audio(self, utterance_id: str, audio: bytes, mime: str) -> None:
        self._bridge.send({
            "type": "synthesis.audio",
            "id": utterance_id,
            "audio": base64.b64encode(audio).decode("ascii"),
            "mime": mime,
        })
        self._speaking = True

    def cancel(self) -> None:
        self._bridge.send({"type": "synthesis.cancel"})
        self._speaking = False
        self._paused = False

    def resume(self) -> None:
        self._bridge.send({"type": "synthesis.resume"})

    def handle(self, kind: str, message: dict) -> bool:
        utterance_id = str(message.get("id") or "")
        if kind == "synthesis.state":
            self._speaking = bool(message.get("speaking"))
            self._paused = bool(message.get("paused"))
        elif kind == "synthesis.voices":
            self._voices = list(_parse_voices(message.get("voices")))
            log.debug("event=voices_loaded count=%d", len(self._voices))
        elif kind == "synthesis.end":
            self._speaking = False
            if self.listener:
                self.listener.on_utterance_end(utterance_id)
        elif kind == "synthesis.error":
            self._speaking = False
            if self.listener:
                self.listener.on_utterance_error(utterance_id, str(message.get("error") or "unknown"))
        else:
            return False
        return True


class BrowserMicrophoneAccess:
    """Asks the browser for microphone permission; silence counts as denial."""

    def __init__(self, bridge: BrowserBridge, timeout_sec: float = 30.0) -> None:
        self._bridge = bridge
        self._timeout_sec = timeout_sec
        self._pending: Optional[asyncio.Future] = None

    async def request(self) -> bool:
        if self._bridge.closed:
            return False
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending = future
        self._bridge.send({"type": "microphone.request"})
        try:
            return await asyncio.wait_for(future, timeout=self._timeout_sec)
        except asyncio.TimeoutError:
            log.warning("event=timeout scope=microphone_permission limit=%.1fs", self._timeout_sec)
            return False
        finally:
            self._pending = None

    def resolve(self, granted: bool) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.set_result(granted)


# ---------------------------------------------------------------------------
# Capability seam: engine factories keyed on what the browser reported
# ---------------------------------------------------------------------------

def create_recognition_engine(
    capabilities: PlatformCapabilities,
    bridge: BrowserBridge,
) -> Optional[BrowserRecognitionEngine]:
    api = detect_recognition_api(capabilities.recognition_apis)
    if api is None:
        log.info("event=recognition_unsupported offered=%s", list(capabilities.recognition_apis))
        return None
    engine = BrowserRecognitionEngine(bridge, api)
    bridge.recognition = engine
    log.info("event=recognition_engine api=%s", api)
    return engine


def create_speech_engine(
    capabilities: PlatformCapabilities,
    bridge: BrowserBridge,
) -> Optional[BrowserSpeechEngine]:
    if not capabilities.synthesis:
        log.info("event=synthesis_unsupported")
        return None
    engine = BrowserSpeechEngine(bridge, capabilities.voices)
    bridge.speech = engine
    return engine


def create_microphone_access(bridge: BrowserBridge, timeout_sec: float = 30.0) -> BrowserMicrophoneAccess:
    access = BrowserMicrophoneAccess(bridge, timeout_sec)
    bridge.microphone = access
    return access
