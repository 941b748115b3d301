"""
recognition.py — RecognitionController
======================================
Wraps a platform speech-recognition engine (browser SpeechRecognition via
the bridge) with the listening policy the conversation loop relies on.

States
------
    IDLE ──start()──▶ LISTENING ──final result──▶ SUSPENDED ──resume()──▶ LISTENING
    LISTENING ──permission error / stop()──▶ IDLE

Echo suppression
----------------
The engine is stopped *before* a final transcript is handed on, and only
LISTENING ever re-arms it.  While the assistant thinks or speaks the
controller sits in SUSPENDED, so the microphone can never transcribe the
synthesized reply.

Restart policy
--------------
Engine sessions end on their own (silence timeout, end of utterance).  While
LISTENING the controller re-arms after `restart_delay_ms`; if the engine
reports it has not released the previous session yet, it tries exactly once
more after `retry_delay_ms`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, Sequence

from config import RecognitionTuning

log = logging.getLogger("voicechat.recognition")

PERMISSION_ERRORS = frozenset({"not-allowed", "service-not-allowed"})
SILENT_ERRORS = frozenset({"no-speech", "aborted"})

# Constructor names in preference order (standard first, vendor-prefixed second).
RECOGNITION_APIS: tuple[str, ...] = ("SpeechRecognition", "webkitSpeechRecognition")


class RecognitionBusyError(Exception):
    """The engine has not released its previous session yet."""


@dataclass(frozen=True)
class RecognitionResult:
    transcript: str
    is_final: bool


class RecognitionEvents(Protocol):
    """Stable handle the engine reports into (implemented by the controller)."""

    def on_engine_start(self) -> None: ...

    def on_engine_result(self, results: Sequence[RecognitionResult], result_index: int) -> None: ...

    def on_engine_error(self, kind: str) -> None: ...

    def on_engine_end(self) -> None: ...


class RecognitionEngine(Protocol):
    events: Optional[RecognitionEvents]
    continuous: bool
    interim_results: bool
    lang: str
    max_alternatives: int

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def abort(self) -> None: ...


class RecognitionListener(Protocol):
    def on_interim(self, text: str) -> None: ...

    def on_final(self, text: str) -> None: ...

    def on_recognition_error(self, kind: str) -> None: ...


class RecognitionState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    SUSPENDED = "suspended"


def detect_recognition_api(available: Sequence[str]) -> Optional[str]:
    """Pick the recognition constructor the platform exposes, if any."""
    for name in RECOGNITION_APIS:
        if name in available:
            return name
    return None


class RecognitionController:
    def __init__(
        self,
        engine: RecognitionEngine,
        listener: RecognitionListener,
        tuning: Optional[RecognitionTuning] = None,
    ) -> None:
        self._engine = engine
        self._listener = listener
        self._tuning = tuning or RecognitionTuning()
        self._state = RecognitionState.IDLE
        self._stopped = True
        self._engine_running = False
        self._restart_task: Optional[asyncio.Task] = None
        engine.events = self

    @property
    def state(self) -> RecognitionState:
        return self._state

    @property
    def restart_pending(self) -> bool:
        return self._restart_task is not None and not self._restart_task.done()

    # -- control ---------------------------------------------------------------

    def start(self, language_tag: str) -> None:
        if self._state != RecognitionState.IDLE:
            log.debug("event=recognition_start_ignored state=%s", self._state.value)
            return
        engine = self._engine
        engine.continuous = True
        engine.interim_results = True
        engine.lang = language_tag
        engine.max_alternatives = 1

        self._stopped = False
        self._set_state(RecognitionState.LISTENING)
        if not self._try_start():
            self._schedule_restart(self._tuning.retry_delay_ms)

    def resume(self) -> None:
        """Re-arm after the caller has finished processing a final transcript."""
        if self._stopped or self._state != RecognitionState.SUSPENDED:
            return
        self._set_state(RecognitionState.LISTENING)
        self._schedule_restart(self._tuning.restart_delay_ms)

    def suspend(self) -> None:
        """Stop capturing without ending the call."""
        if self._state != RecognitionState.LISTENING:
            return
        self._set_state(RecognitionState.SUSPENDED)
        self._cancel_restart()
        if self._engine_running:
            self._engine.stop()

    def stop(self) -> None:
        """End recognition for good.  Idempotent."""
        self._stopped = True
        self._cancel_restart()
        if self._engine_running:
            self._engine.abort()
        if self._state != RecognitionState.IDLE:
            self._set_state(RecognitionState.IDLE)

    # -- RecognitionEvents -----------------------------------------------------

    def on_engine_start(self) -> None:
        self._engine_running = True
        log.debug("event=recognition_engine_started")

    def on_engine_result(self, results: Sequence[RecognitionResult], result_index: int) -> None:
        if self._state != RecognitionState.LISTENING:
            log.debug("event=recognition_result_dropped state=%s", self._state.value)
            return

        final = "".join(r.transcript for r in results[result_index:] if r.is_final)
        interim = "".join(r.transcript for r in results[result_index:] if not r.is_final)

        if interim:
            self._listener.on_interim(interim)
        if final.strip():
            self.suspend()
            self._listener.on_final(final.strip())

    def on_engine_error(self, kind: str) -> None:
        if kind in PERMISSION_ERRORS:
            log.warning("event=recognition_permission_denied error=%s", kind)
            self._stopped = True
            self._cancel_restart()
            self._set_state(RecognitionState.IDLE)
            self._listener.on_recognition_error(kind)
            return
        if kind in SILENT_ERRORS:
            log.debug("event=recognition_benign_error error=%s", kind)
            return
        log.warning("event=recognition_error error=%s", kind)
        self._listener.on_recognition_error(kind)

    def on_engine_end(self) -> None:
        self._engine_running = False
        if self._stopped or self._state != RecognitionState.LISTENING:
            log.debug("event=recognition_engine_ended restart=no state=%s", self._state.value)
            return
        log.debug("event=recognition_engine_ended restart=yes")
        self._schedule_restart(self._tuning.restart_delay_ms)

    # -- internals -------------------------------------------------------------

    def _set_state(self, new_state: RecognitionState) -> None:
        prev, self._state = self._state, new_state
        log.debug("event=recognition_state from=%s to=%s", prev.value, new_state.value)

    def _should_run(self) -> bool:
        return not self._stopped and self._state == RecognitionState.LISTENING

    def _try_start(self) -> bool:
        try:
            self._engine.start()
        except RecognitionBusyError:
            log.debug("event=recognition_engine_busy")
            return False
        self._engine_running = True
        return True

    def _schedule_restart(self, delay_ms: int) -> None:
        self._cancel_restart()
        self._restart_task = asyncio.get_running_loop().create_task(self._restart(delay_ms))

    def _cancel_restart(self) -> None:
        if self._restart_task and not self._restart_task.done():
            self._restart_task.cancel()
            log.debug("event=recognition_restart_cancel")
        self._restart_task = None

    async def _restart(self, delay_ms: int) -> None:
        await asyncio.sleep(delay_ms / 1000.0)
        if not self._should_run():
            return
        if self._try_start():
            log.debug("event=recognition_restarted")
            return

        await asyncio.sleep(self._tuning.retry_delay_ms / 1000.0)
        if not self._should_run():
            return
        if self._try_start():
            log.debug("event=recognition_restarted attempt=2")
            return
        log.warning("event=recognition_restart_failed reason=engine_busy")
