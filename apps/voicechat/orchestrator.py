"""
orchestrator.py — VoiceConversationOrchestrator
===============================================
Drives one voice call:

    idle ─start_call()─▶ speaking (greeting) ─▶ listening ─final─▶ thinking
         ─stream done─▶ speaking ─▶ listening ─▶ …  ─end_call()─▶ idle

Turn-taking rules
-----------------
• At most one user turn is processed at a time; a final transcript arriving
  while one is in flight is dropped.
• Final transcripts closer than `debounce_sec` to the previously accepted one
  are recognition chatter and are dropped.
• Recognition is suspended from the moment a final transcript arrives until
  the reply has been spoken, so the call never hears itself.

Escalation
----------
`CallSession.is_escalated` is a one-way latch.  It is set by a server
risk_level of "high" or by the local urgency heuristic reading "high"; the
first crossing emits a persistent notice and records a crisis alert.

Cancellation
------------
end_call() bumps the turn generation.  Every callback and continuation
checks its generation first, so a stream that is still draining after the
call ended can no longer touch session state.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional, Protocol

from pydantic import ValidationError

from apps.voicechat.chat_stream import StreamCallbacks, StreamingChatClient
from apps.voicechat.languages import to_locale
from apps.voicechat.models import (
    CallPhase,
    CallSession,
    ConversationTurn,
    CrisisAlert,
    EmotionAnalysis,
    Notice,
    risk_level_of,
)
from apps.voicechat.recognition import (
    PERMISSION_ERRORS,
    RecognitionController,
    RecognitionEngine,
)
from apps.voicechat.speech_patterns import analyze, annotate
from apps.voicechat.stores import ChatHistoryStore, CrisisAlertStore
from apps.voicechat.synthesis import SpeechSynthesisAdapter
from config import ConversationConfig, RecognitionTuning

log = logging.getLogger("voicechat.orchestrator")

UNSUPPORTED_MESSAGE = "Voice chat isn't available in this browser. Please try Chrome or Edge."
PERMISSION_DENIED_MESSAGE = "Microphone access is needed for voice chat. Please allow it and try again."
ESCALATION_MESSAGE = (
    "A member of our care team has been notified and will reach out. "
    "If you're in crisis, please contact a helpline. You're not alone."
)
MEDIUM_RISK_MESSAGE = "It sounds like things are hard right now. Support is here whenever you need it."


class MicrophoneAccess(Protocol):
    async def request(self) -> bool: ...


class CallObserver:
    """UI surface of a call.  Every hook is optional; the base does nothing."""

    def on_state(self, snapshot) -> None:
        pass

    def on_turn(self, turn: ConversationTurn) -> None:
        pass

    def on_partial(self, text: str) -> None:
        pass

    def on_emotion(self, emotion: EmotionAnalysis) -> None:
        pass

    def on_notice(self, notice: Notice) -> None:
        pass


class VoiceConversationOrchestrator:
    def __init__(
        self,
        *,
        recognition_engine: Optional[RecognitionEngine],
        synthesizer: SpeechSynthesisAdapter,
        chat_client: StreamingChatClient,
        microphone: MicrophoneAccess,
        config: Optional[ConversationConfig] = None,
        recognition_tuning: Optional[RecognitionTuning] = None,
        history_window: int = 10,
        observer: Optional[CallObserver] = None,
        alert_store: Optional[CrisisAlertStore] = None,
        history_store: Optional[ChatHistoryStore] = None,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or ConversationConfig()
        self._synth = synthesizer
        self._chat = chat_client
        self._microphone = microphone
        self._history_window = history_window
        self._observer = observer or CallObserver()
        self._alert_store = alert_store
        self._history_store = history_store
        self._session_id = session_id
        self._user_id = user_id
        self._clock = clock
        self._controller: Optional[RecognitionController] = (
            RecognitionController(recognition_engine, self, recognition_tuning)
            if recognition_engine is not None else None
        )

        self.session: Optional[CallSession] = None
        self._stopping = True
        self._starting = False
        self._processing = False
        self._generation = 0
        self._last_accepted_at: Optional[float] = None
        self._listen_started_at: Optional[float] = None
        self._utterance_started_at: Optional[float] = None
        self._tasks: set[asyncio.Task] = set()

    # -- read-only views -------------------------------------------------------

    @property
    def supported(self) -> bool:
        return self._controller is not None

    @property
    def phase(self) -> CallPhase:
        return self.session.phase if self.session else CallPhase.IDLE

    @property
    def is_connected(self) -> bool:
        return bool(self.session and self.session.is_connected)

    @property
    def is_escalated(self) -> bool:
        return bool(self.session and self.session.is_escalated)

    @property
    def recognition(self) -> Optional[RecognitionController]:
        return self._controller

    @property
    def language(self) -> str:
        return self._config.language

    # -- call lifecycle --------------------------------------------------------

    async def start_call(self) -> bool:
        """Greet the caller and start listening.  False when no call could start."""
        if self.is_connected or self._starting:
            log.warning("event=call_start_ignored reason=already_active")
            return False
        if self._controller is None:
            log.warning("event=call_start_failed reason=unsupported")
            self._notify("error", UNSUPPORTED_MESSAGE)
            return False

        # end_call() during the permission prompt bumps the generation
        self._generation += 1
        generation = self._generation
        self._starting = True
        try:
            granted = await self._microphone.request()
        except Exception as exc:
            log.warning("event=microphone_request_error error=%s", exc)
            granted = False
        finally:
            self._starting = False
        if generation != self._generation:
            log.info("event=call_start_cancelled reason=ended_during_permission_prompt")
            return False
        if not granted:
            log.warning("event=call_start_failed reason=permission_denied")
            self._notify("error", PERMISSION_DENIED_MESSAGE)
            return False

        self._stopping = False
        self._processing = False
        self._last_accepted_at = None
        self.session = CallSession(is_connected=True)
        if self._session_id:
            self.session.session_id = self._session_id
        log.info("event=call_start session=%s language=%s", self.session.session_id, self.language)

        greeting = self._config.greeting
        self._append_turn(ConversationTurn(role="assistant", text=greeting))
        self._set_phase(CallPhase.SPEAKING)
        await self._speak(greeting)

        if not self._is_current(generation):
            log.info("event=call_ended_during_greeting")
            return True
        self._enter_listening()
        self._controller.start(to_locale(self.language))
        return True

    def end_call(self) -> None:
        """Stop everything.  Safe from any state, any number of times."""
        if self._starting:
            self._starting = False
            self._generation += 1
            log.info("event=call_end phase=permission_prompt")
        session = self.session
        if session is None or self._stopping:
            return
        self._stopping = True
        self._generation += 1
        self._processing = False

        self._synth.stop_all()
        if self._controller is not None:
            self._controller.stop()

        session.partial_text = ""
        session.is_connected = False
        self._set_phase(CallPhase.IDLE, force=True)
        log.info(
            "event=call_end session=%s turns=%d escalated=%s duration_sec=%.1f",
            session.session_id, len(session.turns), session.is_escalated,
            time.monotonic() - session.started_at,
        )

    async def aclose(self) -> None:
        """Teardown: end the call and cancel background work."""
        self.end_call()
        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -- RecognitionListener ---------------------------------------------------

    def on_interim(self, text: str) -> None:
        if self._stopping or self.session is None:
            return
        if self._utterance_started_at is None:
            self._utterance_started_at = self._clock()
        self.session.partial_text = text
        self._observer.on_partial(text)

    def on_final(self, text: str) -> None:
        session = self.session
        if self._stopping or session is None:
            return
        now = self._clock()

        if self._processing:
            log.info("event=transcript_dropped reason=processing text=%.40r", text)
            return
        if (
            self._last_accepted_at is not None
            and now - self._last_accepted_at < self._config.debounce_sec
        ):
            log.info(
                "event=transcript_dropped reason=debounce gap_sec=%.2f text=%.40r",
                now - self._last_accepted_at, text,
            )
            self._resume_listening()
            return

        self._last_accepted_at = now
        self._processing = True
        started = self._utterance_started_at
        if started is None:
            started = self._listen_started_at if self._listen_started_at is not None else now
        patterns = analyze(text, (now - started) * 1000.0)

        session.partial_text = ""
        self._observer.on_partial("")
        turn = ConversationTurn(role="user", text=text, speech_patterns=patterns)
        self._append_turn(turn)
        self._set_phase(CallPhase.THINKING)
        log.info(
            "event=turn_commit session=%s chars=%d pace=%s urgency=%s",
            session.session_id, len(text), patterns.pace, patterns.urgency,
        )
        self._spawn(self._run_turn(self._generation, turn))

    def on_recognition_error(self, kind: str) -> None:
        if kind in PERMISSION_ERRORS:
            self._notify("error", PERMISSION_DENIED_MESSAGE)
            self.end_call()

    # -- turn processing -------------------------------------------------------

    async def _run_turn(self, generation: int, turn: ConversationTurn) -> None:
        session = self.session
        history = [t.to_chat_message() for t in session.turns[:-1]]
        if self._history_window:
            history = history[-self._history_window:]
        else:
            history = []
        message = annotate(turn.text, turn.speech_patterns) if turn.speech_patterns else turn.text

        parts: list[str] = []
        captured: dict = {}

        def on_emotion(raw: dict) -> None:
            if self._is_current(generation):
                emotion = self._apply_emotion(raw, turn)
                if emotion is not None:
                    captured["emotion"] = emotion

        def on_delta(delta: str) -> None:
            if self._is_current(generation):
                parts.append(delta)

        def on_error(message: str) -> None:
            if self._is_current(generation):
                captured["error"] = message

        try:
            await self._chat.stream(
                message,
                history,
                StreamCallbacks(on_emotion=on_emotion, on_delta=on_delta, on_error=on_error),
                session_id=session.session_id,
                user_id=self._user_id,
            )
            if not self._is_current(generation):
                log.info("event=turn_discarded reason=call_ended")
                return

            if turn.speech_patterns and turn.speech_patterns.urgency == "high":
                emotion = captured.get("emotion")
                self._escalate(
                    "high", emotion.primary_feeling if emotion else "distress", turn.text,
                )

            if "error" in captured:
                log.warning("event=turn_failed error=%s", captured["error"])
                self._notify("warning", captured["error"])
                self._resume_listening()
                return

            reply_text = "".join(parts).strip()
            if reply_text:
                self._append_turn(ConversationTurn(
                    role="assistant", text=reply_text, emotion=captured.get("emotion"),
                ))
                self._set_phase(CallPhase.SPEAKING)
                await self._speak(reply_text)
                if not self._is_current(generation):
                    return
            else:
                log.warning("event=empty_reply")
            self._resume_listening()

        except Exception as exc:
            log.error("event=turn_error error=%s", exc, exc_info=True)
            if self._is_current(generation):
                self._notify("warning", "Sorry, something went wrong. Let's keep talking.")
                self._resume_listening()

    def _apply_emotion(self, raw: dict, turn: ConversationTurn) -> Optional[EmotionAnalysis]:
        try:
            emotion = EmotionAnalysis.model_validate(raw)
        except ValidationError as exc:
            # the classification is unusable but a readable risk level still counts
            risk = risk_level_of(raw)
            log.warning("event=emotion_invalid error_count=%d risk=%s", exc.error_count(), risk)
            self._react_to_risk(risk, str(raw.get("primary_feeling") or "unknown"), turn)
            return None

        self.session.current_emotion = emotion
        self._observer.on_emotion(emotion)
        log.info(
            "event=emotion emotion=%s intensity=%d risk=%s feeling=%s",
            emotion.emotion, emotion.intensity, emotion.risk_level, emotion.primary_feeling,
        )
        self._react_to_risk(emotion.risk_level, emotion.primary_feeling, turn)
        return emotion

    def _react_to_risk(self, risk_level: Optional[str], feeling: str, turn: ConversationTurn) -> None:
        local_high = turn.speech_patterns is not None and turn.speech_patterns.urgency == "high"
        if risk_level == "high" or local_high:
            self._escalate("high", feeling, turn.text)
        elif risk_level == "medium":
            self._notify("warning", MEDIUM_RISK_MESSAGE)

    def _escalate(self, risk_level: str, feeling: str, trigger: str) -> None:
        session = self.session
        if not session.escalate():
            return
        log.warning("event=escalation session=%s risk=%s feeling=%s", session.session_id, risk_level, feeling)
        self._notify("escalation", ESCALATION_MESSAGE, persistent=True)
        self._observer.on_state(session.snapshot())
        if self._alert_store is not None:
            alert = CrisisAlert(
                session_id=session.session_id,
                user_id=self._user_id,
                risk_level=risk_level,
                primary_feeling=feeling,
                trigger_message=trigger,
            )
            self._spawn(self._record_alert(alert))

    async def _record_alert(self, alert: CrisisAlert) -> None:
        try:
            await self._alert_store.create_alert(alert)
        except Exception as exc:
            log.error("event=crisis_alert_failed session=%s error=%s", alert.session_id, exc, exc_info=True)

    async def _persist_turn(self, session_id: str, turn: ConversationTurn) -> None:
        try:
            await self._history_store.append(session_id, turn)
        except Exception as exc:
            log.error("event=history_persist_failed session=%s error=%s", session_id, exc)

    # -- helpers ---------------------------------------------------------------

    def _is_current(self, generation: int) -> bool:
        return not self._stopping and generation == self._generation

    async def _speak(self, text: str) -> None:
        try:
            await self._synth.speak(text, self.language)
        except Exception as exc:
            log.warning("event=tts_failed error=%s", exc, exc_info=True)

    def _enter_listening(self) -> None:
        self._listen_started_at = self._clock()
        self._utterance_started_at = None
        self._set_phase(CallPhase.LISTENING)

    def _resume_listening(self) -> None:
        self._processing = False
        if self._stopping or self.session is None:
            return
        self._enter_listening()
        if self._controller is not None:
            self._controller.resume()

    def _append_turn(self, turn: ConversationTurn) -> None:
        session = self.session
        session.turns.append(turn)
        self._observer.on_turn(turn)
        if self._history_store is not None:
            self._spawn(self._persist_turn(session.session_id, turn))

    def _set_phase(self, phase: CallPhase, force: bool = False) -> None:
        session = self.session
        prev = session.phase
        if prev == phase and not force:
            return
        session.phase = phase
        log.info("event=state_change session=%s from=%s to=%s", session.session_id, prev.value, phase.value)
        self._observer.on_state(session.snapshot())

    def _notify(self, level: str, message: str, persistent: bool = False) -> None:
        self._observer.on_notice(Notice(level=level, message=message, persistent=persistent))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
