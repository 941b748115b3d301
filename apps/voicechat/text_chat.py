"""Text-mode chat session: same stream and emotion handling, no audio."""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import ValidationError

from apps.voicechat.chat_stream import StreamCallbacks, StreamingChatClient
from apps.voicechat.models import ConversationTurn, EmotionAnalysis, Notice, risk_level_of
from apps.voicechat.orchestrator import ESCALATION_MESSAGE, CallObserver
from apps.voicechat.stores import ChatHistoryStore
from config import DEFAULT_WELCOME

log = logging.getLogger("voicechat.text_chat")

WELCOME_EMOTION = EmotionAnalysis(
    emotion="neutral", intensity=5, risk_level="low", primary_feeling="welcoming",
)


class TextChatSession:
    def __init__(
        self,
        chat_client: StreamingChatClient,
        *,
        welcome: str = DEFAULT_WELCOME,
        history_window: int = 10,
        observer: Optional[CallObserver] = None,
        history_store: Optional[ChatHistoryStore] = None,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> None:
        self._chat = chat_client
        self._history_window = history_window
        self._observer = observer or CallObserver()
        self._history_store = history_store
        self.session_id = session_id
        self.user_id = user_id
        self.turns: list[ConversationTurn] = [
            ConversationTurn(role="assistant", text=welcome, emotion=WELCOME_EMOTION),
        ]
        self.is_typing = False
        self.last_emotion: Optional[EmotionAnalysis] = None

    async def send_message(self, content: str) -> bool:
        """Send one user message and stream the reply.  False when ignored."""
        text = (content or "").strip()
        if not text or self.is_typing:
            return False

        history = [t.to_chat_message() for t in self.turns]
        history = history[-self._history_window:] if self._history_window else []

        user_turn = ConversationTurn(role="user", text=text)
        self.turns.append(user_turn)
        self._observer.on_turn(user_turn)
        self.is_typing = True

        reply: list[str] = []
        state: dict = {}

        def on_emotion(raw: dict) -> None:
            try:
                emotion = EmotionAnalysis.model_validate(raw)
            except ValidationError:
                risk = risk_level_of(raw)
                log.warning("event=emotion_invalid risk=%s", risk)
                if risk == "high":
                    self._observer.on_notice(Notice(level="escalation", message=ESCALATION_MESSAGE, persistent=True))
                return
            state["emotion"] = emotion
            self.last_emotion = emotion
            self._observer.on_emotion(emotion)
            if emotion.risk_level == "high":
                self._observer.on_notice(Notice(level="escalation", message=ESCALATION_MESSAGE, persistent=True))

        def on_delta(delta: str) -> None:
            reply.append(delta)
            if "index" not in state:
                state["index"] = len(self.turns)
                self.turns.append(ConversationTurn(role="assistant", text=""))
            self.turns[state["index"]] = ConversationTurn(
                role="assistant", text="".join(reply), emotion=state.get("emotion"),
            )
            self._observer.on_partial("".join(reply))

        def on_error(message: str) -> None:
            state["error"] = message

        try:
            await self._chat.stream(
                text,
                history,
                StreamCallbacks(on_emotion=on_emotion, on_delta=on_delta, on_error=on_error),
                session_id=self.session_id,
                user_id=self.user_id,
            )
        finally:
            self.is_typing = False

        if "error" in state:
            if "index" in state:
                del self.turns[state["index"]]
            self._observer.on_notice(Notice(level="error", message=state["error"]))
            return True

        await self._persist(user_turn)
        if "index" in state:
            assistant = self.turns[state["index"]]
            self._observer.on_turn(assistant)
            await self._persist(assistant)
        return True

    async def _persist(self, turn: ConversationTurn) -> None:
        if self._history_store is None or not self.session_id:
            return
        try:
            await self._history_store.append(self.session_id, turn)
        except Exception as exc:
            log.error("event=history_persist_failed session=%s error=%s", self.session_id, exc)
