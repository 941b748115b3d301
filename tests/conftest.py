import json
import os
from typing import Optional

import httpx
import pytest

# Keep the server module from picking up a developer's .env secrets
os.environ.setdefault("CALL_AUTH_TOKEN", "")
os.environ.setdefault("CHAT_API_KEY", "test-key")

from apps.voicechat.chat_stream import StreamingChatClient
from apps.voicechat.synthesis import Utterance, Voice


# ---------------------------------------------------------------------------
# SSE helpers
# ---------------------------------------------------------------------------

def sse_delta(text: str) -> str:
    return "data: " + json.dumps({"choices": [{"delta": {"content": text}}]}) + "\n\n"


def sse_emotion(emotion="negative", intensity=6, risk_level="low", primary_feeling="sad") -> str:
    payload = {
        "type": "emotion",
        "emotion": {
            "emotion": emotion,
            "intensity": intensity,
            "risk_level": risk_level,
            "primary_feeling": primary_feeling,
        },
    }
    return "data: " + json.dumps(payload) + "\n\n"


SSE_DONE = "data: [DONE]\n\n"


def chat_client_for(handler, **kwargs) -> StreamingChatClient:
    """StreamingChatClient whose HTTP traffic goes to `handler`."""
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return StreamingChatClient("https://chat.test/functions/v1/chat", "test-key", http_client=http_client, **kwargs)


def sse_response(*parts: str, status_code: int = 200) -> httpx.Response:
    return httpx.Response(
        status_code,
        headers={"content-type": "text/event-stream"},
        content="".join(parts).encode("utf-8"),
    )


# ---------------------------------------------------------------------------
# Fake platform engines
# ---------------------------------------------------------------------------

class FakeRecognitionEngine:
    def __init__(self):
        self.events = None
        self.continuous = False
        self.interim_results = False
        self.lang = ""
        self.max_alternatives = 0
        self.starts = 0
        self.stops = 0
        self.aborts = 0
        self.busy_starts = 0  # number of upcoming start() calls that raise

    def start(self):
        from apps.voicechat.recognition import RecognitionBusyError

        if self.busy_starts:
            self.busy_starts -= 1
            raise RecognitionBusyError("busy")
        self.starts += 1

    def stop(self):
        self.stops += 1

    def abort(self):
        self.aborts += 1


class FakeSpeechEngine:
    """Speech engine that finishes every utterance immediately unless told not to."""

    def __init__(self, voices: Optional[list[Voice]] = None, auto_finish: bool = True):
        self.listener = None
        self._voices = voices or [Voice(name="Samantha", lang="en-US", default=True)]
        self.auto_finish = auto_finish
        self.spoken: list[Utterance] = []
        self.audio: list[tuple[str, bytes, str]] = []
        self.cancels = 0
        self.resumes = 0
        self.speaking = False
        self.paused = False

    def voices(self):
        return list(self._voices)

    def speak(self, utterance: Utterance):
        self.spoken.append(utterance)
        self.speaking = True
        if self.auto_finish:
            self.finish(utterance.id)

    def play_audio(self, utterance_id: str, audio: bytes, mime: str):
        self.audio.append((utterance_id, audio, mime))
        self.speaking = True
        if self.auto_finish:
            self.finish(utterance_id)

    def finish(self, utterance_id: str):
        self.speaking = False
        if self.listener is not None:
            self.listener.on_utterance_end(utterance_id)

    def cancel(self):
        self.cancels += 1
        self.speaking = False
        self.paused = False

    def resume(self):
        self.resumes += 1
        self.paused = False


class FakeMicrophone:
    def __init__(self, granted: bool = True):
        self.granted = granted
        self.requests = 0

    async def request(self) -> bool:
        self.requests += 1
        return self.granted


class RecordingObserver:
    def __init__(self):
        self.states = []
        self.turns = []
        self.partials = []
        self.emotions = []
        self.notices = []

    def on_state(self, snapshot):
        self.states.append(snapshot)

    def on_turn(self, turn):
        self.turns.append(turn)

    def on_partial(self, text):
        self.partials.append(text)

    def on_emotion(self, emotion):
        self.emotions.append(emotion)

    def on_notice(self, notice):
        self.notices.append(notice)


@pytest.fixture
def recognition_engine():
    return FakeRecognitionEngine()


@pytest.fixture
def speech_engine():
    return FakeSpeechEngine()


@pytest.fixture
def observer():
    return RecordingObserver()
