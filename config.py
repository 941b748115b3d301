"""
config.py — Empathy Voice Engine · Runtime Configuration
=========================================================
Pydantic models for every tunable parameter of a call.
Serialises to / deserialises from JSON.  Used by:
  • server.py        — GET/PUT /config endpoints, builds each call from it
  • apps/voicechat   — each component reads its own section

Secrets (API keys, auth token) never live here; they come from the
environment (see server.py).
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

log = logging.getLogger("voicechat.config")

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_GREETING = "Hi! I'm listening. How are you feeling today?"

DEFAULT_WELCOME = (
    "Hello! I'm here to listen and support you. How are you feeling today?"
)


# ---------------------------------------------------------------------------
# Per-component config sections
# ---------------------------------------------------------------------------

class ChatBackendConfig(BaseModel):
    """Streaming chat endpoint (consumed by StreamingChatClient)."""
    url: str = Field(
        default="http://localhost:54321/functions/v1/chat",
        description="Chat function URL (POST, text/event-stream response)",
    )
    timeout_sec: float = Field(default=60.0, ge=1.0, le=600.0, description="Read timeout per chunk (seconds)")
    connect_timeout_sec: float = Field(default=10.0, ge=0.5, le=60.0, description="Connect timeout (seconds)")
    history_window: int = Field(default=10, ge=0, le=100, description="Turns sent as conversation context")


class HostedSpeechConfig(BaseModel):
    """Optional hosted TTS/STT functions.  Disabled means browser voices only."""
    enabled: bool = Field(default=False, description="Use hosted TTS before the platform voice")
    base_url: Optional[str] = Field(default=None, description="Functions base URL, e.g. https://x.supabase.co/functions/v1")
    timeout_sec: float = Field(default=30.0, ge=1.0, le=300.0, description="Request timeout (seconds)")


class RecognitionTuning(BaseModel):
    """RecognitionController restart policy."""
    restart_delay_ms: int = Field(default=300, ge=0, le=5000, description="Delay before re-arming the engine")
    retry_delay_ms: int = Field(default=1000, ge=0, le=10000, description="Second attempt delay when the engine is busy")


class SynthesisTuning(BaseModel):
    """SpeechSynthesisAdapter parameters."""
    rate: float = Field(default=0.95, ge=0.1, le=10.0, description="Utterance rate")
    pitch: float = Field(default=1.0, ge=0.0, le=2.0, description="Utterance pitch")
    keepalive_interval_sec: float = Field(default=10.0, ge=0.05, le=60.0, description="Stalled-engine resume interval")
    speak_timeout_base_sec: float = Field(default=10.0, ge=0.0, le=120.0, description="Completion ceiling base")
    speak_timeout_per_char_sec: float = Field(default=0.12, ge=0.0, le=2.0, description="Completion ceiling per character")


class ConversationConfig(BaseModel):
    """Orchestrator turn-taking parameters."""
    language: str = Field(default="en", description="Language code (see apps/voicechat/languages.py)")
    debounce_sec: float = Field(default=3.0, ge=0.0, le=30.0, description="Minimum gap between accepted transcripts")
    greeting: str = Field(default=DEFAULT_GREETING, description="Spoken when a call starts")
    welcome_message: str = Field(default=DEFAULT_WELCOME, description="First assistant message in text chat")
    microphone_timeout_sec: float = Field(default=30.0, ge=1.0, le=300.0, description="Permission prompt timeout")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class VoiceChatConfig(BaseModel):
    """Complete runtime configuration for the voice chat engine."""
    chat: ChatBackendConfig = Field(default_factory=ChatBackendConfig)
    hosted_speech: HostedSpeechConfig = Field(default_factory=HostedSpeechConfig)
    recognition: RecognitionTuning = Field(default_factory=RecognitionTuning)
    synthesis: SynthesisTuning = Field(default_factory=SynthesisTuning)
    conversation: ConversationConfig = Field(default_factory=ConversationConfig)
    max_concurrent_calls: int = Field(default=200, ge=1, description="Active call ceiling")

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "VoiceChatConfig":
        """Load config from a JSON file.  Returns defaults if the file is missing or invalid."""
        p = Path(path)
        if not p.exists():
            log.info("event=config_load_defaults path=%s", p)
            return cls()
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
            config = cls.model_validate(data)
            log.info("event=config_loaded path=%s", p)
            return config
        except Exception as exc:
            log.warning("event=config_load_error path=%s error=%s fallback=defaults", p, exc)
            return cls()

    def save(self, path: str | Path) -> None:
        p = Path(path)
        p.write_text(
            self.model_dump_json(indent=2, exclude_none=True),
            encoding="utf-8",
        )
        log.info("event=config_saved path=%s", p)

    def merge_patch(self, patch: dict) -> "VoiceChatConfig":
        """Return a new config with `patch` merged over `self`.

        Nested partial updates only touch the named keys:
            {"conversation": {"debounce_sec": 2.0}}
        """
        base = self.model_dump()
        _deep_merge(base, patch)
        return VoiceChatConfig.model_validate(base)


def _deep_merge(base: dict, patch: dict) -> None:
    """Recursively merge `patch` into `base` in-place."""
    for key, value in patch.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
