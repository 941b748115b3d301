"""
models.py — conversation data model shared by every voicechat component.

Immutable value objects (EmotionAnalysis, SpeechPatternResult) are frozen
pydantic models; the per-call mutable state (CallSession) is a dataclass
owned exclusively by the orchestrator.
"""

from __future__ import annotations

import math
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

Role = Literal["user", "assistant"]
RiskLevel = Literal["low", "medium", "high"]
Level = Literal["low", "medium", "high"]
Pace = Literal["slow", "normal", "fast"]


class EmotionAnalysis(BaseModel):
    """Server-side classification attached to one assistant turn."""
    model_config = ConfigDict(frozen=True)

    emotion: Literal["positive", "negative", "neutral"] = "neutral"
    intensity: int = 5
    risk_level: RiskLevel = "low"
    primary_feeling: str = "neutral"

    @field_validator("intensity", mode="before")
    @classmethod
    def _clamp_intensity(cls, value):
        if isinstance(value, bool):
            raise ValueError("intensity must be a number")
        if isinstance(value, str):
            value = float(value)
        if not isinstance(value, (int, float)):
            raise ValueError("intensity must be a number")
        if isinstance(value, float) and not math.isfinite(value):
            raise ValueError("intensity must be finite")
        return max(1, min(10, int(round(value))))


def risk_level_of(raw: dict) -> Optional[str]:
    """Risk level from an emotion payload that failed validation, if it is usable."""
    value = raw.get("risk_level") if isinstance(raw, dict) else None
    return value if value in ("low", "medium", "high") else None


class SpeechPatternResult(BaseModel):
    """Local heuristic reading of one utterance."""
    model_config = ConfigDict(frozen=True)

    pace: Pace
    urgency: Level
    emotional_cues: tuple[str, ...] = ()

    @property
    def is_notable(self) -> bool:
        return self.pace != "normal" or self.urgency != "low" or bool(self.emotional_cues)


class ConversationTurn(BaseModel):
    role: Role
    text: str
    emotion: Optional[EmotionAnalysis] = None
    speech_patterns: Optional[SpeechPatternResult] = None

    def to_chat_message(self) -> dict:
        return {"role": self.role, "content": self.text}


class CallPhase(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    THINKING = "thinking"
    SPEAKING = "speaking"


class Notice(BaseModel):
    """User-visible notification.  Only escalation notices stay on screen."""
    level: Literal["info", "warning", "error", "escalation"]
    message: str
    persistent: bool = False


class CrisisAlert(BaseModel):
    session_id: str
    user_id: Optional[str] = None
    risk_level: RiskLevel
    primary_feeling: str
    trigger_message: str
    created_at: float = Field(default_factory=time.time)


class CallSnapshot(BaseModel):
    """Serializable view of a CallSession (sent to the browser)."""
    session_id: str
    phase: CallPhase
    is_connected: bool
    is_escalated: bool
    partial_text: str
    current_emotion: Optional[EmotionAnalysis] = None
    turn_count: int


@dataclass
class CallSession:
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    phase: CallPhase = CallPhase.IDLE
    is_connected: bool = False
    is_escalated: bool = False
    partial_text: str = ""
    current_emotion: Optional[EmotionAnalysis] = None
    turns: list[ConversationTurn] = field(default_factory=list)
    started_at: float = field(default_factory=time.monotonic)

    def escalate(self) -> bool:
        """Set the one-way escalation latch.  Returns True only on the first crossing."""
        if self.is_escalated:
            return False
        self.is_escalated = True
        return True

    def snapshot(self) -> CallSnapshot:
        return CallSnapshot(
            session_id=self.session_id,
            phase=self.phase,
            is_connected=self.is_connected,
            is_escalated=self.is_escalated,
            partial_text=self.partial_text,
            current_emotion=self.current_emotion,
            turn_count=len(self.turns),
        )
