"""
speech_patterns.py — local speech-pattern heuristics for one utterance.

Pure functions, no I/O: safe to call from any context, sync or async.
"""

from __future__ import annotations

import json
import logging
import re

from apps.voicechat.models import SpeechPatternResult

log = logging.getLogger("voicechat.speech_patterns")

BASELINE_WPM = 120.0
SLOW_WPM = 80.0
FAST_WPM = 180.0
MAX_SENTENCE_SEGMENTS = 5

# Matched by case-insensitive substring containment, in this order.
URGENCY_WORDS: tuple[str, ...] = (
    "help",
    "please",
    "urgent",
    "emergency",
    "right now",
    "immediately",
    "asap",
    "hurry",
    "scared",
    "panic",
    "can't breathe",
    "need someone",
)

CRISIS_WORDS: tuple[str, ...] = (
    "hopeless",
    "no point",
    "give up",
    "can't go on",
    "end it all",
    "suicide",
    "suicidal",
    "kill myself",
    "self-harm",
    "hurt myself",
    "want to die",
    "tired of life",
    "no reason to live",
    "worthless",
    "want to disappear",
    "better off without me",
)

_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")


def _matches(lower: str, vocabulary: tuple[str, ...]) -> list[str]:
    return [word for word in vocabulary if word in lower]


def words_per_minute(transcript: str, duration_ms: float) -> float:
    if duration_ms <= 0:
        return BASELINE_WPM
    return len(transcript.split()) / duration_ms * 60000.0


def analyze(transcript: str, duration_ms: float) -> SpeechPatternResult:
    """Classify pace, urgency and emotional cues of a final transcript.

    Rules
    ─────
    • pace     — wpm < 80 slow, wpm > 180 fast, otherwise normal
                 (duration ≤ 0 counts as the 120 wpm baseline).
    • urgency  — high on any crisis word; medium on ≥ 2 urgency words or a
                 fast pace; low otherwise.
    • cues     — pace, urgency, crisis, fragmentation; always in that order.
    """
    text = transcript or ""
    lower = text.lower()
    wpm = words_per_minute(text, duration_ms)

    if wpm < SLOW_WPM:
        pace = "slow"
    elif wpm > FAST_WPM:
        pace = "fast"
    else:
        pace = "normal"

    urgent = _matches(lower, URGENCY_WORDS)
    crisis = _matches(lower, CRISIS_WORDS)

    if crisis:
        urgency = "high"
    elif len(urgent) >= 2 or pace == "fast":
        urgency = "medium"
    else:
        urgency = "low"

    cues: list[str] = []
    if pace == "slow":
        cues.append("slow speech, possible low energy or sadness")
    elif pace == "fast":
        cues.append("rapid speech, possible anxiety or agitation")
    if urgent:
        cues.append("urgent language: " + ", ".join(urgent))
    if crisis:
        cues.append("crisis language: " + ", ".join(crisis))
    if is_fragmented(text):
        cues.append("fragmented speech")

    log.debug(
        "event=speech_patterns wpm=%.1f pace=%s urgency=%s cues=%d",
        wpm, pace, urgency, len(cues),
    )
    return SpeechPatternResult(pace=pace, urgency=urgency, emotional_cues=tuple(cues))


def is_fragmented(transcript: str) -> bool:
    """Trailing-off ("...") or more than five sentence-like segments."""
    if "..." in transcript:
        return True
    segments = [s for s in _SENTENCE_SPLIT_RE.split(transcript) if s.strip()]
    return len(segments) > MAX_SENTENCE_SEGMENTS


def annotate(transcript: str, result: SpeechPatternResult) -> str:
    """Append a machine-readable speech-pattern note for the classifier.

    Unremarkable utterances (normal pace, low urgency, no cues) go out as-is.
    """
    if not result.is_notable:
        return transcript
    note = json.dumps(
        {
            "pace": result.pace,
            "urgency": result.urgency,
            "cues": list(result.emotional_cues),
        },
        ensure_ascii=False,
    )
    return f"{transcript}\n\n[speech_patterns {note}]"
