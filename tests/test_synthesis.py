"""SpeechSynthesisAdapter: voice selection, one-at-a-time playback, keep-alive, hosted audio."""

import asyncio

import httpx
import pytest

from apps.voicechat.hosted_speech import HostedSpeechClient
from apps.voicechat.languages import to_locale
from apps.voicechat.synthesis import SpeechSynthesisAdapter, Voice, select_voice
from config import SynthesisTuning
from conftest import FakeSpeechEngine


def hosted_client(handler) -> HostedSpeechClient:
    return HostedSpeechClient(
        "https://speech.test/functions/v1",
        "k",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


# ---------------------------------------------------------------------------
# Locale table and voice selection
# ---------------------------------------------------------------------------

class TestLocales:
    @pytest.mark.parametrize("code, locale", [
        ("en", "en-US"), ("en-gb", "en-GB"), ("pt", "pt-BR"), ("zh", "zh-CN"), ("ar", "ar-SA"),
    ])
    def test_known_codes(self, code, locale):
        assert to_locale(code) == locale

    def test_unknown_code_falls_back(self):
        assert to_locale("xx") == "en-US"
        assert to_locale(None) == "en-US"


class TestSelectVoice:
    VOICES = [
        Voice("Daniel", "en-GB"),
        Voice("Samantha", "en-US"),
        Voice("Monica", "es-MX"),
        Voice("Google español", "und"),
        Voice("Anna German", "xx"),
    ]

    def test_exact_locale_wins(self):
        assert select_voice(self.VOICES, "en-US").name == "Samantha"

    def test_language_prefix(self):
        assert select_voice(self.VOICES, "es-ES").name == "Monica"

    def test_underscore_tags_are_normalised(self):
        assert select_voice([Voice("Thomas", "fr_FR")], "fr-FR").name == "Thomas"

    def test_name_heuristic(self):
        assert select_voice(self.VOICES, "de-DE").name == "Anna German"
        assert select_voice([Voice("Google español", "und")], "es-ES").name == "Google español"

    def test_no_match_means_engine_default(self):
        assert select_voice(self.VOICES, "ja-JP") is None


# ---------------------------------------------------------------------------
# speak()
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_speak_uses_locale_voice_and_tuning(speech_engine):
    adapter = SpeechSynthesisAdapter(speech_engine)
    await adapter.speak("Hello there", "en")

    (utterance,) = speech_engine.spoken
    assert utterance.text == "Hello there"
    assert utterance.lang == "en-US"
    assert utterance.voice == "Samantha"
    assert utterance.rate == 0.95
    assert utterance.pitch == 1.0


@pytest.mark.asyncio
async def test_empty_text_resolves_without_speaking(speech_engine):
    adapter = SpeechSynthesisAdapter(speech_engine)
    await adapter.speak("   ", "en")
    assert speech_engine.spoken == []


@pytest.mark.asyncio
async def test_missing_engine_resolves():
    adapter = SpeechSynthesisAdapter(None)
    assert not adapter.supported
    await adapter.speak("Hello", "en")


@pytest.mark.asyncio
async def test_new_utterance_cancels_previous():
    engine = FakeSpeechEngine(auto_finish=False)
    adapter = SpeechSynthesisAdapter(engine, SynthesisTuning(speak_timeout_base_sec=5))

    first = asyncio.create_task(adapter.speak("first", "en"))
    await asyncio.sleep(0.01)
    second = asyncio.create_task(adapter.speak("second", "en"))
    await asyncio.sleep(0.01)

    assert first.done()
    assert not second.done()
    engine.finish(engine.spoken[-1].id)
    await asyncio.wait_for(second, 1)
    assert engine.cancels >= 2


@pytest.mark.asyncio
async def test_stop_all_releases_waiter():
    engine = FakeSpeechEngine(auto_finish=False)
    adapter = SpeechSynthesisAdapter(engine, SynthesisTuning(speak_timeout_base_sec=5))
    task = asyncio.create_task(adapter.speak("a long reply", "en"))
    await asyncio.sleep(0.01)
    adapter.stop_all()
    await asyncio.wait_for(task, 1)


@pytest.mark.asyncio
async def test_engine_error_resolves_speak():
    engine = FakeSpeechEngine(auto_finish=False)
    adapter = SpeechSynthesisAdapter(engine, SynthesisTuning(speak_timeout_base_sec=5))
    task = asyncio.create_task(adapter.speak("hello", "en"))
    await asyncio.sleep(0.01)
    adapter.on_utterance_error(engine.spoken[0].id, "synthesis-failed")
    await asyncio.wait_for(task, 1)


@pytest.mark.asyncio
async def test_keepalive_resumes_stalled_engine():
    engine = FakeSpeechEngine(auto_finish=False)
    tuning = SynthesisTuning(keepalive_interval_sec=0.05, speak_timeout_base_sec=5)
    adapter = SpeechSynthesisAdapter(engine, tuning)
    task = asyncio.create_task(adapter.speak("a long reply", "en"))
    await asyncio.sleep(0.01)

    engine.speaking = True
    engine.paused = True
    await asyncio.sleep(0.12)
    assert engine.resumes >= 1

    engine.finish(engine.spoken[0].id)
    await asyncio.wait_for(task, 1)


@pytest.mark.asyncio
async def test_completion_ceiling_cancels_and_resolves():
    engine = FakeSpeechEngine(auto_finish=False)
    tuning = SynthesisTuning(speak_timeout_base_sec=0.05, speak_timeout_per_char_sec=0.0)
    adapter = SpeechSynthesisAdapter(engine, tuning)
    cancels_before = engine.cancels

    await asyncio.wait_for(adapter.speak("never ends", "en"), 1)
    assert engine.cancels > cancels_before + 1


# ---------------------------------------------------------------------------
# Hosted audio path
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_hosted_audio_played_when_available(speech_engine):
    hosted = hosted_client(lambda r: httpx.Response(200, content=b"ID3audio"))
    adapter = SpeechSynthesisAdapter(speech_engine, hosted=hosted)
    await adapter.speak("Hello", "en")

    assert speech_engine.spoken == []
    assert speech_engine.audio[0][1:] == (b"ID3audio", "audio/mpeg")


@pytest.mark.asyncio
async def test_hosted_quota_falls_back_to_platform_voice(speech_engine):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(402, json={"error": "quota exceeded"})

    hosted = hosted_client(handler)
    adapter = SpeechSynthesisAdapter(speech_engine, hosted=hosted)
    await adapter.speak("Hello", "en")
    await adapter.speak("Again", "en")

    assert hosted.quota_exhausted
    assert len(calls) == 1
    assert [u.text for u in speech_engine.spoken] == ["Hello", "Again"]


@pytest.mark.asyncio
async def test_hosted_failure_falls_back_to_platform_voice(speech_engine):
    hosted = hosted_client(lambda r: httpx.Response(500, json={"error": "boom"}))
    adapter = SpeechSynthesisAdapter(speech_engine, hosted=hosted)
    await adapter.speak("Hello", "en")

    assert not hosted.quota_exhausted
    assert [u.text for u in speech_engine.spoken] == ["Hello"]
