import json

import httpx
import pytest

from apps.voicechat.hosted_speech import HostedSpeechClient, HostedSpeechError


def make_client(handler) -> HostedSpeechClient:
    return HostedSpeechClient(
        "https://speech.test/functions/v1/",
        "anon-key",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


# ---------------------------------------------------------------------------
# Text-to-speech
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_tts_request_shape():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        seen["apikey"] = request.headers.get("apikey")
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, content=b"mp3-bytes")

    client = make_client(handler)
    audio = await client.text_to_speech("Hola", "es")

    assert audio == b"mp3-bytes"
    assert seen["url"] == "https://speech.test/functions/v1/elevenlabs-tts"
    assert seen["body"] == {"text": "Hola", "language": "es"}
    assert seen["apikey"] == "anon-key"
    assert seen["auth"] == "Bearer anon-key"


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(402, json={"error": "payment required"}),
    httpx.Response(500, json={"error": "ElevenLabs quota exceeded"}),
])
async def test_quota_exhaustion_sets_flag_and_returns_none(response):
    client = make_client(lambda r: response)
    assert await client.text_to_speech("hi") is None
    assert client.quota_exhausted


@pytest.mark.asyncio
async def test_flag_short_circuits_until_reset():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, content=b"audio")

    client = make_client(handler)
    client.quota_exhausted = True
    assert await client.text_to_speech("hi") is None
    assert calls == []

    client.reset_quota_flag()
    assert await client.text_to_speech("hi") == b"audio"
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_quota_flag_is_per_instance():
    exhausted = make_client(lambda r: httpx.Response(402, json={"error": "quota"}))
    healthy = make_client(lambda r: httpx.Response(200, content=b"audio"))

    await exhausted.text_to_speech("hi")
    assert exhausted.quota_exhausted
    assert not healthy.quota_exhausted
    assert await healthy.text_to_speech("hi") == b"audio"


@pytest.mark.asyncio
async def test_other_failures_raise():
    client = make_client(lambda r: httpx.Response(500, json={"error": "voice not found"}))
    with pytest.raises(HostedSpeechError, match="voice not found"):
        await client.text_to_speech("hi")
    assert not client.quota_exhausted


@pytest.mark.asyncio
async def test_transport_failure_raises():
    def handler(request):
        raise httpx.ConnectTimeout("slow", request=request)

    with pytest.raises(HostedSpeechError):
        await make_client(handler).text_to_speech("hi")


# ---------------------------------------------------------------------------
# Speech-to-text
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_stt_multipart_upload():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["content_type"] = request.headers["content-type"]
        seen["body"] = request.read()
        return httpx.Response(200, json={"text": "I feel okay", "language": "en"})

    result = await make_client(handler).speech_to_text(b"webm-bytes", "en")

    assert result.text == "I feel okay"
    assert result.detected_language == "en"
    assert seen["url"].endswith("/elevenlabs-stt")
    assert seen["content_type"].startswith("multipart/form-data")
    assert b'name="audio"' in seen["body"]
    assert b"webm-bytes" in seen["body"]
    assert b'name="language"' in seen["body"]


@pytest.mark.asyncio
async def test_stt_failure_raises():
    client = make_client(lambda r: httpx.Response(400, json={"error": "bad audio"}))
    with pytest.raises(HostedSpeechError, match="bad audio"):
        await client.speech_to_text(b"x")


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(200, text="<html>gateway</html>"),
    httpx.Response(200, json=["not", "an", "object"]),
])
async def test_stt_unreadable_success_raises(response):
    client = make_client(lambda r: response)
    with pytest.raises(HostedSpeechError, match="unreadable"):
        await client.speech_to_text(b"x")
