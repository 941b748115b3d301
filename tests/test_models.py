import pytest
from pydantic import ValidationError

from apps.voicechat.models import CallPhase, CallSession, CrisisAlert, EmotionAnalysis, risk_level_of
from apps.voicechat.stores import BearerTokenAuthGate, InMemoryCrisisAlertStore


# ---------------------------------------------------------------------------
# EmotionAnalysis
# ---------------------------------------------------------------------------

class TestEmotionAnalysis:
    @pytest.mark.parametrize("raw, expected", [(0, 1), (-3, 1), (11, 10), (7, 7), (6.6, 7), ("4", 4)])
    def test_intensity_clamped(self, raw, expected):
        assert EmotionAnalysis(intensity=raw).intensity == expected

    def test_rejects_non_numeric_intensity(self):
        with pytest.raises(ValidationError):
            EmotionAnalysis(intensity=True)
        with pytest.raises(ValidationError):
            EmotionAnalysis(intensity=[5])

    @pytest.mark.parametrize("raw", [float("inf"), float("-inf"), float("nan"), "inf"])
    def test_rejects_non_finite_intensity(self, raw):
        with pytest.raises(ValidationError):
            EmotionAnalysis(intensity=raw)

    def test_huge_integer_intensity_clamped(self):
        assert EmotionAnalysis(intensity=10 ** 400).intensity == 10

    @pytest.mark.parametrize("raw, expected", [
        ({"risk_level": "high", "intensity": "lots"}, "high"),
        ({"risk_level": "severe"}, None),
        ({}, None),
        ("high", None),
    ])
    def test_risk_level_of_invalid_payload(self, raw, expected):
        assert risk_level_of(raw) == expected

    def test_rejects_unknown_risk_level(self):
        with pytest.raises(ValidationError):
            EmotionAnalysis(risk_level="severe")

    def test_frozen(self):
        emotion = EmotionAnalysis()
        with pytest.raises(ValidationError):
            emotion.intensity = 3


# ---------------------------------------------------------------------------
# CallSession
# ---------------------------------------------------------------------------

class TestCallSession:
    def test_escalation_latch(self):
        session = CallSession()
        assert session.escalate() is True
        assert session.escalate() is False
        assert session.is_escalated

    def test_snapshot(self):
        session = CallSession(phase=CallPhase.LISTENING, is_connected=True)
        snap = session.snapshot()
        assert snap.session_id == session.session_id
        assert snap.phase == CallPhase.LISTENING
        assert snap.turn_count == 0
        assert snap.model_dump(mode="json")["phase"] == "listening"

    def test_unique_ids(self):
        assert CallSession().session_id != CallSession().session_id


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_alert_fanout_survives_failing_subscriber():
    store = InMemoryCrisisAlertStore()
    received = []

    async def broken(alert):
        raise RuntimeError("dashboard offline")

    async def collector(alert):
        received.append(alert)

    store.subscribe(broken)
    store.subscribe(collector)
    alert = CrisisAlert(session_id="s", risk_level="high", primary_feeling="hopeless", trigger_message="...")
    await store.create_alert(alert)

    assert received == [alert]
    assert store.alerts == [alert]


class TestBearerTokenAuthGate:
    def test_no_token_configured_allows_everyone(self):
        gate = BearerTokenAuthGate(None)
        assert gate.authorize(None)
        assert gate.authorize("anything")

    def test_token_required_when_configured(self):
        gate = BearerTokenAuthGate("s3cret")
        assert gate.authorize("s3cret")
        assert not gate.authorize("wrong")
        assert not gate.authorize(None)
