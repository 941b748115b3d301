import json

import pytest
from pydantic import ValidationError

from config import DEFAULT_GREETING, VoiceChatConfig


def test_defaults():
    cfg = VoiceChatConfig()
    assert cfg.conversation.language == "en"
    assert cfg.conversation.debounce_sec == 3.0
    assert cfg.conversation.greeting == DEFAULT_GREETING
    assert cfg.chat.history_window == 10
    assert cfg.recognition.restart_delay_ms == 300
    assert cfg.recognition.retry_delay_ms == 1000
    assert cfg.synthesis.rate == 0.95
    assert cfg.synthesis.pitch == 1.0
    assert cfg.hosted_speech.enabled is False


def test_merge_patch_only_touches_named_keys():
    cfg = VoiceChatConfig()
    updated = cfg.merge_patch({"conversation": {"debounce_sec": 2.0}, "synthesis": {"rate": 1.1}})

    assert updated.conversation.debounce_sec == 2.0
    assert updated.conversation.greeting == DEFAULT_GREETING
    assert updated.synthesis.rate == 1.1
    assert updated.synthesis.pitch == 1.0
    assert cfg.conversation.debounce_sec == 3.0


def test_merge_patch_validates():
    with pytest.raises(ValidationError):
        VoiceChatConfig().merge_patch({"synthesis": {"pitch": 5.0}})


def test_save_and_load_round_trip(tmp_path):
    path = tmp_path / "voicechat.json"
    VoiceChatConfig().merge_patch({"conversation": {"language": "es"}}).save(path)

    loaded = VoiceChatConfig.load(path)
    assert loaded.conversation.language == "es"


def test_missing_file_gives_defaults(tmp_path):
    assert VoiceChatConfig.load(tmp_path / "absent.json") == VoiceChatConfig()


def test_invalid_file_gives_defaults(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text(json.dumps({"conversation": {"debounce_sec": "soon"}}), encoding="utf-8")
    assert VoiceChatConfig.load(path) == VoiceChatConfig()
