import asyncio

import numpy as np
import pytest

from kindred.avatar import AvatarState, EdgeTTSAvatarDriver, LoggingAvatarDriver, build_avatar_driver
from kindred.config import Config
from kindred.speech import RecognizerState, WhisperSpeechRecognizer, rms


@pytest.mark.asyncio
async def test_logging_driver_goes_back_to_idle():
    avatar = LoggingAvatarDriver(thinking_delay_seconds=0.0)
    await avatar.set_emotion("happy")
    await avatar.speak_immediate("hello")
    await asyncio.sleep(0.01)
    assert avatar.emotion == "happy"
    assert avatar.state.value is AvatarState.IDLE


@pytest.mark.asyncio
async def test_interrupt_cancels_thinking_beat():
    avatar = LoggingAvatarDriver(thinking_delay_seconds=5.0)
    await avatar.speak("a long thought")
    await asyncio.sleep(0)
    assert avatar.state.value is AvatarState.THINKING
    await avatar.interrupt()
    assert avatar.state.value is AvatarState.IDLE
    await avatar.interrupt()


@pytest.mark.asyncio
async def test_listening_state():
    avatar = LoggingAvatarDriver()
    await avatar.start_listening()
    assert avatar.state.value is AvatarState.LISTENING


def test_build_avatar_driver(tmp_path):
    assert isinstance(build_avatar_driver(Config({})), LoggingAvatarDriver)
    edge = build_avatar_driver(Config({"avatar": {"driver": "edge_tts", "output_dir": str(tmp_path / "speech")}}))
    assert isinstance(edge, EdgeTTSAvatarDriver)
    assert (tmp_path / "speech").is_dir()
    with pytest.raises(ValueError):
        build_avatar_driver(Config({"avatar": {"driver": "hologram"}}))


# ============================================================================
# Speech
# ============================================================================

def test_rms():
    assert rms(np.array([], dtype=np.float32)) == 0.0
    assert rms(np.array([0.5, -0.5], dtype=np.float32)) == pytest.approx(0.5)


def test_recognizer_from_config():
    recognizer = WhisperSpeechRecognizer.from_config(
        Config({"speech_to_text": {"model": "small", "language": "zh", "silence_timeout_seconds": 2}})
    )
    assert recognizer.model_size == "small"
    assert recognizer.language == "zh"
    assert recognizer.silence_timeout_seconds == 2.0
    assert recognizer.state.value is RecognizerState.IDLE


def test_empty_audio_transcribes_to_nothing():
    assert WhisperSpeechRecognizer().transcribe(np.zeros(0, dtype=np.float32)) == ""
