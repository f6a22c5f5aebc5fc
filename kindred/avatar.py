"""
Avatar Driver Module

Responsibility: The companion's body and voice, behind one narrow interface.

AvatarDriver
- speak(text)            say text after a short "thinking" beat
- speak_immediate(text)  say text now (no thinking beat)
- set_emotion(tag)       facial expression
- play_motion(tag)       gesture
- interrupt()            stop talking (idempotent, instant)
- state                  ObservableState[AvatarState]

Adapters:
- LoggingAvatarDriver   headless; logs every call, simulates state changes
- EdgeTTSAvatarDriver   synthesizes each utterance to an mp3 with Edge-TTS and
                        publishes the file path for the host UI to play

Calls return quickly; long work runs in a background task owned by the driver.
A stale utterance never publishes (utterance id guard, same idea as an
interaction id check against zombie callbacks).
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

import edge_tts

from kindred.events import Broadcast, ObservableState
from kindred.policy import COLLABORATOR_RETRY_DELAY_SECONDS

logger = logging.getLogger(__name__)


class AvatarState(Enum):
    IDLE = "IDLE"
    LISTENING = "LISTENING"
    THINKING = "THINKING"
    SPEAKING = "SPEAKING"
    ERROR = "ERROR"


class AvatarDriver(ABC):
    def __init__(self):
        self.state: ObservableState[AvatarState] = ObservableState(AvatarState.IDLE, name="avatar_state")

    @abstractmethod
    async def speak(self, text: str) -> None:
        pass

    @abstractmethod
    async def speak_immediate(self, text: str) -> None:
        pass

    @abstractmethod
    async def set_emotion(self, tag: str) -> None:
        pass

    @abstractmethod
    async def play_motion(self, tag: str) -> None:
        pass

    @abstractmethod
    async def interrupt(self) -> None:
        """Stop speaking. Never raises; safe to call repeatedly."""
        pass

    async def start_listening(self) -> None:
        self.state.set(AvatarState.LISTENING)

    async def start_thinking(self) -> None:
        self.state.set(AvatarState.THINKING)


class LoggingAvatarDriver(AvatarDriver):
    """Headless driver. Speaking time is simulated from text length."""

    def __init__(self, thinking_delay_seconds: float = 0.6, chars_per_second: float = 0.0):
        super().__init__()
        self.thinking_delay_seconds = thinking_delay_seconds
        self.chars_per_second = chars_per_second
        self.emotion = "neutral"
        self._task: Optional[asyncio.Task] = None

    async def _say(self, text: str, delay: float) -> None:
        if delay > 0:
            self.state.set(AvatarState.THINKING)
            await asyncio.sleep(delay)
        self.state.set(AvatarState.SPEAKING)
        logger.info(f"[AVATAR] say ({self.emotion}): {text[:80]}")
        if self.chars_per_second > 0:
            await asyncio.sleep(len(text) / self.chars_per_second)
        self.state.set(AvatarState.IDLE)

    async def _start(self, text: str, delay: float) -> None:
        await self.interrupt()
        if not text or not text.strip():
            return
        self._task = asyncio.create_task(self._say(text, delay), name="avatar-say")

    async def speak(self, text: str) -> None:
        await self._start(text, self.thinking_delay_seconds)

    async def speak_immediate(self, text: str) -> None:
        await self._start(text, 0.0)

    async def set_emotion(self, tag: str) -> None:
        self.emotion = tag
        logger.info(f"[AVATAR] emotion={tag}")

    async def play_motion(self, tag: str) -> None:
        logger.info(f"[AVATAR] motion={tag}")

    async def interrupt(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            logger.info("[AVATAR] interrupted")
        if self.state.value in (AvatarState.THINKING, AvatarState.SPEAKING):
            self.state.set(AvatarState.IDLE)


@dataclass
class Utterance:
    utterance_id: int
    text: str
    path: Path
    emotion: str
    gesture: Optional[str]


class EdgeTTSAvatarDriver(AvatarDriver):
    """
    Voice via Edge-TTS. Each utterance becomes one mp3 under output_dir;
    `utterances` announces it (the host pushes it to the page that renders
    the avatar).
    """

    def __init__(
        self,
        voice: str = "en-US-AriaNeural",
        output_dir: Path = Path("data") / "speech",
        thinking_delay_seconds: float = 0.6,
        rate: str = "+0%",
        pitch: str = "+0Hz",
    ):
        super().__init__()
        self.voice = voice
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.thinking_delay_seconds = thinking_delay_seconds
        self.rate = rate
        self.pitch = pitch
        self.utterances: Broadcast[Utterance] = Broadcast(name="utterances")
        self._emotion = "neutral"
        self._gesture: Optional[str] = None
        self._utterance_id = 0
        self._task: Optional[asyncio.Task] = None

    async def _synthesize(self, utterance_id: int, text: str, delay: float) -> None:
        try:
            if delay > 0:
                self.state.set(AvatarState.THINKING)
                await asyncio.sleep(delay)
            path = self.output_dir / f"utterance_{utterance_id}_{int(time.time() * 1000)}.mp3"
            communicate = edge_tts.Communicate(text=text, voice=self.voice, rate=self.rate, pitch=self.pitch)
            await communicate.save(str(path))
            # Interrupted or replaced while synthesizing: drop it
            if utterance_id != self._utterance_id:
                logger.debug(f"[AVATAR] dropping stale utterance {utterance_id}")
                return
            self.state.set(AvatarState.SPEAKING)
            self.utterances.publish(Utterance(utterance_id, text, path, self._emotion, self._gesture))
            logger.info(f"[AVATAR] utterance {utterance_id} ready: {path.name}")
            self.state.set(AvatarState.IDLE)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[AVATAR] Edge-TTS synthesis failed: {e}")
            self.state.set(AvatarState.ERROR)

    async def _start(self, text: str, delay: float) -> None:
        if not text or not text.strip():
            return
        busy = self._task is not None and not self._task.done()
        await self.interrupt()
        if busy:
            # Give the previous synthesis a moment to release before the retry
            await asyncio.sleep(COLLABORATOR_RETRY_DELAY_SECONDS)
        self._utterance_id += 1
        self._task = asyncio.create_task(
            self._synthesize(self._utterance_id, text, delay), name=f"tts-{self._utterance_id}"
        )

    async def speak(self, text: str) -> None:
        await self._start(text, self.thinking_delay_seconds)

    async def speak_immediate(self, text: str) -> None:
        await self._start(text, 0.0)

    async def set_emotion(self, tag: str) -> None:
        self._emotion = tag

    async def play_motion(self, tag: str) -> None:
        self._gesture = tag

    async def interrupt(self) -> None:
        self._utterance_id += 1
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        if self.state.value in (AvatarState.THINKING, AvatarState.SPEAKING):
            self.state.set(AvatarState.IDLE)


def build_avatar_driver(config) -> AvatarDriver:
    driver = config.get("avatar.driver", "logging")
    delay = float(config.get("avatar.thinking_delay_seconds", 0.6))
    if driver == "edge_tts":
        return EdgeTTSAvatarDriver(
            voice=config.get("avatar.voice", "en-US-AriaNeural"),
            output_dir=Path(config.get("avatar.output_dir", "data/speech")),
            thinking_delay_seconds=delay,
        )
    if driver == "logging":
        return LoggingAvatarDriver(thinking_delay_seconds=delay)
    raise ValueError(f"unknown avatar driver: {driver}")
