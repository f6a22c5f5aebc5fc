"""
Speech Recognition Module

Responsibility: Microphone in, text out.
Nothing more.

SpeechRecognizer
- start(auto_stop_on_silence)   begin capturing
- stop()                        finish; the final result is published
- cancel()                      discard everything captured
- partial / final               Broadcast[str]
- state                         ObservableState[RecognizerState]

Does NOT:
- Decide what the text means (the orchestrator submits it as a turn)
- Handle wake words

WhisperSpeechRecognizer captures with sounddevice and transcribes with
faster-whisper in a worker thread. Both libraries are imported on first use
so a host without an audio device can still import this module.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional

import numpy as np

from kindred.events import Broadcast, ObservableState
from kindred.policy import COLLABORATOR_RETRY_DELAY_SECONDS

logger = logging.getLogger(__name__)


class RecognizerState(Enum):
    IDLE = "IDLE"
    LISTENING = "LISTENING"
    RECOGNIZING = "RECOGNIZING"
    ERROR = "ERROR"


class SpeechRecognizer(ABC):
    def __init__(self):
        self.partial: Broadcast[str] = Broadcast(name="asr_partial")
        self.final: Broadcast[str] = Broadcast(name="asr_final")
        self.state: ObservableState[RecognizerState] = ObservableState(RecognizerState.IDLE, name="asr_state")

    @abstractmethod
    async def start(self, auto_stop_on_silence: bool = False) -> None:
        pass

    @abstractmethod
    async def stop(self) -> None:
        pass

    @abstractmethod
    async def cancel(self) -> None:
        pass


def rms(samples: np.ndarray) -> float:
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))


class WhisperSpeechRecognizer(SpeechRecognizer):
    def __init__(
        self,
        model_size: str = "base",
        device: str = "cpu",
        language: Optional[str] = None,
        sample_rate: int = 16000,
        silence_timeout_seconds: float = 1.2,
        rms_speech_threshold: float = 0.015,
        max_recording_seconds: float = 30.0,
        partial_interval_seconds: float = 1.0,
    ):
        super().__init__()
        self.model_size = model_size
        self.device = device
        self.language = language
        self.sample_rate = sample_rate
        self.silence_timeout_seconds = silence_timeout_seconds
        self.rms_speech_threshold = rms_speech_threshold
        self.max_recording_seconds = max_recording_seconds
        self.partial_interval_seconds = partial_interval_seconds
        self._model = None
        self._stream = None
        self._chunks: List[np.ndarray] = []
        self._audio_queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._cancelled = False

    @classmethod
    def from_config(cls, config) -> "WhisperSpeechRecognizer":
        return cls(
            model_size=config.get("speech_to_text.model", "base"),
            device=config.get("speech_to_text.device", "cpu"),
            language=config.get("speech_to_text.language"),
            sample_rate=int(config.get("speech_to_text.sample_rate", 16000)),
            silence_timeout_seconds=float(config.get("speech_to_text.silence_timeout_seconds", 1.2)),
            rms_speech_threshold=float(config.get("speech_to_text.rms_speech_threshold", 0.015)),
            max_recording_seconds=float(config.get("speech_to_text.max_recording_seconds", 30.0)),
        )

    # ------------------------------------------------------------------
    # Model
    # ------------------------------------------------------------------

    def _load_model(self):
        if self._model is None:
            from faster_whisper import WhisperModel

            logger.info(f"[ASR] Loading faster-whisper '{self.model_size}' on {self.device}")
            self._model = WhisperModel(self.model_size, device=self.device, compute_type="int8")
        return self._model

    def transcribe(self, audio: np.ndarray) -> str:
        """Blocking transcription of mono float32 audio."""
        if audio.size == 0:
            return ""
        model = self._load_model()
        segments, _info = model.transcribe(
            audio,
            beam_size=5,
            language=self.language,
            condition_on_previous_text=False,
        )
        return " ".join(s.text for s in segments).strip()

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def _open_stream(self, loop: asyncio.AbstractEventLoop):
        import sounddevice as sd

        queue = self._audio_queue

        def callback(indata, frames, time_info, status):
            if status:
                logger.debug(f"[ASR] input status: {status}")
            loop.call_soon_threadsafe(queue.put_nowait, indata[:, 0].copy())

        stream = sd.InputStream(
            samplerate=self.sample_rate,
            channels=1,
            dtype="float32",
            callback=callback,
        )
        stream.start()
        return stream

    def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception as e:
                logger.warning(f"[ASR] closing input stream failed: {e}")

    async def start(self, auto_stop_on_silence: bool = False) -> None:
        if self.state.value is RecognizerState.RECOGNIZING:
            # Previous utterance still decoding: one short wait, then take over
            await asyncio.sleep(COLLABORATOR_RETRY_DELAY_SECONDS)
        if self._task is not None and not self._task.done():
            await self.cancel()

        loop = asyncio.get_running_loop()
        self._chunks = []
        self._cancelled = False
        self._audio_queue = asyncio.Queue()
        self._stop_event = asyncio.Event()
        try:
            self._stream = await asyncio.to_thread(self._open_stream, loop)
        except Exception as e:
            logger.error(f"[ASR] Could not open microphone: {e}")
            self.state.set(RecognizerState.ERROR)
            return

        self.state.set(RecognizerState.LISTENING)
        self._task = asyncio.create_task(self._run(auto_stop_on_silence), name="asr-capture")

    async def _run(self, auto_stop: bool) -> None:
        heard_speech = False
        silence_seconds = 0.0
        total_seconds = 0.0
        since_partial = 0.0
        try:
            while not self._stop_event.is_set():
                try:
                    chunk = await asyncio.wait_for(self._audio_queue.get(), timeout=0.1)
                except asyncio.TimeoutError:
                    continue
                self._chunks.append(chunk)
                seconds = len(chunk) / self.sample_rate
                total_seconds += seconds
                since_partial += seconds

                if rms(chunk) >= self.rms_speech_threshold:
                    heard_speech = True
                    silence_seconds = 0.0
                else:
                    silence_seconds += seconds

                if heard_speech and since_partial >= self.partial_interval_seconds:
                    since_partial = 0.0
                    text = await asyncio.to_thread(self.transcribe, np.concatenate(self._chunks))
                    if text and not self._cancelled:
                        self.partial.publish(text)

                if auto_stop and heard_speech and silence_seconds >= self.silence_timeout_seconds:
                    logger.info("[ASR] Silence detected, stopping")
                    break
                if total_seconds >= self.max_recording_seconds:
                    logger.info("[ASR] Max recording length reached, stopping")
                    break
        finally:
            self._close_stream()

        if self._cancelled:
            self.state.set(RecognizerState.IDLE)
            return

        self.state.set(RecognizerState.RECOGNIZING)
        try:
            audio = np.concatenate(self._chunks) if self._chunks else np.zeros(0, dtype=np.float32)
            text = await asyncio.to_thread(self.transcribe, audio)
        except Exception as e:
            logger.error(f"[ASR] Transcription failed: {e}")
            self.state.set(RecognizerState.ERROR)
            return

        if not self._cancelled:
            logger.info(f"[ASR] Final: '{text}'")
            self.final.publish(text)
        self.state.set(RecognizerState.IDLE)

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def cancel(self) -> None:
        self._cancelled = True
        if self._stop_event is not None:
            self._stop_event.set()
        task = self._task
        if task is not None and not task.done():
            try:
                await task
            except Exception as e:
                logger.debug(f"[ASR] capture ended with {type(e).__name__} during cancel")
        self._chunks = []
        self.state.set(RecognizerState.IDLE)
