"""
Turn Orchestrator

Responsibility: Drive one user input through a full conversational turn and
make sure only the newest turn ever reaches the UI, the avatar or storage.

Turn lifecycle (TurnContext.advance enforces it):
    SUBMITTED -> PERSISTED -> RETRIEVING -> GENERATING -> COMPLETING -> DONE
    ABORTED from any non-terminal state (superseded, or failed)
    PERSISTED -> DONE for a direct image request (no model call)

Per turn:
1. Persist the user message (failure is logged, the turn goes on)
2. Direct image intent? Ask for confirmation, speak an ack, stop
3. Relationship signals + crisis assessment (local, no I/O on the turn path)
4. Attachment preprocessing (failure degrades to text-only with a warning)
5. Memory retrieval || history fetch (asyncio.gather, or sequential by flag)
6. Build the prompt, stream the reply with a throttled visible stream
7. Parse, drive the avatar, persist the reply, save memories in the background

Cancellation is cooperative: every submit() bumps a request counter and each
turn compares its own id against it right before any visible mutation. A stale
turn raises TurnSuperseded at its next checkpoint and unwinds quietly; writes
already issued are allowed to finish. Turn tasks are never Task.cancel()ed.

Does NOT:
- Know which model, database or TTS engine sits behind a collaborator
- Read configuration from globals (everything is injected once)
- Expose raw exception text (policy.USER_MESSAGES only)
"""

import asyncio
import logging
import time
from contextlib import aclosing
from dataclasses import replace
from typing import Callable, List, Optional, Set

from kindred.anniversaries import AnniversaryCollaborator
from kindred.attachments import (
    FfmpegFrameExtractor,
    FileImageEncoder,
    FrameExtractor,
    ImageEncoder,
    UnsupportedAttachment,
)
from kindred.avatar import AvatarDriver, LoggingAvatarDriver
from kindred.chat_store import PersistenceGateway
from kindred.config import FeatureFlags, RetrievalConfig
from kindred.crisis import CrisisMonitor
from kindred.errors import (
    AttachmentError,
    ImageGenError,
    LLMGatewayError,
    MemoryServiceError,
    PersistenceError,
    TurnSuperseded,
)
from kindred.events import ObservableState
from kindred.image_gen import ImageGenGateway, ImageGenNotConfigured
from kindred.instrumentation import StageTimer, log_event
from kindred.intent_parser import IntentParser, IntentType, RuleBasedIntentParser
from kindred.llm_gateway import LLMGateway
from kindred.message_builder import BuiltPrompt, MessageBuilder
from kindred.models import (
    Attachment,
    AttachmentKind,
    ChatMessage,
    ChatState,
    ImageGenCommand,
    MemoryTag,
    ParsedResponse,
    Role,
    TurnContext,
    TurnState,
)
from kindred.policy import (
    DEFAULT_IMAGE_QUESTION,
    DEFAULT_MAX_VIDEO_FRAMES,
    DEFAULT_VIDEO_QUESTION,
    IMAGE_COMMAND_ACK,
    IMAGE_INTENT_ACK,
    IMAGE_READY_ACK,
    IMAGE_READY_MESSAGE,
    LLM_STREAM_WARN_SECONDS,
    STREAM_MIN_CHARS_DELTA,
    STREAM_UPDATE_INTERVAL_MS,
    USER_MESSAGES,
    WARNING_IMAGE_DEGRADED,
    WARNING_IMAGE_GEN_FAILED,
    WARNING_IMAGE_GEN_UNCONFIGURED,
    WARNING_UNSUPPORTED_IMAGE,
    WARNING_VIDEO_DEGRADED,
)
from kindred.response_parser import ResponseParser
from kindred.retrieval import MemoryRetrievalCoordinator, RetrievalOutcome
from kindred.signals import SignalProcessor
from kindred.speech import SpeechRecognizer

logger = logging.getLogger(__name__)

DEFAULT_MESSAGE_LIMIT = 100


def user_message_for(exc: BaseException) -> str:
    """Closed mapping from failures to what the user may read."""
    if isinstance(exc, LLMGatewayError):
        return USER_MESSAGES.get(exc.kind, USER_MESSAGES["service"])
    if isinstance(exc, MemoryServiceError):
        return USER_MESSAGES["memory"]
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return USER_MESSAGES["timeout"]
    if isinstance(exc, ConnectionError):
        return USER_MESSAGES["network"]
    return USER_MESSAGES["generic"]


class StreamThrottle:
    """
    Decides whether a streamed increment becomes visible.

    Emits when at least interval_ms passed since the last emission, or the
    text grew by at least min_chars_delta characters. The first increment
    always emits.
    """

    def __init__(
        self,
        interval_ms: int = STREAM_UPDATE_INTERVAL_MS,
        min_chars_delta: int = STREAM_MIN_CHARS_DELTA,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.interval_ms = interval_ms
        self.min_chars_delta = min_chars_delta
        self._clock = clock
        self._last_time: Optional[float] = None
        self._last_length = 0
        self.emitted = 0

    def should_emit(self, text: str) -> bool:
        now = self._clock()
        delta = len(text) - self._last_length
        due = self._last_time is None or (now - self._last_time) * 1000 >= self.interval_ms
        if due or delta >= self.min_chars_delta:
            self._last_time = now
            self._last_length = len(text)
            self.emitted += 1
            return True
        return False


class TurnOrchestrator:
    """
    One long-lived instance per application session.

    The UI binds to `state` (ObservableState[ChatState]); every field of the
    chat screen comes from there.
    """

    def __init__(
        self,
        persistence: PersistenceGateway,
        llm: LLMGateway,
        retrieval: MemoryRetrievalCoordinator,
        builder: Optional[MessageBuilder] = None,
        parser: Optional[ResponseParser] = None,
        intent_parser: Optional[IntentParser] = None,
        signals: Optional[SignalProcessor] = None,
        crisis: Optional[CrisisMonitor] = None,
        avatar: Optional[AvatarDriver] = None,
        speech: Optional[SpeechRecognizer] = None,
        image_encoder: Optional[ImageEncoder] = None,
        frame_extractor: Optional[FrameExtractor] = None,
        image_gen: Optional[ImageGenGateway] = None,
        anniversaries: Optional[AnniversaryCollaborator] = None,
        retrieval_config: Optional[RetrievalConfig] = None,
        flags: Optional[FeatureFlags] = None,
        max_video_frames: int = DEFAULT_MAX_VIDEO_FRAMES,
        message_limit: int = DEFAULT_MESSAGE_LIMIT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.persistence = persistence
        self.llm = llm
        self.retrieval = retrieval
        self.builder = builder or MessageBuilder()
        self.parser = parser or ResponseParser()
        self.intent_parser = intent_parser or RuleBasedIntentParser()
        self.signals = signals or SignalProcessor()
        self.crisis = crisis or CrisisMonitor()
        self.avatar = avatar or LoggingAvatarDriver()
        self.speech = speech
        self.image_encoder = image_encoder or FileImageEncoder()
        self.frame_extractor = frame_extractor or FfmpegFrameExtractor()
        self.image_gen = image_gen
        self.anniversaries = anniversaries
        self.retrieval_config = retrieval_config or RetrievalConfig()
        self.flags = flags or FeatureFlags()
        self.max_video_frames = max_video_frames
        self.message_limit = message_limit
        self._clock = clock

        self.state: ObservableState[ChatState] = ObservableState(ChatState(), name="chat_state")

        self._request_id = 0
        self._turn: Optional[TurnContext] = None
        self._turn_task: Optional[asyncio.Task] = None
        self._session_id: Optional[int] = None
        self._session_lock = asyncio.Lock()
        self._observe_task: Optional[asyncio.Task] = None
        self._voice_tasks: List[asyncio.Task] = []
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def current_request_id(self) -> int:
        return self._request_id

    @property
    def session_id(self) -> Optional[int]:
        return self._session_id

    @property
    def current_turn(self) -> Optional[TurnContext]:
        return self._turn

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> int:
        """Open (or create) the active session and start mirroring its messages."""
        return await self._ensure_session()

    async def close(self) -> None:
        self._closed = True
        self._retire_current()
        for task in [self._observe_task, *self._voice_tasks]:
            if task is not None and not task.done():
                task.cancel()
        self._observe_task = None
        self._voice_tasks = []
        await self.wait_idle()
        await self._safe_interrupt()
        logger.info("[TURN] Orchestrator closed")

    async def wait_idle(self) -> None:
        """Wait for every turn (current or superseded) and background write to finish."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, text: str, attachment: Optional[Attachment] = None) -> asyncio.Task:
        """
        Start a new turn; any turn in flight stops affecting anything visible.

        Returns:
            The turn task (awaiting it never raises for turn failures)

        Raises:
            ValueError: text is blank and there is no attachment
        """
        if (not text or not text.strip()) and attachment is None:
            raise ValueError("Cannot submit an empty message")
        if self._closed:
            raise RuntimeError("orchestrator is closed")

        self._retire_current()
        self._request_id += 1
        turn = TurnContext(request_id=self._request_id, text=(text or "").strip(), attachment=attachment)
        self._turn = turn
        self.state.update(lambda s: replace(s, is_loading=True, current_stream="", error=None))
        log_event("submitted", "turn", turn.request_id)

        self._turn_task = self._spawn(self._run_turn(turn), f"turn-{turn.request_id}")
        return self._turn_task

    def submit_with_image(self, text: str, uri: str) -> asyncio.Task:
        return self.submit(text, Attachment(AttachmentKind.IMAGE, uri))

    def submit_with_video(self, text: str, uri: str, max_frames: Optional[int] = None) -> asyncio.Task:
        frames = max_frames if max_frames is not None else self.max_video_frames
        return self.submit(text, Attachment(AttachmentKind.VIDEO, uri, max_frames=frames))

    def _retire_current(self) -> None:
        if self._turn is not None and not self._turn.finished:
            self._turn.cancelled = True
            log_event("retired", "turn", self._turn.request_id)

    # ------------------------------------------------------------------
    # Turn checkpoints
    # ------------------------------------------------------------------

    def _is_current(self, turn: TurnContext) -> bool:
        return not turn.cancelled and turn.request_id == self._request_id

    def _check_current(self, turn: TurnContext) -> None:
        if not self._is_current(turn):
            raise TurnSuperseded(turn.request_id, self._request_id)

    def _publish(self, turn: TurnContext, **changes) -> None:
        """Checkpoint + visible state change in one step."""
        self._check_current(turn)
        self.state.update(lambda s: replace(s, **changes))

    # ------------------------------------------------------------------
    # Turn body
    # ------------------------------------------------------------------

    async def _run_turn(self, turn: TurnContext) -> None:
        try:
            await self._execute(turn)
        except TurnSuperseded as e:
            log_event("superseded", turn.state.value, turn.request_id)
            logger.info(f"[TURN] {e}")
            if not turn.finished:
                turn.advance(TurnState.ABORTED)
        except Exception as e:
            logger.error(f"[TURN] id={turn.request_id} failed in {turn.state.value}: {type(e).__name__}: {e}")
            if not turn.finished:
                turn.advance(TurnState.ABORTED)
            if self._is_current(turn):
                await self._safe_interrupt()
                self.state.update(
                    lambda s: replace(s, is_loading=False, current_stream="", error=user_message_for(e))
                )
        log_event(turn.state.value.lower(), "turn", turn.request_id)

    def _turn_text(self, turn: TurnContext) -> str:
        if turn.text:
            return turn.text
        if turn.attachment is not None and turn.attachment.kind is AttachmentKind.VIDEO:
            return DEFAULT_VIDEO_QUESTION
        return DEFAULT_IMAGE_QUESTION

    async def _execute(self, turn: TurnContext) -> None:
        text = self._turn_text(turn)
        session_id = await self._ensure_session()
        self._check_current(turn)

        # 1. User message first, before anything touches the network
        attachment = turn.attachment
        await self._persist(
            session_id,
            Role.USER,
            text,
            image_ref=attachment.uri if attachment and attachment.kind is AttachmentKind.IMAGE else None,
            video_ref=attachment.uri if attachment and attachment.kind is AttachmentKind.VIDEO else None,
        )
        turn.advance(TurnState.PERSISTED)
        self._check_current(turn)
        log_event("persisted", "turn", turn.request_id)

        await self._safe_interrupt()

        # 2. Direct image request: no model call this turn
        if attachment is None:
            intent = self.intent_parser.parse(text)
            if intent.intent_type is IntentType.IMAGE_GENERATION:
                await self._handle_image_intent(turn, session_id, intent.prompt)
                return

        # 3. Relationship signals + crisis bookkeeping
        report = self.signals.analyze(text)
        event = self.crisis.assess(text, report)
        if event is not None:
            self._spawn(self.crisis.deliver(event), f"crisis-{turn.request_id}")

        # 4. Attachments
        images = await self._prepare_attachment(turn)
        self._check_current(turn)

        # 5. Memory || history
        turn.advance(TurnState.RETRIEVING)
        outcome, history = await self._gather_context(turn, session_id, text)
        self._check_current(turn)
        warning = self.retrieval.warning_for(outcome, session_id, len(history))
        if warning:
            self._publish(turn, warning=warning)

        # 6. Prompt + stream
        prompt = self.builder.build(
            outcome.context,
            history,
            text,
            images=images,
            affinity=report.affinity,
            intimacy=report.intimacy,
        )
        turn.advance(TurnState.GENERATING)
        await self.avatar.start_thinking()
        raw = await self._stream(turn, prompt)
        self._check_current(turn)

        if not raw.strip():
            logger.warning(f"[TURN] id={turn.request_id} model returned a blank reply")
            turn.advance(TurnState.ABORTED)
            await self._safe_interrupt()
            self._publish(turn, is_loading=False, current_stream="", error=USER_MESSAGES["empty"])
            return

        # 7. Completion
        turn.advance(TurnState.COMPLETING)
        parsed = self.parser.parse(raw)
        display = parsed.text or (IMAGE_COMMAND_ACK if parsed.image_command else "")
        if not display:
            logger.warning(f"[TURN] id={turn.request_id} reply had no displayable text")
            turn.advance(TurnState.ABORTED)
            await self._safe_interrupt()
            self._publish(turn, is_loading=False, current_stream="", error=USER_MESSAGES["empty"])
            return

        if parsed.image_command is not None:
            # A newer command always replaces an unconfirmed one
            self._publish(turn, pending_image_gen=parsed.image_command)

        speak_text = IMAGE_COMMAND_ACK if parsed.image_command else parsed.text
        await self._drive_avatar(turn, parsed.emotion, parsed.gesture, speak_text)

        self._check_current(turn)
        await self._persist(session_id, Role.ASSISTANT, display, raw_text=raw)
        self._check_current(turn)

        self._spawn(self._save_memories(session_id, text, parsed), f"memory-{turn.request_id}")
        if parsed.anniversaries and self.anniversaries is not None:
            self._spawn(self.anniversaries.record(parsed.anniversaries), f"anniv-{turn.request_id}")

        turn.advance(TurnState.DONE)
        self._publish(turn, is_loading=False, current_stream="")

    async def _handle_image_intent(self, turn: TurnContext, session_id: int, prompt: str) -> None:
        command = ImageGenCommand(prompt=prompt)
        logger.info(f"[TURN] id={turn.request_id} direct image request, awaiting confirmation")
        self._publish(turn, pending_image_gen=command)
        await self._speak(IMAGE_INTENT_ACK)
        self._check_current(turn)
        await self._persist(session_id, Role.ASSISTANT, IMAGE_INTENT_ACK)
        turn.advance(TurnState.DONE)
        self._publish(turn, is_loading=False, current_stream="")

    async def _prepare_attachment(self, turn: TurnContext) -> List[str]:
        attachment = turn.attachment
        if attachment is None:
            return []
        degraded = WARNING_VIDEO_DEGRADED if attachment.kind is AttachmentKind.VIDEO else WARNING_IMAGE_DEGRADED
        try:
            if attachment.kind is AttachmentKind.IMAGE:
                return [await self.image_encoder.encode(attachment.uri)]
            return await self.frame_extractor.extract_frames(attachment.uri, attachment.max_frames)
        except UnsupportedAttachment as e:
            logger.warning(f"[TURN] id={turn.request_id} unsupported attachment: {e}")
            self._publish(turn, warning=WARNING_UNSUPPORTED_IMAGE)
        except AttachmentError as e:
            logger.warning(f"[TURN] id={turn.request_id} attachment degraded to text: {e}")
            self._publish(turn, warning=degraded)
        return []

    async def _history(self, session_id: int) -> List[ChatMessage]:
        return await self.persistence.recent(session_id, self.retrieval_config.history_limit)

    async def _gather_context(self, turn: TurnContext, session_id: int, text: str):
        if self.flags.concurrent_retrieval:
            outcome, history = await asyncio.gather(
                self.retrieval.retrieve(text, session_id, request_id=turn.request_id),
                self._history(session_id),
            )
        else:
            history = await self._history(session_id)
            self._check_current(turn)
            outcome = await self.retrieval.retrieve(text, session_id, history=history, request_id=turn.request_id)
        log_event("context_ready", "retrieval", turn.request_id)
        return outcome, history

    async def _stream(self, turn: TurnContext, prompt: BuiltPrompt) -> str:
        throttle = StreamThrottle(clock=self._clock)
        with StageTimer("llm_stream", LLM_STREAM_WARN_SECONDS, turn.request_id):
            async with aclosing(self.llm.stream_chat(prompt.messages, prompt.route)) as stream:
                async for accumulated in stream:
                    self._check_current(turn)
                    turn.accumulated = accumulated
                    if throttle.should_emit(accumulated):
                        self._publish(turn, current_stream=accumulated)
        # The last increment is always visible before completion
        if turn.accumulated and self.state.value.current_stream != turn.accumulated:
            self._publish(turn, current_stream=turn.accumulated)
        logger.info(
            f"[LLM] id={turn.request_id} route={prompt.route.value} chars={len(turn.accumulated)} "
            f"updates={throttle.emitted}"
        )
        return turn.accumulated

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    async def _persist(self, session_id: int, role: Role, text: str, **extra) -> Optional[ChatMessage]:
        try:
            return await self.persistence.append(session_id, role, text, **extra)
        except PersistenceError as e:
            logger.error(f"[TURN] Could not persist {role.value} message: {e}")
            return None

    async def _speak(self, text: str) -> None:
        if self.flags.fast_thinking:
            try:
                await self.avatar.speak_immediate(text)
                return
            except Exception as e:
                logger.warning(f"[AVATAR] speak_immediate failed ({type(e).__name__}), using speak")
        await self.avatar.speak(text)

    async def _drive_avatar(self, turn: TurnContext, emotion: str, gesture: str, text: str) -> None:
        try:
            self._check_current(turn)
            await self.avatar.set_emotion(emotion)
            self._check_current(turn)
            await self.avatar.play_motion(gesture)
            self._check_current(turn)
            await self._speak(text)
        except TurnSuperseded:
            raise
        except Exception as e:
            logger.error(f"[AVATAR] Dispatch failed: {type(e).__name__}: {e}")

    async def _safe_interrupt(self) -> None:
        try:
            await self.avatar.interrupt()
        except Exception as e:
            logger.warning(f"[AVATAR] interrupt failed: {e}")

    async def _save_memories(self, session_id: int, user_text: str, parsed: ParsedResponse) -> None:
        await self.retrieval.save(user_text, MemoryTag.USER_INPUT, session_id)
        await self.retrieval.save(parsed.text, MemoryTag.AI_OUTPUT, session_id, parsed.emotion)

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[TURN] background task {task.get_name()} failed: {type(exc).__name__}: {exc}")

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def _ensure_session(self) -> int:
        async with self._session_lock:
            if self._session_id is None:
                self._session_id = await self.persistence.get_or_create_active_session()
                logger.info(f"[TURN] Active session {self._session_id}")
                self._restart_observation()
            return self._session_id

    async def start_new_session(self) -> int:
        """Archive the current session and switch to a fresh one. Retires any turn in flight."""
        self._retire_current()
        self._request_id += 1
        await self._safe_interrupt()
        async with self._session_lock:
            old = self._session_id
            if old is not None:
                await self.persistence.archive_session(old)
            self._session_id = await self.persistence.create_session()
            logger.info(f"[TURN] New session {self._session_id} (archived {old})")
            self._restart_observation()
        self.state.update(
            lambda s: replace(
                s,
                messages=(),
                is_loading=False,
                current_stream="",
                error=None,
                warning=None,
                pending_image_gen=None,
            )
        )
        return self._session_id

    def _restart_observation(self) -> None:
        if self._observe_task is not None and not self._observe_task.done():
            self._observe_task.cancel()
        session_id = self._session_id
        self._observe_task = asyncio.create_task(self._observe(session_id), name=f"observe-{session_id}")

    async def _observe(self, session_id: int) -> None:
        try:
            async for messages in self.persistence.observe(session_id, self.message_limit):
                if session_id != self._session_id:
                    return
                snapshot = tuple(messages)
                self.state.update(lambda s: replace(s, messages=snapshot))
        except PersistenceError as e:
            logger.error(f"[TURN] Message observation for session {session_id} stopped: {e}")

    # ------------------------------------------------------------------
    # Banners
    # ------------------------------------------------------------------

    def clear_error(self) -> None:
        self.state.update(lambda s: replace(s, error=None))

    def clear_warning(self) -> None:
        self.state.update(lambda s: replace(s, warning=None))

    # ------------------------------------------------------------------
    # Image generation confirmation
    # ------------------------------------------------------------------

    async def confirm_image_generation(self) -> Optional[str]:
        """
        Generate the pending picture. The command is consumed whatever happens.

        Returns:
            The image URL, or None when there was nothing to confirm or it failed
        """
        command = self.state.value.pending_image_gen
        if command is None:
            return None
        self.state.update(lambda s: replace(s, pending_image_gen=None))

        if self.image_gen is None:
            self.state.update(lambda s: replace(s, warning=WARNING_IMAGE_GEN_UNCONFIGURED))
            return None

        try:
            url = await self.image_gen.generate(command)
        except ImageGenNotConfigured as e:
            logger.warning(f"[IMAGE] Not configured: {e}")
            self.state.update(lambda s: replace(s, warning=WARNING_IMAGE_GEN_UNCONFIGURED))
            return None
        except ImageGenError as e:
            logger.error(f"[IMAGE] Generation failed: {e}")
            self.state.update(lambda s: replace(s, warning=WARNING_IMAGE_GEN_FAILED))
            return None

        session_id = await self._ensure_session()
        await self._persist(session_id, Role.ASSISTANT, IMAGE_READY_MESSAGE, image_ref=url)
        try:
            await self._speak(IMAGE_READY_ACK)
        except Exception as e:
            logger.error(f"[AVATAR] Dispatch failed: {type(e).__name__}: {e}")
        return url

    def cancel_image_generation(self) -> None:
        if self.state.value.pending_image_gen is not None:
            logger.info("[IMAGE] Pending picture cancelled")
        self.state.update(lambda s: replace(s, pending_image_gen=None))

    # ------------------------------------------------------------------
    # Voice input
    # ------------------------------------------------------------------

    def _ensure_voice_listeners(self) -> None:
        if self._voice_tasks or self.speech is None:
            return
        partials = self.speech.partial.subscribe()
        finals = self.speech.final.subscribe()
        self._voice_tasks = [
            asyncio.create_task(self._on_partials(partials), name="voice-partial"),
            asyncio.create_task(self._on_finals(finals), name="voice-final"),
        ]

    async def _on_partials(self, subscription) -> None:
        async with subscription:
            async for text in subscription:
                if self.state.value.voice_input_active:
                    self.state.update(lambda s: replace(s, voice_input_text=text))

    async def _on_finals(self, subscription) -> None:
        async with subscription:
            async for text in subscription:
                self.state.update(lambda s: replace(s, voice_input_active=False, voice_input_text=""))
                if text and text.strip() and not self._closed:
                    self.submit(text)

    async def start_voice_input(self) -> bool:
        if self.speech is None:
            logger.warning("[ASR] No speech recognizer configured")
            return False
        self._ensure_voice_listeners()
        await self._safe_interrupt()
        await self.avatar.start_listening()
        self.state.update(lambda s: replace(s, voice_input_active=True, voice_input_text=""))
        await self.speech.start(auto_stop_on_silence=self.flags.hands_free)
        return True

    async def stop_voice_input(self) -> None:
        """Finish listening; the recognizer's final result becomes a turn."""
        if self.speech is not None:
            await self.speech.stop()

    async def cancel_voice_input(self) -> None:
        if self.speech is not None:
            await self.speech.cancel()
        self.state.update(lambda s: replace(s, voice_input_active=False, voice_input_text=""))
        await self._safe_interrupt()

    async def toggle_voice_input(self) -> None:
        if self.state.value.voice_input_active:
            await self.stop_voice_input()
        else:
            await self.start_voice_input()
