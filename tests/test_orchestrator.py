import asyncio

import pytest

from fakes import (
    FakeFrameExtractor,
    FakeImageEncoder,
    FakeImageGen,
    FakeMemoryService,
    InMemoryChatStore,
    RecordingAvatar,
    ScriptedLLM,
    eventually,
    make_harness,
)
from kindred.attachments import UnsupportedAttachment
from kindred.config import FeatureFlags, RetrievalConfig
from kindred.crisis import CrisisLevel
from kindred.errors import AttachmentError, ImageGenError, LLMGatewayError, MemoryServiceError
from kindred.message_builder import ImagePart, RouteHint, TextPart, frame_instruction
from kindred.models import Role, TurnState
from kindred.orchestrator import StreamThrottle, user_message_for
from kindred.policy import (
    DEFAULT_VIDEO_QUESTION,
    IMAGE_COMMAND_ACK,
    IMAGE_INTENT_ACK,
    IMAGE_READY_ACK,
    IMAGE_READY_MESSAGE,
    USER_MESSAGES,
    WARNING_IMAGE_DEGRADED,
    WARNING_IMAGE_GEN_FAILED,
    WARNING_MEMORY_DEGRADED,
    WARNING_UNSUPPORTED_IMAGE,
)


# ============================================================================
# StreamThrottle
# ============================================================================

class _Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_throttle_ten_fast_increments_emit_only_on_char_delta():
    clock = _Clock()
    throttle = StreamThrottle(clock=clock)
    text = ""
    emitted = []
    for _ in range(10):
        clock.now += 0.005
        text += "x"
        emitted.append(throttle.should_emit(text))
    assert emitted == [True, False, False, True, False, False, True, False, False, True]


def test_throttle_emits_after_interval_even_for_one_char():
    clock = _Clock()
    throttle = StreamThrottle(clock=clock)
    assert throttle.should_emit("a")
    clock.now += 0.1
    assert not throttle.should_emit("ab")
    clock.now += 0.1
    assert throttle.should_emit("abc")


def test_user_message_mapping_never_leaks_exception_text():
    assert user_message_for(LLMGatewayError("dns failure", kind="network")) == USER_MESSAGES["network"]
    assert user_message_for(LLMGatewayError("slow", kind="timeout")) == USER_MESSAGES["timeout"]
    assert user_message_for(MemoryServiceError("db locked")) == USER_MESSAGES["memory"]
    assert user_message_for(KeyError("secret")) == USER_MESSAGES["generic"]


# ============================================================================
# Round trip
# ============================================================================

@pytest.mark.asyncio
async def test_round_trip_hello():
    h = make_harness(llm=ScriptedLLM("[EMOTION:happy] [GESTURE:wave] 你好呀！"))
    orch = h.orchestrator

    await orch.submit("你好")
    await orch.wait_idle()

    users = h.store.by_role(Role.USER)
    assert [m.text for m in users] == ["你好"]
    assistant = h.store.by_role(Role.ASSISTANT)
    assert len(assistant) == 1
    assert assistant[0].text == "你好呀！"
    assert assistant[0].raw_text == "[EMOTION:happy] [GESTURE:wave] 你好呀！"

    names = [name for name, _ in h.avatar.calls]
    assert ("set_emotion", "happy") in h.avatar.calls
    assert ("play_motion", "wave") in h.avatar.calls
    assert h.avatar.spoken == ["你好呀！"]
    assert names.index("set_emotion") < names.index("play_motion") < names.index("speak_immediate")

    state = orch.state.value
    assert state.is_loading is False
    assert state.current_stream == ""
    assert state.error is None
    assert orch.current_turn.state is TurnState.DONE

    session_id = orch.session_id
    assert ("你好", "user_input", session_id, None) in h.memory.saves
    assert ("你好呀！", "ai_output", session_id, "happy") in h.memory.saves
    await orch.close()


@pytest.mark.asyncio
async def test_observed_messages_mirror_the_store():
    h = make_harness(llm=ScriptedLLM("[EMOTION:happy] 你好呀！"))
    orch = h.orchestrator
    await orch.start()

    await orch.submit("你好")
    await orch.wait_idle()

    await eventually(lambda: [m.text for m in orch.state.value.messages] == ["你好", "你好呀！"])
    await orch.close()


@pytest.mark.asyncio
async def test_turn_walks_the_full_lifecycle():
    h = make_harness()
    orch = h.orchestrator
    await orch.submit("good morning")
    turn = orch.current_turn
    assert [new for _, new in turn.history] == [
        TurnState.PERSISTED,
        TurnState.RETRIEVING,
        TurnState.GENERATING,
        TurnState.COMPLETING,
        TurnState.DONE,
    ]
    await orch.close()


def test_blank_submit_is_rejected():
    h = make_harness()
    with pytest.raises(ValueError):
        h.orchestrator.submit("   ")


# ============================================================================
# Single current turn
# ============================================================================

@pytest.mark.asyncio
async def test_only_the_newest_turn_has_visible_effects():
    llm = ScriptedLLM("[EMOTION:sad] the stale first reply", "[EMOTION:happy] the second reply")
    gate = llm.hold(0)
    h = make_harness(llm=llm)
    orch = h.orchestrator

    first = orch.submit("hello there")
    first_turn = orch.current_turn
    await eventually(lambda: len(llm.calls) == 1)

    second = orch.submit("how are you")
    await second
    gate.set()
    await first
    await orch.wait_idle()

    assert first_turn.state is TurnState.ABORTED
    assert orch.current_turn.state is TurnState.DONE
    assert [m.text for m in h.store.by_role(Role.ASSISTANT)] == ["the second reply"]
    assert h.avatar.spoken == ["the second reply"]
    assert ("set_emotion", "sad") not in h.avatar.calls
    assert orch.state.value.current_stream == ""
    assert orch.state.value.is_loading is False
    assert orch.state.value.error is None
    await orch.close()


class SlowEmotionAvatar(RecordingAvatar):
    """First set_emotion blocks until released."""

    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()

    async def set_emotion(self, tag):
        first = not any(name == "set_emotion" for name, _ in self.calls)
        await super().set_emotion(tag)
        if first:
            await self.release.wait()


@pytest.mark.asyncio
async def test_stale_turn_stops_between_avatar_calls():
    avatar = SlowEmotionAvatar()
    h = make_harness(
        llm=ScriptedLLM("[EMOTION:sad] [GESTURE:shrug] stale reply", "[EMOTION:happy] fresh reply"),
        avatar=avatar,
    )
    orch = h.orchestrator

    first = orch.submit("hello there")
    first_turn = orch.current_turn
    await eventually(lambda: ("set_emotion", "sad") in avatar.calls)

    await orch.submit("newer message")
    avatar.release.set()
    await first
    await orch.wait_idle()

    assert first_turn.state is TurnState.ABORTED
    assert avatar.spoken == ["fresh reply"]
    assert ("play_motion", "shrug") not in avatar.calls
    assert [m.text for m in h.store.by_role(Role.ASSISTANT)] == ["fresh reply"]
    await orch.close()


class SlowAssistantStore(InMemoryChatStore):
    """First assistant append blocks until released."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.waiting = False
        self.release = asyncio.Event()

    async def append(self, session_id, role, text, **extra):
        if role is Role.ASSISTANT and not self.release.is_set() and not self.waiting:
            self.waiting = True
            await self.release.wait()
        return await super().append(session_id, role, text, **extra)


@pytest.mark.asyncio
async def test_stale_turn_skips_memory_and_anniversaries_after_persist():
    store = SlowAssistantStore()
    h = make_harness(
        llm=ScriptedLLM(
            "[EMOTION:happy] stale [GESTURE:wave] reply [ANNIVERSARY:birthday|Mom|5-1]",
            "[EMOTION:happy] fresh reply",
        ),
        store=store,
    )
    orch = h.orchestrator

    first = orch.submit("first")
    first_turn = orch.current_turn
    await eventually(lambda: store.waiting)

    await orch.submit("second")
    store.release.set()
    await first
    await orch.wait_idle()

    assert first_turn.state is TurnState.ABORTED
    assert h.anniversaries.recorded == []
    saved = [text for text, *_ in h.memory.saves]
    assert "first" not in saved
    assert "stale reply" not in saved
    assert "fresh reply" in saved
    await orch.close()


@pytest.mark.asyncio
async def test_visible_stream_is_throttled():
    h = make_harness(llm=ScriptedLLM(list("abcdefghij")))
    orch = h.orchestrator
    subscription = orch.state.subscribe()

    await orch.submit("stream please")
    await orch.wait_idle()

    observed = []
    while subscription.pending():
        value = subscription.get_nowait().current_stream
        if value and (not observed or observed[-1] != value):
            observed.append(value)
    subscription.close()

    assert observed == ["a", "abcd", "abcdefg", "abcdefghij"]
    await orch.close()


# ============================================================================
# Failures
# ============================================================================

@pytest.mark.asyncio
async def test_blank_reply_surfaces_empty_error_and_persists_nothing():
    h = make_harness(llm=ScriptedLLM(["", "  "]))
    orch = h.orchestrator

    await orch.submit("anyone there?")
    await orch.wait_idle()

    assert h.store.by_role(Role.ASSISTANT) == []
    assert orch.state.value.error == USER_MESSAGES["empty"]
    assert orch.state.value.is_loading is False
    assert orch.current_turn.state is TurnState.ABORTED
    assert h.memory.saves == []
    await orch.close()


@pytest.mark.asyncio
async def test_llm_failure_maps_to_user_message():
    h = make_harness(llm=ScriptedLLM(error=LLMGatewayError("connection refused", kind="network")))
    orch = h.orchestrator

    await orch.submit("hello")
    await orch.wait_idle()

    state = orch.state.value
    assert state.error == USER_MESSAGES["network"]
    assert "refused" not in state.error
    assert state.is_loading is False
    assert h.store.by_role(Role.ASSISTANT) == []
    assert [m.text for m in h.store.by_role(Role.USER)] == ["hello"]
    assert orch.current_turn.state is TurnState.ABORTED

    orch.clear_error()
    assert orch.state.value.error is None
    await orch.close()


@pytest.mark.asyncio
async def test_user_message_persist_failure_does_not_block_the_turn():
    store = InMemoryChatStore(fail_roles={Role.USER})
    h = make_harness(store=store, llm=ScriptedLLM("[EMOTION:happy] still here"))
    await h.orchestrator.submit("hello")
    await h.orchestrator.wait_idle()

    assert [m.text for m in store.by_role(Role.ASSISTANT)] == ["still here"]
    assert h.orchestrator.state.value.error is None
    await h.orchestrator.close()


@pytest.mark.asyncio
async def test_assistant_persist_failure_still_speaks():
    store = InMemoryChatStore(fail_roles={Role.ASSISTANT})
    h = make_harness(store=store, llm=ScriptedLLM("[EMOTION:happy] said anyway"))
    await h.orchestrator.submit("hello")
    await h.orchestrator.wait_idle()

    assert h.avatar.spoken == ["said anyway"]
    assert h.orchestrator.current_turn.state is TurnState.DONE
    assert h.orchestrator.state.value.error is None
    await h.orchestrator.close()


@pytest.mark.asyncio
async def test_memory_save_failure_is_swallowed():
    h = make_harness(memory=FakeMemoryService(fail_save=True))
    await h.orchestrator.submit("remember this")
    await h.orchestrator.wait_idle()

    assert h.orchestrator.current_turn.state is TurnState.DONE
    assert h.orchestrator.state.value.error is None
    await h.orchestrator.close()


# ============================================================================
# Retrieval
# ============================================================================

@pytest.mark.asyncio
async def test_failed_retrieval_builds_same_prompt_as_empty_context():
    reply = "[EMOTION:happy] [GESTURE:nod] Sounds like a good day."
    healthy = make_harness(llm=ScriptedLLM(reply), memory=FakeMemoryService(context=""))
    broken = make_harness(llm=ScriptedLLM(reply), memory=FakeMemoryService(fail_fast=True, fail_full=True))

    for h in (healthy, broken):
        await h.orchestrator.submit("tell me about my day")
        await h.orchestrator.wait_idle()

    healthy_prompt = [m.to_dict() for m in healthy.llm.calls[0][0]]
    broken_prompt = [m.to_dict() for m in broken.llm.calls[0][0]]
    assert healthy_prompt == broken_prompt
    assert healthy.store.by_role(Role.ASSISTANT)[0].text == broken.store.by_role(Role.ASSISTANT)[0].text
    assert broken.orchestrator.state.value.error is None

    await healthy.orchestrator.close()
    await broken.orchestrator.close()


@pytest.mark.asyncio
async def test_degraded_memory_warns_once_per_session_after_enough_history():
    h = make_harness(
        memory=FakeMemoryService(fail_fast=True, fail_full=True),
        retrieval_config=RetrievalConfig(warning_min_history=2),
    )
    orch = h.orchestrator

    await orch.submit("hi")
    await orch.wait_idle()
    assert orch.state.value.warning is None

    await orch.submit("hi again")
    await orch.wait_idle()
    assert orch.state.value.warning == WARNING_MEMORY_DEGRADED

    orch.clear_warning()
    await orch.submit("still there?")
    await orch.wait_idle()
    assert orch.state.value.warning is None
    await orch.close()


@pytest.mark.asyncio
async def test_fast_path_failure_falls_back_to_full_context():
    context = "Relevant memories:\n- [2024-05-01 10:00] They adopted a cat named Miso"
    memory = FakeMemoryService(context=context, fail_fast=True)
    h = make_harness(memory=memory)

    await h.orchestrator.submit("how is my cat?")
    await h.orchestrator.wait_idle()

    assert [kind for kind, _ in memory.requests] == ["fast", "full"]
    messages = h.llm.calls[0][0]
    assert any(m.role == "system" and m.text == context for m in messages)
    await h.orchestrator.close()


@pytest.mark.asyncio
async def test_sequential_retrieval_uses_fetched_history_for_window():
    memory = FakeMemoryService()
    h = make_harness(memory=memory, flags=FeatureFlags(concurrent_retrieval=False))

    await h.orchestrator.submit("hello")
    await h.orchestrator.wait_idle()

    request = memory.requests[0][1]
    assert request.exclude_after == h.store.messages[0].timestamp
    assert h.orchestrator.current_turn.state is TurnState.DONE
    await h.orchestrator.close()


# ============================================================================
# Image generation
# ============================================================================

@pytest.mark.asyncio
async def test_direct_image_request_short_circuits_without_llm():
    h = make_harness()
    orch = h.orchestrator

    await orch.submit("帮我画一张夕阳的图片")
    await orch.wait_idle()

    assert h.llm.calls == []
    pending = orch.state.value.pending_image_gen
    assert pending is not None
    assert pending.prompt == "夕阳"
    assert h.avatar.spoken == [IMAGE_INTENT_ACK]
    assert [m.text for m in h.store.by_role(Role.ASSISTANT)] == [IMAGE_INTENT_ACK]
    assert orch.current_turn.state is TurnState.DONE
    assert orch.state.value.is_loading is False
    await orch.close()


@pytest.mark.asyncio
async def test_confirm_generates_and_persists_picture():
    h = make_harness()
    orch = h.orchestrator
    await orch.submit("帮我画一张夕阳的图片")
    await orch.wait_idle()

    url = await orch.confirm_image_generation()

    assert url == h.image_gen.url
    assert h.image_gen.commands[0].prompt == "夕阳"
    assert orch.state.value.pending_image_gen is None
    last = h.store.messages[-1]
    assert last.role is Role.ASSISTANT
    assert last.text == IMAGE_READY_MESSAGE
    assert last.image_ref == url
    assert h.avatar.spoken[-1] == IMAGE_READY_ACK
    await orch.close()


@pytest.mark.asyncio
async def test_confirm_failure_becomes_warning():
    h = make_harness(image_gen=FakeImageGen(error=ImageGenError("upstream 500")))
    orch = h.orchestrator
    await orch.submit("帮我画一张夕阳的图片")
    await orch.wait_idle()

    assert await orch.confirm_image_generation() is None
    assert orch.state.value.warning == WARNING_IMAGE_GEN_FAILED
    assert orch.state.value.pending_image_gen is None
    await orch.close()


@pytest.mark.asyncio
async def test_cancel_discards_pending_picture():
    h = make_harness()
    orch = h.orchestrator
    await orch.submit("帮我画一张夕阳的图片")
    await orch.wait_idle()

    orch.cancel_image_generation()

    assert orch.state.value.pending_image_gen is None
    assert await orch.confirm_image_generation() is None
    assert h.image_gen.commands == []
    await orch.close()


@pytest.mark.asyncio
async def test_model_image_command_sets_pending_and_speaks_ack():
    h = make_harness(llm=ScriptedLLM("[EMOTION:excited] 好的 [GENERATE_IMAGE: a cat on the moon]"))
    orch = h.orchestrator

    await orch.submit("I wish I could see a cat on the moon")
    await orch.wait_idle()

    assert orch.state.value.pending_image_gen.prompt == "a cat on the moon"
    assert h.avatar.spoken == [IMAGE_COMMAND_ACK]
    assert h.store.by_role(Role.ASSISTANT)[0].text == "好的"
    await orch.close()


# ============================================================================
# Attachments
# ============================================================================

@pytest.mark.asyncio
async def test_image_attachment_uses_vision_route():
    h = make_harness()
    await h.orchestrator.submit_with_image("what's this?", "/photos/cat.png")
    await h.orchestrator.wait_idle()

    messages, route = h.llm.calls[0]
    assert route is RouteHint.VISION
    assert messages[-1].image_urls == ["data:image/png;base64,AAAA"]
    assert h.store.by_role(Role.USER)[0].image_ref == "/photos/cat.png"
    await h.orchestrator.close()


@pytest.mark.asyncio
async def test_unsupported_image_degrades_to_text():
    h = make_harness(image_encoder=FakeImageEncoder(error=UnsupportedAttachment("image/bmp")))
    await h.orchestrator.submit_with_image("look", "/photos/cat.bmp")
    await h.orchestrator.wait_idle()

    messages, route = h.llm.calls[0]
    assert route is RouteHint.TEXT
    assert messages[-1].content == "look"
    assert h.orchestrator.state.value.warning == WARNING_UNSUPPORTED_IMAGE
    assert h.orchestrator.current_turn.state is TurnState.DONE
    await h.orchestrator.close()


@pytest.mark.asyncio
async def test_image_failure_degrades_to_text():
    h = make_harness(image_encoder=FakeImageEncoder(error=AttachmentError("file vanished")))
    await h.orchestrator.submit_with_image("look", "/photos/cat.png")
    await h.orchestrator.wait_idle()

    assert h.llm.calls[0][1] is RouteHint.TEXT
    assert h.orchestrator.state.value.warning == WARNING_IMAGE_DEGRADED
    await h.orchestrator.close()


@pytest.mark.asyncio
async def test_video_frames_follow_frame_instruction():
    extractor = FakeFrameExtractor(frames=3)
    h = make_harness(frame_extractor=extractor)
    await h.orchestrator.submit_with_video("", "/clips/beach.mp4")
    await h.orchestrator.wait_idle()

    messages, route = h.llm.calls[0]
    assert route is RouteHint.VISION
    parts = messages[-1].content
    assert parts[0] == TextPart(frame_instruction(3))
    assert parts[1] == TextPart(DEFAULT_VIDEO_QUESTION)
    assert [p.url for p in parts if isinstance(p, ImagePart)] == [
        "data:image/jpeg;base64,FRAME0",
        "data:image/jpeg;base64,FRAME1",
        "data:image/jpeg;base64,FRAME2",
    ]
    assert extractor.requests == [("/clips/beach.mp4", 6)]
    user = h.store.by_role(Role.USER)[0]
    assert user.text == DEFAULT_VIDEO_QUESTION
    assert user.video_ref == "/clips/beach.mp4"
    await h.orchestrator.close()


# ============================================================================
# Side collaborators
# ============================================================================

@pytest.mark.asyncio
async def test_crisis_message_notifies_and_still_answers():
    h = make_harness(llm=ScriptedLLM("[EMOTION:worried] I'm here with you."))
    await h.orchestrator.submit("I want to die")
    await h.orchestrator.wait_idle()

    assert len(h.notifier.events) == 1
    assert h.notifier.events[0].level is CrisisLevel.HIGH
    assert h.avatar.spoken == ["I'm here with you."]
    await h.orchestrator.close()


@pytest.mark.asyncio
async def test_anniversaries_are_forwarded():
    reply = "[EMOTION:happy] I'll remember! [ANNIVERSARY:birthday|Luke|3-14|1995]"
    h = make_harness(llm=ScriptedLLM(reply))
    await h.orchestrator.submit("my birthday is March 14")
    await h.orchestrator.wait_idle()

    assert len(h.anniversaries.recorded) == 1
    assert (h.anniversaries.recorded[0].month, h.anniversaries.recorded[0].day) == (3, 14)
    assert h.store.by_role(Role.ASSISTANT)[0].text == "I'll remember!"
    await h.orchestrator.close()


@pytest.mark.asyncio
async def test_fast_thinking_falls_back_to_speak():
    h = make_harness(avatar=RecordingAvatar(fail_immediate=True), llm=ScriptedLLM("[EMOTION:happy] hi"))
    await h.orchestrator.submit("hello")
    await h.orchestrator.wait_idle()

    assert ("speak", "hi") in h.avatar.calls
    await h.orchestrator.close()


@pytest.mark.asyncio
async def test_without_fast_thinking_uses_thinking_beat():
    h = make_harness(flags=FeatureFlags(fast_thinking=False), llm=ScriptedLLM("[EMOTION:happy] hi"))
    await h.orchestrator.submit("hello")
    await h.orchestrator.wait_idle()

    assert ("speak", "hi") in h.avatar.calls
    assert not any(name == "speak_immediate" for name, _ in h.avatar.calls)
    await h.orchestrator.close()


# ============================================================================
# Sessions
# ============================================================================

@pytest.mark.asyncio
async def test_new_session_archives_and_switches():
    h = make_harness()
    orch = h.orchestrator
    first = await orch.start()
    await orch.submit("hi")
    await orch.wait_idle()

    second = await orch.start_new_session()

    assert second != first
    assert h.store.sessions[first].archived
    assert orch.state.value.messages == ()

    await orch.submit("hello again")
    await orch.wait_idle()
    assert h.store.messages[-1].session_id == second
    await eventually(lambda: [m.text for m in orch.state.value.messages][:1] == ["hello again"])
    await orch.close()


@pytest.mark.asyncio
async def test_new_session_retires_turn_in_flight():
    llm = ScriptedLLM("[EMOTION:happy] too late")
    gate = llm.hold(0)
    h = make_harness(llm=llm)
    orch = h.orchestrator

    task = orch.submit("hello")
    turn = orch.current_turn
    await eventually(lambda: len(llm.calls) == 1)
    await orch.start_new_session()
    gate.set()
    await task
    await orch.wait_idle()

    assert turn.state is TurnState.ABORTED
    assert h.store.by_role(Role.ASSISTANT) == []
    await orch.close()


# ============================================================================
# Voice input
# ============================================================================

@pytest.mark.asyncio
async def test_voice_final_result_becomes_a_turn():
    h = make_harness(flags=FeatureFlags(hands_free=True))
    orch = h.orchestrator

    assert await orch.start_voice_input()
    assert h.speech.starts == [True]
    assert orch.state.value.voice_input_active

    h.speech.partial.publish("我今天")
    await eventually(lambda: orch.state.value.voice_input_text == "我今天")

    h.speech.final.publish("我今天很开心")
    await eventually(lambda: len(h.llm.calls) == 1)
    await orch.wait_idle()

    assert orch.state.value.voice_input_active is False
    assert h.store.by_role(Role.USER)[0].text == "我今天很开心"
    await orch.close()


@pytest.mark.asyncio
async def test_voice_cancel_discards_input():
    h = make_harness()
    orch = h.orchestrator
    await orch.start_voice_input()
    assert h.speech.starts == [False]

    await orch.cancel_voice_input()

    assert h.speech.cancels == 1
    assert orch.state.value.voice_input_active is False
    assert orch.state.value.voice_input_text == ""
    await asyncio.sleep(0)
    assert h.llm.calls == []
    await orch.close()


@pytest.mark.asyncio
async def test_voice_toggle_stops_when_active():
    h = make_harness()
    orch = h.orchestrator
    await orch.toggle_voice_input()
    assert h.speech.starts == [False]
    await orch.toggle_voice_input()
    assert h.speech.stops == 1
    await orch.close()
