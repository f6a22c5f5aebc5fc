import logging

import pytest

from kindred.instrumentation import StageTimer, log_event
from kindred.models import ChatState, ImageGenCommand, TurnContext, TurnState


def test_happy_path_transitions():
    turn = TurnContext(request_id=1, text="hi")
    for state in (TurnState.PERSISTED, TurnState.RETRIEVING, TurnState.GENERATING, TurnState.COMPLETING, TurnState.DONE):
        turn.advance(state)
    assert turn.finished
    assert turn.history[0] == (TurnState.SUBMITTED, TurnState.PERSISTED)


def test_image_short_circuit_is_allowed():
    turn = TurnContext(request_id=1, text="draw")
    turn.advance(TurnState.PERSISTED)
    turn.advance(TurnState.DONE)
    assert turn.state is TurnState.DONE


@pytest.mark.parametrize("state", [TurnState.SUBMITTED, TurnState.RETRIEVING, TurnState.GENERATING])
def test_abort_from_any_live_state(state):
    turn = TurnContext(request_id=1, text="hi", state=state)
    turn.advance(TurnState.ABORTED)
    assert turn.finished


def test_illegal_transitions_raise():
    turn = TurnContext(request_id=1, text="hi")
    with pytest.raises(RuntimeError):
        turn.advance(TurnState.GENERATING)
    turn.advance(TurnState.ABORTED)
    with pytest.raises(RuntimeError):
        turn.advance(TurnState.ABORTED)


def test_chat_state_serializes():
    state = ChatState(is_loading=True, pending_image_gen=ImageGenCommand(prompt="夕阳"))
    data = state.to_dict()
    assert data["is_loading"] is True
    assert data["pending_image_gen"] == {"prompt": "夕阳", "size": "1920x1920"}
    assert data["messages"] == []


def test_stage_timer_flags_slow_stage(caplog):
    with caplog.at_level(logging.WARNING, logger="kindred.instrumentation"):
        with StageTimer("retrieval", threshold_seconds=-1.0, request_id=7) as timer:
            pass
    assert timer.result().triggered
    assert "retrieval exceeded threshold" in caplog.text


def test_log_event_format(caplog):
    with caplog.at_level(logging.INFO, logger="kindred.instrumentation"):
        log_event("persisted", "turn", 3)
    assert "id=3 stage=turn event=persisted" in caplog.text
