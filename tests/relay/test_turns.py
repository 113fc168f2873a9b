import random

import pytest

from backend.relay.errors import ProtocolError
from backend.relay.turns import Phase, Role, Turn, TurnController


def user(text):
    return Turn(role=Role.USER, content=text)


def started(opening=None):
    tc = TurnController()
    tc.start(opening)
    return tc


def test_start_moves_idle_to_listening():
    tc = TurnController()
    assert tc.phase == Phase.IDLE
    tc.start()
    assert tc.phase == Phase.LISTENING
    assert tc.context == []


def test_start_twice_is_protocol_error():
    tc = started()
    with pytest.raises(ProtocolError):
        tc.start()
    assert tc.phase == Phase.LISTENING


def test_user_turn_before_start_is_rejected():
    tc = TurnController()
    with pytest.raises(ProtocolError):
        tc.user_turn(user("hello"))
    with pytest.raises(ProtocolError):
        tc.interrupt()
    assert tc.phase == Phase.IDLE
    assert tc.context == []


def test_user_turn_transitions_on_dispatch():
    tc = started()
    d = tc.user_turn(user("price?"))
    assert tc.phase == Phase.SPEAKING
    assert d.version == tc.version
    assert d.context == ()
    assert d.turn.content == "price?"
    assert not d.interrupted
    assert [t.content for t in tc.context] == ["price?"]


def test_second_user_turn_interrupts_and_redispatches():
    tc = started()
    first = tc.user_turn(user("A"))
    second = tc.user_turn(user("B"))
    assert second.interrupted
    assert tc.pending_interrupt
    assert tc.phase == Phase.SPEAKING
    assert second.version > first.version
    assert [t.content for t in second.context] == ["A"]
    # the reply for A is stale now
    assert tc.accept_reply(first.version, "late", 10.0) is None
    reply = tc.accept_reply(second.version, "for B", 10.0)
    assert reply.role == Role.ASSISTANT
    assert reply.latency_ms == 10.0
    tc.acknowledge_interrupt()
    assert not tc.pending_interrupt


def test_reply_accepted_once():
    tc = started()
    d = tc.user_turn(user("A"))
    assert tc.accept_reply(d.version, "one", 1.0) is not None
    assert tc.accept_reply(d.version, "two", 1.0) is None
    assert len(tc.context) == 2


def test_finish_speaking_requires_delivered_reply():
    tc = started()
    d = tc.user_turn(user("A"))
    assert tc.finish_speaking() is False
    assert tc.phase == Phase.SPEAKING
    tc.accept_reply(d.version, "ok", 1.0)
    assert tc.finish_speaking(d.version - 1) is False
    assert tc.finish_speaking(d.version) is True
    assert tc.phase == Phase.LISTENING
    assert tc.finish_speaking() is False


def test_explicit_interrupt_returns_to_listening():
    tc = started()
    d = tc.user_turn(user("A"))
    assert tc.interrupt() is True
    assert tc.phase == Phase.LISTENING
    assert tc.accept_reply(d.version, "late", 1.0) is None
    assert tc.interrupt() is False
    assert tc.phase == Phase.LISTENING


def test_provider_failure_returns_to_listening():
    tc = started()
    d = tc.user_turn(user("A"))
    assert tc.fail(d.version) is True
    assert tc.phase == Phase.LISTENING
    # stale failure leaves a newer turn alone
    d2 = tc.user_turn(user("B"))
    assert tc.fail(d.version) is False
    assert tc.phase == Phase.SPEAKING
    assert tc.is_current(d2.version)


def test_end_clears_context_and_is_terminal():
    tc = started()
    d = tc.user_turn(user("A"))
    tc.end()
    assert tc.phase == Phase.ENDED
    assert tc.context == []
    assert tc.accept_reply(d.version, "late", 1.0) is None
    with pytest.raises(ProtocolError):
        tc.end()
    with pytest.raises(ProtocolError):
        tc.start()
    with pytest.raises(ProtocolError):
        tc.user_turn(user("B"))
    assert tc.phase == Phase.ENDED


def test_end_from_idle():
    tc = TurnController()
    tc.end()
    assert tc.phase == Phase.ENDED


@pytest.mark.parametrize("opening,extra", [(None, 0), ("Hello! How can I help?", 1)])
def test_context_length_without_interruptions(opening, extra):
    tc = started(opening)
    n = 5
    for i in range(n):
        d = tc.user_turn(user(f"q{i}"))
        tc.accept_reply(d.version, f"a{i}", 1.0)
        assert tc.finish_speaking()
    assert len(tc.context) == 2 * n + extra
    roles = [t.role for t in tc.context[extra:]]
    assert roles == [Role.USER, Role.ASSISTANT] * n


def test_random_event_sequences_keep_one_phase_and_can_end():
    rng = random.Random(1234)
    for _ in range(200):
        tc = TurnController()
        outstanding = []
        for _ in range(rng.randint(1, 25)):
            action = rng.choice(["start", "turn", "interrupt", "reply", "fail", "finish", "end"])
            try:
                if action == "start":
                    tc.start()
                elif action == "turn":
                    outstanding.append(tc.user_turn(user("x")).version)
                elif action == "interrupt":
                    tc.interrupt()
                elif action == "reply" and outstanding:
                    tc.accept_reply(rng.choice(outstanding), "y", 1.0)
                elif action == "fail" and outstanding:
                    tc.fail(rng.choice(outstanding))
                elif action == "finish":
                    tc.finish_speaking()
                elif action == "end":
                    tc.end()
            except ProtocolError:
                pass
            assert isinstance(tc.phase, Phase)
            if tc.reply_delivered:
                assert tc.phase == Phase.SPEAKING
        if tc.phase != Phase.ENDED:
            tc.end()
        assert tc.phase == Phase.ENDED
