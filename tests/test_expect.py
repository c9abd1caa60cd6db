import threading

import pytest

from cmon51dbg.expect import Expectation, ExpectEngine, ExpectKind, ExpectTimeoutError, MatcherQueue
from cmon51dbg.transport import TransportError


TIMEOUT = 2.0


def test_single_expectations_resolve_in_order():
    matcher = MatcherQueue()
    first = Expectation.single(r"one")
    second = Expectation.single(r"two")
    matcher.register([first, second])
    matcher.feed_line("two\r")
    # Only the head looks at a line, so "two" is not claimed early.
    assert not first.future.done()
    assert not second.future.done()
    matcher.feed_line("one\r")
    matcher.feed_line("two\r")
    assert first.future.result(0).group(0) == "one"
    assert second.future.result(0).group(0) == "two"
    assert not matcher.expectations


def test_backlog_is_drained_on_register():
    matcher = MatcherQueue()
    for line in ("noise\r", "A =00\r", "> "):
        matcher.feed_line(line)
    assert list(matcher.backlog) == ["noise\r", "A =00\r", "> "]
    status = Expectation.single(r"A =")
    prompt = Expectation.single(matcher.prompt)
    matcher.register([status, prompt])
    assert status.future.done()
    assert prompt.future.done()
    assert not matcher.backlog


def test_backlog_lines_after_resolution_stay_queued():
    matcher = MatcherQueue()
    matcher.feed_line("> ")
    matcher.feed_line("later\r")
    prompt = Expectation.single(r"> ")
    matcher.register([prompt])
    assert prompt.future.done()
    assert list(matcher.backlog) == ["later\r"]


@pytest.mark.parametrize("count", [0, 1, 3])
def test_multi_collects_until_prompt(count):
    matcher = MatcherQueue()
    collect = Expectation.until_prompt(r"(?P<address>[0-9A-F]{4})")
    matcher.register([collect])
    matcher.feed_line("brl\r")
    for index in range(count):
        matcher.feed_line(f"{index:04X}\r")
    matcher.feed_line("other text\r")
    assert not collect.future.done()
    matcher.feed_line("> ")
    matches = collect.future.result(0)
    assert [m.group("address") for m in matches] == [f"{index:04X}" for index in range(count)]
    assert collect.echo == "brl\r"
    assert collect.kind is ExpectKind.MULTI


def test_multi_without_echo_still_sees_first_line():
    matcher = MatcherQueue()
    collect = Expectation.until_prompt(r"\d+")
    matcher.register([collect])
    matcher.feed_line("no terminator 42")
    matcher.feed_line("> ")
    assert [m.group(0) for m in collect.future.result(0)] == ["42"]
    assert collect.echo is None


def test_abort_fails_pending_and_clears_backlog():
    matcher = MatcherQueue()
    matcher.feed_line("stale\r")
    pending = Expectation.single(r"never")
    matcher.register([pending])
    matcher.feed_line("unrelated\r")
    assert matcher.abort(TransportError("gone")) == 1
    with pytest.raises(TransportError):
        pending.future.result(0)
    assert not matcher.backlog


def test_engine_matches_chunked_output():
    engine = ExpectEngine(timeout=TIMEOUT)
    engine.start()
    try:
        engine.feed("CMON51\r\n> ")
        engine.feed("r\r\nA =00\x1b[2CB =")
        engine.feed("11\r\n> ")
        status, prompt = engine.await_sequence([r"A =(?P<a>\w+)\s+B =(?P<b>\w+)", engine.matcher.prompt])
        assert status.group("b") == "11"
        assert prompt.group(0) == "> "
    finally:
        engine.close()


def test_engine_registration_from_another_thread():
    engine = ExpectEngine(timeout=TIMEOUT)
    engine.start()
    results = []

    def waiter():
        results.append(engine.await_until_prompt(r"(?P<address>[0-9A-F]{4}):"))

    try:
        thread = threading.Thread(target=waiter)
        thread.start()
        # Output arriving before or after registration is matched the same way.
        engine.feed("u 8000 2\r\n8000: ljmp 8003\r\n8003: nop\r\n> ")
        thread.join(TIMEOUT)
        assert [m.group("address") for m in results[0]] == ["8000", "8003"]
    finally:
        engine.close()


def test_engine_timeout():
    engine = ExpectEngine()
    engine.start()
    try:
        with pytest.raises(ExpectTimeoutError):
            engine.await_sequence([r"never"], timeout=0.05)
    finally:
        engine.close()


def test_engine_abort_wakes_waiters():
    engine = ExpectEngine(timeout=TIMEOUT)
    engine.start()
    try:
        (future,) = engine.expect([Expectation.single(r"never")])
        engine.abort(TransportError("monitor exited"))
        with pytest.raises(TransportError, match="monitor exited"):
            future.result(TIMEOUT)
    finally:
        engine.close()


def test_engine_close_rejects_new_expectations():
    engine = ExpectEngine()
    engine.start()
    (future,) = engine.expect([Expectation.single(r"never")])
    engine.close()
    with pytest.raises(TransportError):
        future.result(TIMEOUT)
    assert not engine.running
    with pytest.raises(TransportError):
        engine.expect([Expectation.single(r"x")])


def test_expect_racing_close_never_strands_a_caller():
    for _ in range(50):
        engine = ExpectEngine()
        engine.start()
        closer = threading.Thread(target=engine.close)
        closer.start()
        try:
            (future,) = engine.expect([Expectation.single(r"never")])
        except TransportError:
            pass
        else:
            # Registered before the close, so the close must fail it.
            with pytest.raises(TransportError):
                future.result(TIMEOUT)
        closer.join(TIMEOUT)


def test_feed_and_abort_after_close_are_ignored():
    engine = ExpectEngine()
    engine.start()
    engine.close()
    engine.feed("late output\r\n")
    engine.abort(TransportError("late"))
    assert not engine.matcher.backlog
    assert engine._channel.empty()
