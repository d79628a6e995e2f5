"""Prompt correlation: completion, busy rejection, timeouts and metrics."""

from __future__ import annotations

import asyncio
import dataclasses

import pytest

from agentspawn.engine.errors import (
    PromptError,
    PromptTimeoutError,
    SessionBusyError,
)
from agentspawn.engine.events import (
    PromptCompleted,
    PromptData,
    PromptFailed,
    PromptStarted,
    PromptTimedOut,
)
from agentspawn.engine.models import SessionState
from agentspawn.engine.protocol import PlainTextProtocol
from agentspawn.engine.session import Session

from conftest import (
    FakeClock,
    assistant_line,
    echo_responder,
    make_config,
    result_line,
    wait_until,
)


async def _running(tmp_path, engine_config, spawner, **kwargs) -> Session:
    session = Session(
        make_config("alpha", tmp_path),
        engine_config=engine_config,
        spawner=spawner,
        **kwargs,
    )
    await session.start()
    return session


@pytest.mark.asyncio
async def test_prompt_resolves_with_full_response(tmp_path, engine_config, spawner):
    spawner.responder = lambda text: [
        assistant_line("Hello, "), assistant_line("world"), result_line(),
    ]
    session = await _running(tmp_path, engine_config, spawner)
    seen: list[str] = []
    session.events.subscribe(PromptStarted, lambda e: seen.append(f"start:{e.text}"))
    session.events.subscribe(PromptData, lambda e: seen.append(f"data:{e.chunk}"))
    session.events.subscribe(
        PromptCompleted, lambda e: seen.append(f"complete:{e.text}"),
    )

    response = await session.send_prompt("greet me")

    assert response == "Hello, world"
    assert seen == [
        "start:greet me", "data:Hello, ", "data:world", "complete:Hello, world",
    ]
    assert spawner.latest().stdin.prompts() == ["greet me"]
    assert session.last_prompt == "greet me"
    assert session.get_info().prompt_count == 1
    await session.stop()


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["", "   "])
async def test_empty_prompt_is_rejected(tmp_path, engine_config, spawner, text):
    session = await _running(tmp_path, engine_config, spawner)
    with pytest.raises(ValueError):
        await session.send_prompt(text)
    assert spawner.latest().stdin.writes == []
    await session.stop()


@pytest.mark.asyncio
async def test_second_prompt_while_pending_is_busy(tmp_path, engine_config, spawner):
    session = await _running(tmp_path, engine_config, spawner)
    handle = spawner.latest()

    first = asyncio.create_task(session.send_prompt("first"))
    await wait_until(lambda: len(handle.stdin.writes) == 1)

    with pytest.raises(SessionBusyError) as exc_info:
        await session.send_prompt("second")
    assert exc_info.value.code == "SESSION_BUSY"
    assert not first.done()

    handle.emit(assistant_line("one"), result_line())
    assert await first == "one"
    assert handle.stdin.prompts() == ["first"]
    await session.stop()


@pytest.mark.asyncio
async def test_timeout_carries_prompt_and_leaves_process_running(
    tmp_path, engine_config, spawner,
):
    config = dataclasses.replace(engine_config, prompt_timeout_seconds=0.05)
    session = await _running(tmp_path, config, spawner)
    handle = spawner.latest()
    timeouts: list[PromptTimedOut] = []
    failures: list[PromptFailed] = []
    session.events.subscribe(PromptTimedOut, timeouts.append)
    session.events.subscribe(PromptFailed, failures.append)

    with pytest.raises(PromptTimeoutError) as exc_info:
        await session.send_prompt("slow question")

    error = exc_info.value
    assert error.prompt_text == "slow question"
    assert error.timeout_seconds == 0.05
    assert error.session_name == "alpha"
    assert error.code == "PROMPT_TIMEOUT"
    assert session.state == SessionState.RUNNING
    assert handle.returncode is None
    assert handle.signals == []
    assert timeouts[0].prompt_text == "slow question"
    assert failures[0].error is error
    assert not session.is_processing()
    await session.stop()


@pytest.mark.asyncio
async def test_late_output_of_timed_out_prompt_is_discarded(
    tmp_path, engine_config, spawner,
):
    config = dataclasses.replace(engine_config, prompt_timeout_seconds=0.05)
    session = await _running(tmp_path, config, spawner)
    handle = spawner.latest()

    with pytest.raises(PromptTimeoutError):
        await session.send_prompt("slow question")

    handle.emit(assistant_line("late answer"), result_line())
    handle.responder = echo_responder

    assert await session.send_prompt("next") == "echo: next"
    await session.stop()


@pytest.mark.asyncio
async def test_process_exit_fails_pending_prompt(tmp_path, engine_config, spawner):
    session = await _running(tmp_path, engine_config, spawner)
    handle = spawner.latest()

    pending = asyncio.create_task(session.send_prompt("doomed"))
    await wait_until(lambda: len(handle.stdin.writes) == 1)
    handle.emit(assistant_line("partial"))
    handle.exit(1)

    with pytest.raises(PromptError) as exc_info:
        await pending
    assert exc_info.value.code == "PROMPT_FAILED"
    assert session.state == SessionState.CRASHED


@pytest.mark.asyncio
async def test_broken_stdin_fails_prompt(tmp_path, engine_config, spawner):
    session = await _running(tmp_path, engine_config, spawner)
    spawner.latest().stdin.broken = True

    with pytest.raises(PromptError):
        await session.send_prompt("hello")
    assert not session.is_processing()
    await session.stop()


@pytest.mark.asyncio
async def test_metrics_average_response_time(tmp_path, engine_config, spawner):
    clock = FakeClock()
    session = await _running(tmp_path, engine_config, spawner, clock=clock)
    handle = spawner.latest()

    for seconds, reply in ((1.0, "a" * 10), (2.0, "b" * 20), (3.0, "c" * 30)):
        task = asyncio.create_task(session.send_prompt("go"))
        await wait_until(session.is_processing)
        clock.advance(seconds)
        handle.emit(assistant_line(reply), result_line())
        assert await task == reply

    metrics = session.get_metrics()
    assert metrics.prompt_count == 3
    assert metrics.avg_response_time_ms == pytest.approx(2000.0)
    assert metrics.total_response_chars == 60
    assert metrics.estimated_tokens == 15
    await session.stop()


@pytest.mark.asyncio
async def test_metrics_before_any_prompt(tmp_path, engine_config, spawner):
    session = await _running(tmp_path, engine_config, spawner)
    metrics = session.get_metrics()
    assert metrics.prompt_count == 0
    assert metrics.avg_response_time_ms == 0.0
    assert metrics.estimated_tokens == 0
    await session.stop()


@pytest.mark.asyncio
async def test_idle_period_completes_plain_text_response(
    tmp_path, engine_config, spawner,
):
    config = dataclasses.replace(engine_config, idle_timeout_seconds=0.05)
    session = await _running(
        tmp_path, config, spawner, protocol=PlainTextProtocol(),
    )
    handle = spawner.latest()

    task = asyncio.create_task(session.send_prompt("hi"))
    await wait_until(lambda: handle.stdin.writes != [])
    assert handle.stdin.writes == [b"hi\n"]
    handle.emit("line one\n", "line two\n")

    assert await task == "line one\nline two\n"
    await session.stop()


@pytest.mark.asyncio
async def test_oversized_line_fails_prompt_and_reading_continues(
    tmp_path, engine_config, spawner,
):
    spawner.stream_limit = 256
    session = await _running(tmp_path, engine_config, spawner)
    handle = spawner.latest()
    failures: list[PromptFailed] = []
    session.events.subscribe(PromptFailed, failures.append)

    pending = asyncio.create_task(session.send_prompt("big"))
    await wait_until(lambda: len(handle.stdin.writes) == 1)
    handle.emit(assistant_line("x" * 1000), result_line())

    with pytest.raises(PromptError) as exc_info:
        await pending
    assert "stream limit" in str(exc_info.value)
    assert len(failures) == 1
    assert session.state == SessionState.RUNNING

    # The tail of the failed response is not attributed to the next prompt.
    handle.responder = echo_responder
    assert await session.send_prompt("small") == "echo: small"
    await session.stop()
