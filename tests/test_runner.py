"""Unit tests for repeated probing of one address (ping_exporter.runner); scripted sessions."""
from unittest.mock import AsyncMock, patch

import pytest

from ping_exporter.runner import ProbeRunner
from ping_exporter.session import ProbeOutcome, SessionState

TIMEOUT = ProbeOutcome(SessionState.TIMED_OUT, None, "TIMEOUT")
UNREACHABLE = ProbeOutcome(SessionState.UNREACHABLE, None, "UNREACHABLE")
FAILED = ProbeOutcome(SessionState.FAILED, None, "ERROR:OSError")


def reply(rtt_ms, reason="OK"):
    return ProbeOutcome(SessionState.REPLIED, rtt_ms, reason)


class ScriptedSessions:
    """Session factory handing out one scripted outcome per session."""

    def __init__(self, outcomes, on_send=None):
        self.outcomes = list(outcomes)
        self.calls = []
        self.on_send = on_send

    def __call__(self):
        return self

    def send(self, address, identifier, ttl, timeout):
        self.calls.append((address, identifier, ttl, timeout))
        if self.on_send:
            self.on_send()
        return self.outcomes.pop(0)


def make_runner(outcomes, round_count=None, **kwargs):
    sessions = ScriptedSessions(outcomes)
    runner = ProbeRunner(
        round_count=round_count or len(outcomes),
        round_delay=0,
        session_factory=sessions,
        **kwargs,
    )
    return runner, sessions


@pytest.mark.asyncio
async def test_all_rounds_succeed():
    runner, _ = make_runner([reply(1.0), reply(2.0), reply(3.0)])
    stat = await runner.run("127.0.0.1")
    assert (stat.sent, stat.received, stat.loss_percent) == (3, 3, 0)
    assert stat.min_delay_ms == 1.0
    assert stat.avg_delay_ms == pytest.approx(2.0)
    assert stat.max_delay_ms == 3.0


@pytest.mark.asyncio
async def test_all_rounds_time_out():
    runner, _ = make_runner([TIMEOUT] * 5)
    stat = await runner.run("10.255.255.1")
    assert (stat.sent, stat.received, stat.loss_percent) == (5, 0, 100)
    assert (stat.min_delay_ms, stat.avg_delay_ms, stat.max_delay_ms) == (0.0, 0.0, 0.0)


@pytest.mark.asyncio
async def test_unreachable_and_failure_are_loss_time_exceeded_is_reply():
    runner, _ = make_runner([UNREACHABLE, FAILED, reply(8.0, "TIME_EXCEEDED"), reply(4.0)])
    stat = await runner.run("10.0.0.1")
    assert (stat.sent, stat.received, stat.lost, stat.loss_percent) == (4, 2, 2, 50)
    # average over successful rounds only
    assert stat.avg_delay_ms == pytest.approx(6.0)


@pytest.mark.asyncio
async def test_sequence_numbers_and_parameters():
    runner, sessions = make_runner([reply(1.0)] * 3, round_timeout=1.5, ttl=64)
    await runner.run("192.0.2.1")
    assert [c[1].sequence for c in sessions.calls] == [0, 1, 2]
    assert all(c[0] == "192.0.2.1" and c[2] == 64 and c[3] == 1.5 for c in sessions.calls)


@pytest.mark.asyncio
async def test_loss_is_cumulative_between_rounds():
    seen = []
    sessions = ScriptedSessions([TIMEOUT, reply(1.0), reply(1.0), TIMEOUT])
    runner = ProbeRunner(round_count=4, round_delay=0, session_factory=sessions)
    sessions.on_send = lambda: seen.append(runner.current.loss_percent)
    stat = await runner.run("10.0.0.1")
    assert seen == [0, 100, 50, 33]
    assert stat.loss_percent == 50


@pytest.mark.asyncio
async def test_pacing_between_rounds_only():
    sessions = ScriptedSessions([reply(1.0)] * 3)
    runner = ProbeRunner(round_count=3, round_delay=0.8, session_factory=sessions)
    with patch("ping_exporter.runner.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        await runner.run("10.0.0.1")
    assert mock_sleep.await_count == 2
    mock_sleep.assert_awaited_with(0.8)


def test_current_before_run_is_empty():
    assert ProbeRunner().current.sent == 0


def test_round_count_floor():
    assert ProbeRunner(round_count=0).round_count == 1
