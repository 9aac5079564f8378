"""Shared fixtures built on the fake clock and scripted channel."""

import pytest

from board_flasher.exchange_log import ExchangeLog
from board_flasher.protocol.base import LinkIO

from simulators import FakeClock, ScriptedChannel


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_link(clock):
    """Build (channel, link) around a simulator."""

    def _make(device):
        channel = ScriptedChannel(device, clock)
        log = ExchangeLog(clock=clock.time)
        return channel, LinkIO(channel, log, clock=clock.time, sleep=clock.sleep)

    return _make


@pytest.fixture
def make_channel(clock):
    def _make(device):
        return ScriptedChannel(device, clock)

    return _make
