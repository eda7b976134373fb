"""Shared fixtures: a controllable clock so tests never really sleep."""

import asyncio

import pytest


class FakeClock:
    """Clock whose time only moves when a test (or a sleep) advances it."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        # Still yield so other tasks get to run
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()
