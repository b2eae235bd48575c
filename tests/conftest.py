import asyncio
import os
import sys

import pytest

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import harvest_tui as ht


ALPHA = ht.Project(1, "Alpha")
BETA = ht.Project(2, "Beta")
BUILD = ht.Task(10, "Build")
REVIEW = ht.Task(11, "Review")


@pytest.fixture
def service():
    """In-memory service seeded with recent entries, newest first."""
    return ht.InMemoryTimeTracking([
        (ALPHA, BUILD),
        (BETA, REVIEW),
        (ALPHA, REVIEW),
        (ALPHA, BUILD),
    ])


@pytest.fixture
def engine():
    return ht.InteractionEngine()


@pytest.fixture
def drive(engine, service):
    """Run an operation against the service and feed its result back."""
    def _drive(op):
        assert op is not None, "expected the transition to issue an operation"
        return engine.handle(op.run(service))
    return _drive


@pytest.fixture
def details(engine, drive):
    """Engine positioned on EnteringDetails for Alpha / Build."""
    drive(engine.start())
    drive(engine.handle(ht.Key(ht.SELECT, index=0)))
    engine.handle(ht.Key(ht.SELECT, index=0))
    assert isinstance(engine.state, ht.EnteringDetails)
    return engine


def type_text(engine, text):
    for ch in text:
        engine.handle(ht.Key(ht.INSERT, text=ch))


async def wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.01)
