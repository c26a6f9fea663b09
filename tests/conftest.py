"""
Test configuration and fixtures for the FlowScript test suite.
"""
import asyncio
import sys
from pathlib import Path
from typing import Dict, List

import pytest

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

from flowscript.config import EngineConfig
from flowscript.engine import Engine
from flowscript.registry import StepHandlerRegistry
from flowscript.runtime import compile_source


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class Recorder:
    """Builds async step handlers that log every invocation in start order."""

    def __init__(self):
        self.calls: List[str] = []
        self.cancelled: List[str] = []
        self.inputs: Dict[str, list] = {}
        self.times: Dict[str, list] = {}
        self.registry = StepHandlerRegistry()

    def step(self, name, value=None, delay=0.0, fail_times=0, fail_always=False):
        state = {"n": 0}

        async def handler(ctx):
            state["n"] += 1
            self.calls.append(name)
            self.inputs.setdefault(name, []).append(ctx.input)
            loop = asyncio.get_running_loop()
            started = loop.time()
            try:
                if delay:
                    await asyncio.sleep(delay)
            except asyncio.CancelledError:
                self.cancelled.append(name)
                raise
            self.times.setdefault(name, []).append((started, loop.time()))
            if fail_always or state["n"] <= fail_times:
                raise RuntimeError(f"{name} failed")
            return name if value is None else value

        self.registry.register_step(name, handler)
        return self

    def steps(self, *names):
        for name in names:
            self.step(name)
        return self

    def predicate(self, name, result):
        async def check(ctx):
            return result
        self.registry.register_predicate(name, check)
        return self


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def delays() -> List[float]:
    """Delays requested from the engine's (fake) sleep, in order."""
    return []


@pytest.fixture
def engine(delays):
    async def fake_sleep(seconds):
        delays.append(seconds)
        await asyncio.sleep(0)

    eng = Engine(EngineConfig(max_workers=4), sleep=fake_sleep)
    yield eng
    eng.close()


@pytest.fixture
def real_engine():
    eng = Engine(EngineConfig(max_workers=4))
    yield eng
    eng.close()


@pytest.fixture
def run(engine, recorder):
    """Compile ``source`` and run ``entry`` (default: first flow) with the recorder's handlers."""
    def _run(source, entry=None, ctx=None, eng=None):
        program = compile_source(source)
        return (eng or engine).run(program, entry or program.names[0], recorder.registry, ctx)
    return _run
