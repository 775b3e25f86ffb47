"""Shared fixtures for the setup wizard tests."""

import pytest
from dataknobs_common.events import InMemoryEventBus

from verly_setup.api import InMemorySetupBackend
from verly_setup.cache import MemoryStorage, SetupCache
from verly_setup.config import PollingConfig, ProgressConfig, SetupConfig
from verly_setup.events import UI_TOPIC, EventRecorder, UiEmitter
from verly_setup.progress import ProgressStage


FAST_TIMELINE = (
    ProgressStage("crawl", 0.0),
    ProgressStage("logo", 0.02),
    ProgressStage("topics", 0.04),
    ProgressStage("tuning", 0.06),
)


@pytest.fixture
def backend():
    """Fresh in-memory backend."""
    return InMemorySetupBackend()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def cache(storage):
    return SetupCache(storage)


@pytest.fixture
async def bus():
    bus = InMemoryEventBus()
    await bus.connect()
    yield bus
    await bus.close()


@pytest.fixture
async def recorder(bus):
    """Records every UI event published on the bus."""
    recorder = EventRecorder()
    await bus.subscribe(UI_TOPIC, recorder)
    return recorder


@pytest.fixture
def emitter(bus):
    return UiEmitter(bus)


@pytest.fixture
def config():
    """Configuration with short timers."""
    return SetupConfig(
        backend="memory",
        polling=PollingConfig(interval=0.01),
        progress=ProgressConfig(timeline=FAST_TIMELINE),
        processing_timeout=5.0,
    )
