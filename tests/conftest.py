from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Awaitable, Callable

import pytest

from clipbatch.db.database import Database
from clipbatch.services.event_bus import EventBus
from clipbatch.services.retry_policy import RetryPolicy
from clipbatch.services.run_controller import RunController
from clipbatch.services.simulated_client import SimulatedGenerationClient
from clipbatch.utils.config import Config


@pytest.fixture
async def db(tmp_path: Path) -> Database:
    database = Database(tmp_path / "test.db")
    await database.initialize()
    yield database  # type: ignore[misc]
    await database.close()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def config() -> Config:
    return Config(anthropic_api_key=None)


@pytest.fixture
def policy() -> RetryPolicy:
    # Millisecond delays so retry paths run instantly.
    return RetryPolicy(
        rate_limit_delay=0.01,
        transient_delay=0.01,
        restart_delay=0.01,
        poll_interval=0.01,
        max_download_attempts=5,
    )


@pytest.fixture
def sim() -> SimulatedGenerationClient:
    return SimulatedGenerationClient()


@pytest.fixture
async def make_controller(tmp_path: Path, sim: SimulatedGenerationClient, policy: RetryPolicy):
    created: list[RunController] = []

    def _make(**kwargs) -> RunController:
        client = kwargs.pop("client", sim)
        output_dir = kwargs.pop("output_dir", tmp_path / "out")
        kwargs.setdefault("policy", policy)
        controller = RunController(client, output_dir, **kwargs)
        created.append(controller)
        return controller

    yield _make
    for controller in created:
        await controller.shutdown()


@pytest.fixture
def eventually() -> Callable[..., Awaitable[None]]:
    async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(0.005)

    return _eventually
