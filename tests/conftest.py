from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import pytest

from hassrelay.config import RelayConfig


@pytest.fixture
def config() -> RelayConfig:
    return RelayConfig(hass_token="test-token", listen="127.0.0.1:0", workers=4)


@pytest.fixture
def eventually() -> Callable[[Callable[[], bool]], Awaitable[None]]:
    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        async with asyncio.timeout(timeout):
            while not predicate():
                await asyncio.sleep(0.005)

    return _wait
