"""
Shared fixtures for the code-link test suite.
"""

import asyncio
import socket

import pytest

PROJECT_ID = "a1b2c3d4e5f60718293a4b5c6d7e8f90"


@pytest.fixture
def project_id():
    return PROJECT_ID


@pytest.fixture
def free_port():
    """A TCP port that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def wait_until():
    """Poll a predicate until it holds or the timeout passes."""
    async def _wait_until(predicate, timeout: float = 3.0, interval: float = 0.02) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if predicate():
                return True
            await asyncio.sleep(interval)
        return predicate()

    return _wait_until
