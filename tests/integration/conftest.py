"""Fixtures for integration tests against a mocked inference server."""

from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Protocol

import aiohttp
import pytest
import yaml
from aioresponses import aioresponses as aioresponses_cls

from aitestbench.executor import HttpTestExecutor


class WriteRecordFn(Protocol):
    """Protocol for catalog record writer."""

    def __call__(self, relative_path: str, record: dict[str, object]) -> Path:
        """Write a YAML record and return its path."""


@pytest.fixture
async def session(
    aioresponses: aioresponses_cls,
) -> AsyncGenerator[aiohttp.ClientSession, None]:
    """Create client session whose requests are answered by aioresponses."""
    async with aiohttp.ClientSession() as client:
        yield client


@pytest.fixture
def executor(session: aiohttp.ClientSession) -> HttpTestExecutor:
    """Create executor with a short default timeout."""
    return HttpTestExecutor(session=session, default_timeout_sec=5.0)


@pytest.fixture
def catalog_root(tmp_path: Path) -> Path:
    """Create empty catalog directory."""
    root = tmp_path / "catalog"
    root.mkdir()
    return root


@pytest.fixture
def write_record(catalog_root: Path) -> WriteRecordFn:
    """Return a function writing YAML records into the catalog."""

    def _write(relative_path: str, record: dict[str, object]) -> Path:
        path = catalog_root / relative_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(record))
        return path

    return _write
