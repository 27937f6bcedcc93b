"""Shared fixtures."""

import pytest

from fakes import FakeRetrieval, FakeTextGeneration

from promptdag.backends import Backends, InMemoryKeyValueStore
from promptdag.config import EngineSettings
from promptdag.engine import Engine
from promptdag.registry import build_default_registry


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(
        _env_file=None,
        cache_enabled=False,
        retry_base_delay_seconds=0,
        concurrency=4,
    )


@pytest.fixture
def text_backend() -> FakeTextGeneration:
    return FakeTextGeneration()


@pytest.fixture
def retrieval_backend() -> FakeRetrieval:
    return FakeRetrieval()


@pytest.fixture
def backends(text_backend: FakeTextGeneration, retrieval_backend: FakeRetrieval) -> Backends:
    return Backends(
        text_generation=text_backend,
        retrieval=retrieval_backend,
        store=InMemoryKeyValueStore(),
    )


@pytest.fixture
def engine(backends: Backends, settings: EngineSettings) -> Engine:
    return Engine(registry=build_default_registry(backends), settings=settings)
