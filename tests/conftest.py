"""Shared fixtures for the orchestration tests."""

import pytest

from tests.fakes import Harness, ScriptedAdapter, SleepRecorder, build_manager
from voicedesc.core.storage import InMemoryBlobStore
from voicedesc.infra.runtime.manager import JobManager
from voicedesc.infra.telemetry.metrics import MetricsCollector


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def blob_store() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def adapter(blob_store: InMemoryBlobStore) -> ScriptedAdapter:
    return ScriptedAdapter(blob_store=blob_store)


@pytest.fixture
def harness(adapter: ScriptedAdapter, blob_store: InMemoryBlobStore) -> Harness:
    return Harness(adapter, blob_store=blob_store)


@pytest.fixture
def manager(adapter: ScriptedAdapter, blob_store: InMemoryBlobStore) -> JobManager:
    return build_manager(adapter, blob_store)
