"""Shared fixtures for the grantflow test suite."""

from typing import List

import pytest

from grantflow.config import Settings
from grantflow.events import EventEmitter
from grantflow.memory import (
    InMemoryApplicationRepository,
    InMemoryAttachmentStore,
    RecordingNotificationSink,
)
from grantflow.orchestrator import SubmissionOrchestrator


@pytest.fixture
def settings() -> Settings:
    return Settings(
        ENABLE_NOTIFICATIONS=True,
        STORAGE_TIMEOUT_SECONDS=5.0,
        PERSISTENCE_TIMEOUT_SECONDS=5.0,
        NOTIFICATION_TIMEOUT_SECONDS=5.0,
        SLOT_WORKERS=4,
    )


@pytest.fixture
def repository() -> InMemoryApplicationRepository:
    return InMemoryApplicationRepository()


@pytest.fixture
def store() -> InMemoryAttachmentStore:
    return InMemoryAttachmentStore()


@pytest.fixture
def sink() -> RecordingNotificationSink:
    return RecordingNotificationSink()


@pytest.fixture
def emitter() -> EventEmitter:
    return EventEmitter()


@pytest.fixture
def events(emitter) -> List:
    """Every event the emitter sees, in order."""
    seen: List = []
    emitter.on_any(seen.append)
    return seen


@pytest.fixture
def orchestrator(repository, store, sink, settings, emitter) -> SubmissionOrchestrator:
    return SubmissionOrchestrator(
        repository, store, notification_sink=sink, settings=settings, emitter=emitter
    )
