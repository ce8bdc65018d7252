from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from practiceflow.capabilities import (
    Capabilities,
    InMemoryRecordStore,
    InMemoryTaskCreator,
    RecordingNotifier,
)
from practiceflow.engine import WorkflowEngine
from practiceflow.persistence import InMemoryWorkflowRepository
from practiceflow.scheduler import ResumeScheduler
from practiceflow.triggers import TriggerDispatcher


class FakeClock:
    """Settable clock handed to the engine in place of ``utcnow``."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class RecordingWebhookClient:
    def __init__(self, status_code: int = 200, error: Exception | None = None) -> None:
        self.status_code = status_code
        self.error = error
        self.calls: list[dict] = []

    async def send(self, url, payload, method="POST", headers=None) -> int:
        self.calls.append(
            {"url": url, "payload": payload, "method": method, "headers": headers}
        )
        if self.error is not None:
            raise self.error
        return self.status_code


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repository() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def webhooks() -> RecordingWebhookClient:
    return RecordingWebhookClient()


@pytest.fixture
def capabilities(webhooks) -> Capabilities:
    return Capabilities(
        records=InMemoryRecordStore(),
        notifier=RecordingNotifier(),
        tasks=InMemoryTaskCreator(),
        webhooks=webhooks,
    )


@pytest.fixture
def engine(repository, capabilities, clock) -> WorkflowEngine:
    return WorkflowEngine(
        repository=repository, capabilities=capabilities, max_steps=100, clock=clock
    )


@pytest.fixture
def dispatcher(engine) -> TriggerDispatcher:
    return TriggerDispatcher(engine)


@pytest.fixture
def scheduler(engine) -> ResumeScheduler:
    return ResumeScheduler(engine)
