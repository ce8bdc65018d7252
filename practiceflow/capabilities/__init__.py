"""Collaborators the engine delegates side effects to."""

from __future__ import annotations

from typing import Optional

from .base import (
    Capabilities,
    Notifier,
    RecordStore,
    TaskCreator,
    WebhookClient,
)
from .http import HttpxWebhookClient
from .inmemory import InMemoryRecordStore, InMemoryTaskCreator, RecordingNotifier


def in_memory_capabilities(
    webhooks: Optional[WebhookClient] = None,
) -> Capabilities:
    """Bundle of in-process collaborators; webhooks go out over httpx."""
    return Capabilities(
        records=InMemoryRecordStore(),
        notifier=RecordingNotifier(),
        tasks=InMemoryTaskCreator(),
        webhooks=webhooks or HttpxWebhookClient(),
    )


__all__ = [
    "Capabilities",
    "HttpxWebhookClient",
    "InMemoryRecordStore",
    "InMemoryTaskCreator",
    "Notifier",
    "RecordStore",
    "RecordingNotifier",
    "TaskCreator",
    "WebhookClient",
    "in_memory_capabilities",
]
