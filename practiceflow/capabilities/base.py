"""Collaborator interfaces the engine calls out to."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol


class RecordStore(Protocol):
    """Read and write domain records (leads, invoices, ...)."""

    async def get_record(
        self, object_type: str, record_id: str
    ) -> Optional[Dict[str, Any]]:
        """Return a snapshot of the record or ``None``."""

    async def update_fields(
        self, object_type: str, record_id: str, fields: Mapping[str, Any]
    ) -> Dict[str, Any]:
        """Apply ``fields`` and return the updated record."""

    async def create_record(
        self, object_type: str, data: Mapping[str, Any]
    ) -> Dict[str, Any]:
        """Create a record and return it including its ``id``."""


class Notifier(Protocol):
    """Outbound notifications. Delivery is best-effort."""

    async def send_email(
        self, to: str, template_id: Optional[str], context: Mapping[str, Any]
    ) -> None: ...

    async def send_sms(
        self, to: str, template_id: Optional[str], context: Mapping[str, Any]
    ) -> None: ...

    async def send_portal_message(
        self, object_type: str, record_id: str, body: str, context: Mapping[str, Any]
    ) -> None: ...


class TaskCreator(Protocol):
    async def create_task(
        self, object_type: str, record_id: Optional[str], task: Mapping[str, Any]
    ) -> Dict[str, Any]:
        """Create a task linked to the record and return it."""


class WebhookClient(Protocol):
    async def send(
        self,
        url: str,
        payload: Any,
        method: str = "POST",
        headers: Optional[Mapping[str, str]] = None,
    ) -> int:
        """Deliver ``payload`` and return the HTTP status code."""


@dataclass
class Capabilities:
    """Bundle of collaborators handed to the engine at construction."""

    records: RecordStore
    notifier: Notifier
    tasks: TaskCreator
    webhooks: WebhookClient
