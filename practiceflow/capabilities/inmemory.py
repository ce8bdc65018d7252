"""In-process collaborators for tests and local runs."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..exceptions import RecordNotFoundError

logger = logging.getLogger(__name__)


class InMemoryRecordStore:
    """Dictionary-backed record store keyed by ``(object_type, record_id)``."""

    def __init__(self) -> None:
        self._records: Dict[Tuple[str, str], Dict[str, Any]] = {}

    def add(self, object_type: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        data = dict(record)
        data.setdefault("id", str(uuid.uuid4()))
        self._records[(str(object_type), str(data["id"]))] = data
        return dict(data)

    async def get_record(
        self, object_type: str, record_id: str
    ) -> Optional[Dict[str, Any]]:
        record = self._records.get((str(object_type), str(record_id)))
        return dict(record) if record is not None else None

    async def update_fields(
        self, object_type: str, record_id: str, fields: Mapping[str, Any]
    ) -> Dict[str, Any]:
        record = self._records.get((str(object_type), str(record_id)))
        if record is None:
            raise RecordNotFoundError(f"{object_type} {record_id} not found")
        record.update(fields)
        return dict(record)

    async def create_record(
        self, object_type: str, data: Mapping[str, Any]
    ) -> Dict[str, Any]:
        return self.add(object_type, data)


class RecordingNotifier:
    """Logs and remembers every notification instead of delivering it.

    Set ``fail_with`` to make every send raise, which is how tests simulate a
    provider outage.
    """

    def __init__(self, fail_with: Optional[Exception] = None) -> None:
        self.fail_with = fail_with
        self.emails: List[Dict[str, Any]] = []
        self.sms: List[Dict[str, Any]] = []
        self.portal_messages: List[Dict[str, Any]] = []

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def send_email(
        self, to: str, template_id: Optional[str], context: Mapping[str, Any]
    ) -> None:
        self._check()
        logger.info(f"Email to {to} using template {template_id}")
        self.emails.append({"to": to, "template_id": template_id, "context": dict(context)})

    async def send_sms(
        self, to: str, template_id: Optional[str], context: Mapping[str, Any]
    ) -> None:
        self._check()
        logger.info(f"SMS to {to} using template {template_id}")
        self.sms.append({"to": to, "template_id": template_id, "context": dict(context)})

    async def send_portal_message(
        self, object_type: str, record_id: str, body: str, context: Mapping[str, Any]
    ) -> None:
        self._check()
        logger.info(f"Portal message for {object_type} {record_id}")
        self.portal_messages.append(
            {"object_type": object_type, "record_id": record_id, "body": body}
        )


class InMemoryTaskCreator:
    def __init__(self) -> None:
        self.tasks: List[Dict[str, Any]] = []

    async def create_task(
        self, object_type: str, record_id: Optional[str], task: Mapping[str, Any]
    ) -> Dict[str, Any]:
        created = {
            "id": str(uuid.uuid4()),
            "object_type": object_type,
            "record_id": record_id,
            **task,
        }
        self.tasks.append(created)
        return created
