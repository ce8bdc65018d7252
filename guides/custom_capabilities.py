"""Capabilities factory for the CLI.

Point the config at it so CLI commands deliver email through your own
notifier:

    capabilities:
      factory: guides.custom_capabilities:build

and run the CLI from the repository root with ``PYTHONPATH=.``.
"""

import logging

from practiceflow.capabilities import (
    Capabilities,
    HttpxWebhookClient,
    InMemoryRecordStore,
    InMemoryTaskCreator,
)

logger = logging.getLogger(__name__)


class ConsoleNotifier:
    """Prints notifications instead of sending them."""

    async def send_email(self, to, template_id, context):
        print(f"[email] to={to} template={template_id} subject={context.get('subject')}")

    async def send_sms(self, to, template_id, context):
        print(f"[sms] to={to} template={template_id}")

    async def send_portal_message(self, object_type, record_id, body, context):
        print(f"[portal] {object_type}/{record_id}: {body}")


def build() -> Capabilities:
    logger.info("Using console notifier")
    return Capabilities(
        records=InMemoryRecordStore(),
        notifier=ConsoleNotifier(),
        tasks=InMemoryTaskCreator(),
        webhooks=HttpxWebhookClient(timeout=5.0),
    )
