from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

import httpx

from ..constants import DEFAULT_WEBHOOK_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


class HttpxWebhookClient:
    """Webhook delivery over ``httpx.AsyncClient``.

    Network errors propagate to the caller. A ``client`` can be injected,
    which is how tests plug in ``httpx.MockTransport``.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_WEBHOOK_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.timeout = timeout
        self._client = client

    async def send(
        self,
        url: str,
        payload: Any,
        method: str = "POST",
        headers: Optional[Mapping[str, str]] = None,
    ) -> int:
        request_headers = {"Content-Type": "application/json", **(headers or {})}
        kwargs: dict[str, Any] = {"headers": request_headers}
        if method.upper() == "GET":
            kwargs["params"] = payload if isinstance(payload, Mapping) else None
        else:
            kwargs["json"] = payload

        if self._client is not None:
            response = await self._client.request(method.upper(), url, **kwargs)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method.upper(), url, **kwargs)
        logger.debug(f"Webhook {method.upper()} {url} -> {response.status_code}")
        return response.status_code
