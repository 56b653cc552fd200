from __future__ import annotations

from typing import Any

import httpx

from query_orchestrator.agent.state import SourceDescriptor
from query_orchestrator.core.config import settings
from query_orchestrator.sources.base import ExternalConnector, SourceExecutionError


class HttpConnector(ExternalConnector):
    """
    Generic JSON-over-HTTP connector.

    Source metadata: ``endpoint`` (required), ``query_param`` (default ``q``),
    ``headers`` (optional dict), ``records_key`` (default ``records``).
    """

    def __init__(
        self,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout or settings.external_timeout_seconds
        self._transport = transport

    async def fetch(self, source: SourceDescriptor, query: str) -> list[dict[str, Any]]:
        endpoint = source.metadata.get("endpoint")
        if not endpoint:
            raise SourceExecutionError(f"Source {source.id} has no endpoint")

        params = {source.metadata.get("query_param", "q"): query}
        headers = dict(source.metadata.get("headers") or {})
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.get(endpoint, params=params, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise SourceExecutionError(
                f"{source.name} returned status {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise SourceExecutionError(f"{source.name} request failed: {exc}") from exc

        data = response.json()
        if isinstance(data, dict):
            data = data.get(source.metadata.get("records_key", "records"), data.get("data", []))
        if not isinstance(data, list):
            raise SourceExecutionError(f"{source.name} returned an unexpected payload")
        return [item if isinstance(item, dict) else {"value": item} for item in data]
