"""Client for the external knowledge retrieval endpoint."""

import logging
from typing import Optional

import httpx

from knowledge_relay.config import KnowledgeConfig
from knowledge_relay.models import KnowledgeQuery
from knowledge_relay.telemetry import LOGGER_NAME


class KnowledgeError(Exception):
    """Raised when the knowledge store cannot be queried."""


class KnowledgeClient:
    """Queries the knowledge store and returns its response body as context."""

    def __init__(
        self,
        config: KnowledgeConfig,
        logger: Optional[logging.Logger] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self._transport = transport

    async def query(self, text: str, top_k: Optional[int] = None) -> str:
        """Retrieve supporting text for a question.

        Args:
            text: The user's question.
            top_k: Number of passages to request; defaults to the configured value.

        Returns:
            The raw response body. An empty string means no context was found.

        Raises:
            KnowledgeError: On a missing endpoint, transport failure or non-200 status.
        """
        if not self.config.base_url:
            raise KnowledgeError("Knowledge base URL is not configured")

        payload = KnowledgeQuery(
            query=text,
            top_k=top_k if top_k is not None else self.config.top_k,
        )
        headers = {"Content-Type": "application/json; charset=utf-8"}
        if self.config.token:
            headers["Authorization"] = self.config.token

        try:
            async with httpx.AsyncClient(
                timeout=self.config.timeout, transport=self._transport
            ) as client:
                resp = await client.post(
                    self.config.base_url, json=payload.model_dump(), headers=headers
                )
        except httpx.HTTPError as exc:
            raise KnowledgeError("Knowledge request failed: {}".format(exc)) from exc

        if resp.status_code != 200:
            raise KnowledgeError(
                "Knowledge query failed with HTTP {}: {}".format(resp.status_code, resp.text)
            )

        return resp.text
