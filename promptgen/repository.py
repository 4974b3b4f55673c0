"""Prompt repositories — where finished prompt records are handed off.

InMemory is used in development and tests; Http posts the record to an
external prompt store in production (see ``promptgen.services``).
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx

from promptgen.errors import RemoteCallError
from promptgen.models import PromptRecord

logger = logging.getLogger(__name__)


class PromptRepository(Protocol):
    async def save(self, record: PromptRecord) -> PromptRecord: ...


class InMemoryPromptRepository:
    def __init__(self) -> None:
        self.records: list[PromptRecord] = []

    async def save(self, record: PromptRecord) -> PromptRecord:
        self.records.append(record)
        logger.info("Stored prompt record %r (%d total)", record.title, len(self.records))
        return record


class HttpPromptRepository:
    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = url
        self._http = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def save(self, record: PromptRecord) -> PromptRecord:
        try:
            response = await self._http.post(self._url, json=record.model_dump())
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise RemoteCallError(f"Prompt store returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise RemoteCallError(f"Prompt store request failed: {e}") from e
        logger.info("Saved prompt record %r to %s", record.title, self._url)
        return record
