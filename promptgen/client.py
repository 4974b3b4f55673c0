"""Remote stage client — HTTP calls to the prompt generation service.

Every JSON endpoint answers with a ``{code, message, data}`` envelope; only
``code == 200`` counts as success. The streaming endpoint answers with
newline-delimited JSON frames, which this client passes through as raw text
chunks for ``promptgen.ndjson`` to reassemble.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional, Protocol

import httpx

from promptgen.errors import RemoteCallError
from promptgen.models import SUCCESS_CODE

logger = logging.getLogger(__name__)

THINKING_POINTS_PATH = "/prompt/generate/thinking-points"
SYSTEM_PROMPT_PATH = "/prompt/generate/system-prompt"
OPTIMIZATION_ADVICE_PATH = "/prompt/generate/optimization-advice"
APPLY_OPTIMIZATION_PATH = "/prompt/generate/apply-optimization"
STREAM_PATH = "/prompt/generate/complete/stream"

PROMPT_TYPE = "system"


class StageClient(Protocol):
    """What the orchestrator needs from the generation service."""

    async def thinking_points(self, description: str, language: str) -> list[str]: ...

    async def system_prompt(
        self, description: str, language: str, thinking_points: list[str]
    ) -> str: ...

    async def optimization_advice(self, prompt_to_analyze: str, language: str) -> list[str]: ...

    async def apply_optimization(
        self, original_prompt: str, advice: list[str], language: str
    ) -> str: ...

    def stream_generate(self, input_prompt: str) -> AsyncIterator[str]: ...


class RemoteStageClient:
    """httpx-backed implementation of ``StageClient``."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 120.0,
        model: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._model = model
        self._http = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._http.aclose()

    def _payload(self, language: str, **fields: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {**fields, "language": language, "variables": []}
        if self._model:
            payload["model"] = self._model
        return payload

    async def _post(self, path: str, payload: dict[str, Any]) -> Any:
        logger.debug("POST %s", path)
        try:
            response = await self._http.post(path, json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            raise RemoteCallError(f"{path} returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise RemoteCallError(f"{path} request failed: {e}") from e
        except ValueError as e:
            raise RemoteCallError(f"{path} returned a malformed body") from e
        return _unwrap(path, body)

    async def thinking_points(self, description: str, language: str) -> list[str]:
        data = await self._post(THINKING_POINTS_PATH, self._payload(language, description=description))
        return _as_list(THINKING_POINTS_PATH, data)

    async def system_prompt(
        self, description: str, language: str, thinking_points: list[str]
    ) -> str:
        data = await self._post(
            SYSTEM_PROMPT_PATH,
            self._payload(language, description=description, thinkingPoints=list(thinking_points)),
        )
        return _as_text(SYSTEM_PROMPT_PATH, data)

    async def optimization_advice(self, prompt_to_analyze: str, language: str) -> list[str]:
        data = await self._post(
            OPTIMIZATION_ADVICE_PATH,
            self._payload(language, promptToAnalyze=prompt_to_analyze, promptType=PROMPT_TYPE),
        )
        return _as_list(OPTIMIZATION_ADVICE_PATH, data)

    async def apply_optimization(
        self, original_prompt: str, advice: list[str], language: str
    ) -> str:
        data = await self._post(
            APPLY_OPTIMIZATION_PATH,
            self._payload(
                language,
                originalPrompt=original_prompt,
                advice=list(advice),
                promptType=PROMPT_TYPE,
            ),
        )
        return _as_text(APPLY_OPTIMIZATION_PATH, data)

    async def stream_generate(self, input_prompt: str) -> AsyncIterator[str]:
        """Yield raw text chunks of the NDJSON stream as they arrive."""
        try:
            async with self._http.stream(
                "POST", STREAM_PATH, json={"inputPrompt": input_prompt}
            ) as response:
                if response.is_error:
                    await response.aread()
                    raise RemoteCallError(f"{STREAM_PATH} returned HTTP {response.status_code}")
                async for chunk in response.aiter_text():
                    yield chunk
        except httpx.HTTPError as e:
            raise RemoteCallError(f"{STREAM_PATH} stream failed: {e}") from e


def _unwrap(path: str, body: Any) -> Any:
    if isinstance(body, dict) and "code" in body:
        if body["code"] != SUCCESS_CODE:
            message = body.get("message") or f"status {body['code']}"
            raise RemoteCallError(f"{path} failed: {message}")
        return body.get("data")
    return body


def _as_list(path: str, data: Any) -> list[str]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise RemoteCallError(f"{path} returned {type(data).__name__}, expected a list")
    return [str(item) for item in data]


def _as_text(path: str, data: Any) -> str:
    if data is None:
        return ""
    if not isinstance(data, str):
        raise RemoteCallError(f"{path} returned {type(data).__name__}, expected a string")
    return data
