"""Error taxonomy for the prompt generation pipeline."""

from __future__ import annotations


class PromptPipelineError(Exception):
    """Base class for all pipeline errors."""


class InputError(PromptPipelineError):
    """Required input is missing or malformed. Raised before any remote call."""


class RunBusyError(InputError):
    """A stage call is already in flight for this run."""


class RemoteCallError(PromptPipelineError):
    """The remote generation service (or prompt store) call failed."""


class StreamStatusError(RemoteCallError):
    """A stream frame carried a non-success status code."""

    def __init__(self, code: int, message: str | None = None) -> None:
        self.code = code
        super().__init__(message or f"Stream failed with status {code}")


class FrameDecodeError(PromptPipelineError):
    """One NDJSON line could not be decoded into a frame."""

    def __init__(self, line: str, reason: str) -> None:
        self.line = line
        self.reason = reason
        super().__init__(f"Undecodable frame ({reason}): {line[:80]!r}")
