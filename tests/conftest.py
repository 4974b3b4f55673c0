"""Shared pytest fixtures for all test layers."""

import os

# Force development mode for tests: must be set before promptgen.services is imported,
# otherwise load_dotenv() in services.py may read ENVIRONMENT=production from .env.
os.environ.setdefault("ENVIRONMENT", "development")

from unittest.mock import AsyncMock  # noqa: E402

import pytest  # noqa: E402

from promptgen.models import PipelineRun  # noqa: E402
from promptgen.orchestrator import PipelineOrchestrator  # noqa: E402
from promptgen.repository import InMemoryPromptRepository  # noqa: E402

THINKING_POINTS = ["Identify the sentiment of user text", "Explain the reasoning briefly"]
INITIAL_PROMPT = "You are a sentiment analysis assistant."
ADVICE = ["Specify the output format", "Add examples for mixed sentiment"]
FINAL_PROMPT = "You are a sentiment analysis assistant. Answer in JSON with label and reason."


class FakeStageClient:
    """In-process stand-in for RemoteStageClient."""

    def __init__(self) -> None:
        self.thinking_points = AsyncMock(return_value=list(THINKING_POINTS))
        self.system_prompt = AsyncMock(return_value=INITIAL_PROMPT)
        self.optimization_advice = AsyncMock(return_value=list(ADVICE))
        self.apply_optimization = AsyncMock(return_value=FINAL_PROMPT)
        self.stream_chunks: list = []
        self.stream_error: Exception | None = None
        self.stream_prompts: list[str] = []

    async def stream_generate(self, input_prompt: str):
        self.stream_prompts.append(input_prompt)
        for chunk in self.stream_chunks:
            yield chunk
        if self.stream_error is not None:
            raise self.stream_error


@pytest.fixture
def fake_client():
    return FakeStageClient()


@pytest.fixture
def repository():
    return InMemoryPromptRepository()


@pytest.fixture
def orchestrator(fake_client, repository):
    return PipelineOrchestrator(fake_client, repository)


@pytest.fixture
def run():
    return PipelineRun(description="写一个情感分析助手", language="zh")


@pytest.fixture
def completed_run():
    """A run with all four stages populated and completed."""
    run = PipelineRun(description="写一个情感分析助手", language="zh")
    run.stages[0].output = list(THINKING_POINTS)
    run.stages[1].output = INITIAL_PROMPT
    run.stages[2].output = list(ADVICE)
    run.stages[3].output = FINAL_PROMPT
    run.completed_stage_ids = {1, 2, 3, 4}
    return run
