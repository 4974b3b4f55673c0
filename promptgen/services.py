"""Shared services for the application.

Switches between InMemory (development) and HTTP (production) prompt
repositories based on the ENVIRONMENT env var.
"""

import os

from dotenv import load_dotenv

from promptgen.client import RemoteStageClient
from promptgen.orchestrator import PipelineOrchestrator

load_dotenv()

ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower()

GENERATION_API_BASE_URL = os.getenv("GENERATION_API_BASE_URL", "http://localhost:8080/api")
GENERATION_API_TIMEOUT = float(os.getenv("GENERATION_API_TIMEOUT", "120"))
GENERATION_MODEL = os.getenv("GENERATION_MODEL") or None

stage_client = RemoteStageClient(
    base_url=GENERATION_API_BASE_URL,
    timeout=GENERATION_API_TIMEOUT,
    model=GENERATION_MODEL,
)

if ENVIRONMENT == "production":
    from promptgen.repository import HttpPromptRepository

    prompt_repository = HttpPromptRepository(url=os.environ["PROMPT_STORE_URL"])
else:
    from promptgen.repository import InMemoryPromptRepository

    prompt_repository = InMemoryPromptRepository()

orchestrator = PipelineOrchestrator(stage_client, prompt_repository)
