"""
Shared fakes and fixtures for pipeline tests.
"""

import asyncio
from typing import Dict, List, Optional, Union

import pytest

from app.ai_service import CompletionService
from pipeline.extractor import SchemaExtractor
from pipeline.lifecycle import JobLifecycleManager
from pipeline.store import InMemoryJobStore
from pipeline.telemetry import TelemetryChannel


class FakeCompletionService(CompletionService):
    """Returns queued responses in order; exceptions in the queue are raised."""

    engine = "fake"
    model = "fake-model"

    def __init__(self, responses: Optional[List[Union[str, BaseException]]] = None, default: str = "{}"):
        self.responses = list(responses or [])
        self.default = default
        self.prompts: List[str] = []
        self.system_prompts: List[Optional[str]] = []

    async def complete(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        self.prompts.append(prompt)
        self.system_prompts.append(system_prompt)
        response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, BaseException):
            raise response
        return response


class FakeFetcher:
    """Maps URL -> page body; exceptions are raised, a float delays (seconds) before answering."""

    def __init__(self, pages: Optional[Dict[str, Union[str, BaseException]]] = None,
                 default: str = "<html><body><h1>Hello</h1></body></html>", delay: float = 0.0):
        self.pages = dict(pages or {})
        self.default = default
        self.delay = delay
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch_text(self, url: str, headers=None) -> str:
        self.calls.append(url)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            page = self.pages.get(url, self.default)
            if isinstance(page, BaseException):
                raise page
            return page
        finally:
            self.in_flight -= 1


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def telemetry(store):
    return TelemetryChannel(store)


@pytest.fixture
def completion():
    return FakeCompletionService(default='{"title": "Hello", "price": 10}')


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def manager(store, fetcher, completion, telemetry):
    return JobLifecycleManager(
        store=store,
        fetcher=fetcher,
        extractor=SchemaExtractor(completion),
        telemetry=telemetry,
    )


@pytest.fixture
def schema():
    return {"title": "string", "price": "number"}


def build_manager(store, telemetry, fetcher=None, completion=None, **kwargs) -> JobLifecycleManager:
    return JobLifecycleManager(
        store=store,
        fetcher=fetcher or FakeFetcher(),
        extractor=SchemaExtractor(completion or FakeCompletionService(default='{"title": "T", "price": 1}')),
        telemetry=telemetry,
        **kwargs,
    )
