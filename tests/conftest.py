"""
Pytest configuration and fixtures for Bookstack tests.
"""
import os
import tempfile
from typing import Any, Callable, Dict, List, Optional, Union

import pytest
import pytest_asyncio

# Set test environment before importing app modules
os.environ["ENVIRONMENT"] = "test"
os.environ["REPOSITORY_BACKEND"] = "memory"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="bookstack-tests-")
os.environ["JOB_RUNNER"] = "inprocess"

from bookstack.adapters.base import EnrichmentProvider, ProviderQuery  # noqa: E402
from bookstack.core.config import Settings  # noqa: E402
from bookstack.jobs.runner import InProcessJobRunner  # noqa: E402
from bookstack.repositories.memory import InMemoryIntakeRepository  # noqa: E402
from bookstack.services.capacity_ledger import CapacityLedger  # noqa: E402
from bookstack.services.pipeline import build_pipeline  # noqa: E402

Outcome = Union[Dict[str, Any], BaseException, Callable[[ProviderQuery], Any]]


class FakeProvider(EnrichmentProvider):
    """
    Scripted provider: each call consumes the next outcome (the last one
    repeats). An outcome is a metadata dict, an exception to raise, or a
    callable taking the query.
    """

    def __init__(self, name: str, outcomes: List[Outcome]):
        self._name = name
        self.outcomes = list(outcomes)
        self.calls: List[ProviderQuery] = []

    @property
    def name(self) -> str:
        return self._name

    async def call(self, query: ProviderQuery) -> Dict[str, Any]:
        self.calls.append(query)
        index = min(len(self.calls), len(self.outcomes)) - 1
        outcome = self.outcomes[index]
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome(query)
        return dict(outcome)


async def no_sleep(delay: float) -> None:
    return None


def make_settings(**overrides) -> Settings:
    values = {
        "ENVIRONMENT": "test",
        "REPOSITORY_BACKEND": "memory",
        "JOB_RUNNER": "inprocess",
        "ENRICHMENT_BACKOFF_BASE_SECONDS": 0.0,
        "ENRICHMENT_TIMEOUT_SECONDS": 5.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def repository() -> InMemoryIntakeRepository:
    return InMemoryIntakeRepository()


@pytest.fixture
def ledger(repository) -> CapacityLedger:
    return CapacityLedger(repository, default_capacity=100)


@pytest.fixture
def catalog_provider() -> FakeProvider:
    """Echoes the caller's title/author with a fixed genre."""
    return FakeProvider("catalog", [
        lambda q: {"title": q.title or f"Book {q.isbn}", "author": q.author or "Unknown Author", "genre": None},
    ])


@pytest_asyncio.fixture
async def pipeline_factory(tmp_path):
    """Builds pipelines on the in-memory repository; closes them after the test."""
    built = []

    async def factory(
        providers: Optional[List[EnrichmentProvider]] = None,
        repository: Optional[InMemoryIntakeRepository] = None,
        **overrides,
    ):
        settings = make_settings(UPLOAD_DIR=str(tmp_path), **overrides)
        pipeline = await build_pipeline(
            settings,
            repository=repository or InMemoryIntakeRepository(),
            providers=providers if providers is not None else [],
            runner=InProcessJobRunner(),
        )
        built.append(pipeline)
        return pipeline

    yield factory

    for pipeline in built:
        await pipeline.close()
