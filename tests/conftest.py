"""Shared fixtures: fresh in-memory store and job queue per test."""

from __future__ import annotations

import pytest

from backend.app.dispatch.job_queue import InMemoryJobQueue
from backend.app.storage.memory import InMemoryStore

from fakes import FAST_POLICY


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def queue() -> InMemoryJobQueue:
    return InMemoryJobQueue(FAST_POLICY)
