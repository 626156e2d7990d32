"""Shared unit-test fixtures."""

from __future__ import annotations

import pytest

from fakes import InMemoryProblemStore, build_candidate


@pytest.fixture
def store() -> InMemoryProblemStore:
    return InMemoryProblemStore()


@pytest.fixture
def make_candidate():
    return build_candidate
