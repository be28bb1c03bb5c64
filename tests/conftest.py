"""
Pytest configuration and shared fixtures.

This module provides:
- An in-memory event store for unit tests
"""

from __future__ import annotations

import pytest

from src.storage.memory_store import InMemoryEventStore


@pytest.fixture
def memory_store() -> InMemoryEventStore:
    return InMemoryEventStore()
