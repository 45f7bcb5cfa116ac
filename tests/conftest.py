"""Shared pytest configuration and fixtures for the test suite.

This module centralizes:
- Path setup (keeps ``harvester``, ``scripts`` and ``tests.helpers`` importable)
- Pytest markers for test categorization (unit, integration, property, selenium)
- Store fixtures (file-backed SQLite and the in-memory recording double)
- Collector fixtures for runner tests
"""
from __future__ import annotations

import sys
from datetime import datetime
from pathlib import Path

import pytest
from sqlalchemy import create_engine


# ==============================================================================
# Path Setup
# ==============================================================================

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from harvester.collect.session import CollectorSession  # noqa: E402
from harvester.data.store import HarvestStore  # noqa: E402
from tests.helpers.recording_store import RecordingStore  # noqa: E402
from tests.helpers.scripted_collector import ScriptedCollector  # noqa: E402


# ==============================================================================
# Pytest Configuration
# ==============================================================================

def pytest_configure(config):
    """Register custom markers for test categorization."""
    config.addinivalue_line(
        "markers",
        "unit: Fast tests with no I/O (mocked dependencies)",
    )
    config.addinivalue_line(
        "markers",
        "integration: Tests hitting SQLite or the file system",
    )
    config.addinivalue_line(
        "markers",
        "property: Hypothesis property-based tests",
    )
    config.addinivalue_line(
        "markers",
        "selenium: Browser collector tests (run against a mocked driver)",
    )


# ==============================================================================
# Store Fixtures
# ==============================================================================

@pytest.fixture
def harvest_store(tmp_path: Path) -> HarvestStore:
    """File-backed SQLite store, fresh per test."""
    engine = create_engine(f"sqlite:///{tmp_path / 'harvest.db'}")
    return HarvestStore(engine)


@pytest.fixture
def recording_store() -> RecordingStore:
    """In-memory store double recording every call.

    Example:
        def test_something(recording_store):
            recording_store.add_task("alice", "posts")
            recording_store.fail_on("upsert_posts", StoreUnavailable("upsert_posts", "down"))
    """
    return RecordingStore()


# ==============================================================================
# Collector Fixtures
# ==============================================================================

@pytest.fixture
def scripted_collector() -> ScriptedCollector:
    return ScriptedCollector()


@pytest.fixture
def collector_session(scripted_collector: ScriptedCollector) -> CollectorSession:
    return CollectorSession(scripted_collector)


@pytest.fixture
def fixed_now() -> datetime:
    """Naive UTC noon-ish: 04:00 UTC is 12:00 in the default UTC+8 window."""
    return datetime(2025, 1, 15, 4, 0, 0)
