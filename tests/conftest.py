"""Pytest configuration and shared fixtures.

Automatically loads .env file for all tests. The in-memory fakes used by the
unit tests live in tests/fakes.py.
"""

import pytest

from src.common.config import KeywordDedupeSettings
from src.common.env import load_env
from tests.fakes import FakeEmbedder, make_settings

# Load .env file before any tests run
load_env()


@pytest.fixture
def settings() -> KeywordDedupeSettings:
    return make_settings()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()
