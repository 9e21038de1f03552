"""Environment and configuration helpers for testing."""

import os
from collections.abc import Generator
from unittest.mock import patch

import pytest


@pytest.fixture
def mock_env_vars() -> Generator[None, None, None]:
    """Mock environment variables for OpenAI and the engine limits."""
    with patch.dict(
        os.environ,
        {
            "OPENAI_API_KEY": "sk-test1234567890abcdef",
            "OPENAI_MODEL": "gpt-4o-mini",
            "SHEET_AGENT_MAX_TOOL_CALLS": "7",
            "SHEET_AGENT_VERIFY_WRITES": "false",
        },
    ):
        yield


@pytest.fixture
def empty_env() -> Generator[None, None, None]:
    """Empty environment variables."""
    with patch.dict(os.environ, {}, clear=True):
        yield


@pytest.fixture
def openai_api_key() -> str:
    """Test OpenAI API key."""
    return "test-key"
