"""
Pytest Configuration and Fixtures

This module provides shared fixtures and configuration for all tests.
"""

import json
import os
import sys
from pathlib import Path
from typing import List, Optional

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Set test environment
os.environ["APP_ENV"] = "test"
os.environ["AZURE_OPENAI_API_KEY"] = "test-key"
os.environ["AZURE_OPENAI_ENDPOINT"] = "https://test.openai.azure.com"
os.environ["AZURE_SPEECH_KEY"] = ""
os.environ["ROUTING_POLICY"] = "rules"
os.environ["SYNTHESIS_RETRY_DELAY"] = "0"
os.environ["RESPONDER_REGISTRY_PATH"] = str(project_root / "data" / "responders.json")

from tutor.core.registry import ResponderRegistry  # noqa: E402
from tests.fakes import FakeSynthesizer, ScriptedGeneration, ScriptedValidator  # noqa: E402


@pytest.fixture
def registry():
    """Responder registry shipped with the project."""
    return ResponderRegistry.load(project_root / "data" / "responders.json")


@pytest.fixture
def generation():
    """Generation provider replaying scripted answers."""
    return ScriptedGeneration()


@pytest.fixture
def synthesizer():
    """Synthesis provider returning the text as bytes."""
    return FakeSynthesizer()


@pytest.fixture
def validator():
    """Validator approving everything unless scripted otherwise."""
    return ScriptedValidator()


@pytest.fixture
def registry_file(tmp_path):
    """Write a small registry file and return its path."""
    def write(responders: List[dict], aliases: Optional[dict] = None) -> Path:
        path = tmp_path / "responders.json"
        path.write_text(json.dumps({"responders": responders, "aliases": aliases or {}}))
        return path
    return write
