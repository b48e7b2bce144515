from __future__ import annotations

import pytest

from aigent.config import EngineSettings
from aigent.tools import ToolRegistry, resolve_tools
from tests.helpers import RecordingBroker


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(max_iterations=3, timeout_seconds=5)


@pytest.fixture
def tools() -> ToolRegistry:
    return ToolRegistry(resolve_tools(["calculate"]))


@pytest.fixture
def broker() -> RecordingBroker:
    return RecordingBroker()
