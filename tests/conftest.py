"""
Shared fixtures: a manual clock, a recording notifier and a wired context.
"""

from typing import Any, Dict, Optional

import pytest

from ai_route_guard.config.loader import parse_config
from ai_route_guard.core.context import build_context
from ai_route_guard.core.scheduling import ManualClock

from .helpers import BackendFarm, RecordingNotifier, router_config_data


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def farm():
    return BackendFarm()


@pytest.fixture
def make_context(clock, notifier, farm):
    """Build an in-memory context; all backends probed healthy."""
    contexts = []

    def _make(config_data: Optional[Dict[str, Any]] = None, probe: bool = True):
        config = parse_config(config_data or router_config_data())
        context = build_context(config, backend_factory=farm, clock=clock, notifier=notifier, persistent=False)
        if probe:
            context.registry.probe_all()
            farm.reset_calls()
        contexts.append(context)
        return context

    yield _make
    for context in contexts:
        context.close()
