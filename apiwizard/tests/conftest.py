"""Shared pytest fixtures for apiwizard tests."""
import copy

import pytest

from apiwizard.config.models import EndpointConfig
from apiwizard.gateway.main import _NullCache, _NullRateLimiter
from apiwizard.tests.factories import SCOREBOARD, mapping, mock_source


@pytest.fixture
def scoreboard():
    return copy.deepcopy(SCOREBOARD)


@pytest.fixture
def score_endpoint():
    return EndpointConfig(
        slug="scores",
        status="active",
        sources=[mock_source("s1", SCOREBOARD, name="Scoreboard")],
        field_mappings=[
            mapping("m1", "score", "s1", "events[*].competitions[0].competitors[0].score"),
        ],
    )


@pytest.fixture
def null_cache():
    return _NullCache()


@pytest.fixture
def null_rate_limiter():
    return _NullRateLimiter()
