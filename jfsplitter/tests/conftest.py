from __future__ import annotations

from pathlib import Path

import pytest

from jfsplitter.core.config import Settings
from jfsplitter.services.telemetry import reset_telemetry
from jfsplitter.tests.utils.upstreams import PRIMARY_URL, SECONDARY_URL, FakeUpstreams


@pytest.fixture(autouse=True)
def reset_telemetry_between_tests() -> None:
    reset_telemetry()
    yield
    reset_telemetry()


@pytest.fixture
def upstreams() -> FakeUpstreams:
    return FakeUpstreams()


@pytest.fixture
def make_settings(tmp_path: Path):
    # Build isolated settings per test; no .env file and a tmp user map.
    def _make(**overrides) -> Settings:
        values = {
            "primary_url": PRIMARY_URL,
            "secondary_url": SECONDARY_URL,
            "primary_token": "primary-service-token",
            "secondary_token": "secondary-service-token",
            "usermap_path": str(tmp_path / "user-map.json"),
            "upstream_timeout_ms": 2000,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make
