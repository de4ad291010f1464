from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from design_helpers import WEBHOOK_SECRET, FakePlatformClient, StatusEvents
from design_orchestrator.app.settings import Settings
from design_orchestrator.main import create_app
from design_orchestrator.storage.memory import InMemoryDesignStorage


@pytest.fixture
def storage() -> InMemoryDesignStorage:
    return InMemoryDesignStorage()


@pytest.fixture
def platform() -> FakePlatformClient:
    return FakePlatformClient()


@pytest.fixture
def status_events() -> StatusEvents:
    return StatusEvents()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="",
        design_webhook_secret=WEBHOOK_SECRET,
        public_base_url="https://crm.example.test",
        dispatch_timeout_s=0.5,
        dispatch_max_workers=4,
    )


@pytest.fixture
def client(
    storage: InMemoryDesignStorage,
    platform: FakePlatformClient,
    settings: Settings,
    status_events: StatusEvents,
) -> Iterator[TestClient]:
    app = create_app(
        storage=storage,
        settings_override=settings,
        platform_client=platform,
        listeners=[status_events],
    )
    with TestClient(app) as test_client:
        yield test_client
