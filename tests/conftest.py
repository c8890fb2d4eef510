from typing import Optional

import httpx
import pytest

from registry_redirect import create_app
from registry_redirect.settings import Settings

from .fakes import FakeRegistry

CLIENT_BASE_URL = "http://registry.example.dev"


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def make_client(registry):
    """Return a factory building an in-process client against an app wired to `registry`."""

    def _make(settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
        app = create_app(settings, transport=transport or httpx.MockTransport(registry))
        return httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app),
            base_url=CLIENT_BASE_URL,
        )

    return _make
