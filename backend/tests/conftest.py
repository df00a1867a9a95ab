"""Shared pytest fixtures for the Plugin Runtime Engine test suite.

Provides:
- A fake HTTP API served through httpx.MockTransport (no network)
- An injectable clock for cache expiry
- In-memory store, registry, dashboard sync, executor and scheduler
- Template documents (chain and api_json) and a plugin directory on disk
- FastAPI test client (httpx.AsyncClient over ASGITransport)
"""

import asyncio
import copy
import json
import os
from typing import AsyncGenerator, Dict, List, Optional, Tuple, Union

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Override settings BEFORE any app imports
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")

from plugins.dashboard import DashboardSync  # noqa: E402
from plugins.executor import PluginExecutor  # noqa: E402
from plugins.models import PluginTemplate  # noqa: E402
from plugins.registry import ValueRegistry  # noqa: E402
from plugins.scheduler import PluginScheduler  # noqa: E402
from plugins.store import ConfigStore  # noqa: E402


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


Body = Union[str, bytes, Exception]


class FakeApi:
    """URL -> canned response map, recording every request it serves.

    Set ``gate`` to an unset asyncio.Event to hold responses until it is set.
    """

    def __init__(self):
        self.responses: Dict[str, Tuple[int, Body]] = {}
        self.requests: List[httpx.Request] = []
        self.gate: Optional[asyncio.Event] = None

    def add(self, url: str, body: Body, status: int = 200) -> None:
        self.responses[url] = (status, body)

    def add_json(self, url: str, document: dict, status: int = 200) -> None:
        self.add(url, json.dumps(document), status)

    def calls(self, url: str) -> int:
        return sum(1 for r in self.requests if str(r.url) == url)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()

        status, body = self.responses.get(str(request.url), (404, "not found"))
        if isinstance(body, Exception):
            raise body
        if isinstance(body, bytes):
            return httpx.Response(status, content=body)
        return httpx.Response(status, text=body)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Yield to the loop until ``predicate()`` holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def waiter():
    return wait_until


# ---------------------------------------------------------------------------
# Template documents
# ---------------------------------------------------------------------------

CHAIN_TEMPLATE = {
    "id": "weather",
    "meta": {"name": "Weather", "version": "1.2.0", "author": "tests"},
    "inputs": [
        {"key": "city", "label": "City", "default": "Berlin", "scope": "target"},
        {"key": "units", "label": "Units", "default": "metric"},
    ],
    "execution": {
        "type": "chain",
        "interval": 600000,
        "steps": [
            {
                "id": "geo",
                "url": "https://api.test/geo?q={{city}}",
                "extract": {"lat": "results[0].lat", "name": "results[0].name"},
                "cache_minutes": -1,
            },
            {
                "id": "now",
                "url": "https://api.test/now?lat={{lat}}&units={{units}}",
                "extract": {"temp": "current.temp"},
            },
        ],
    },
    "outputs": [
        {
            "key": "temp",
            "label": "{{name ?? city}} Temp",
            "short_label": "T",
            "format": "{{temp}}",
            "unit": "°C",
        }
    ],
}

JSON_TEMPLATE = {
    "id": "btc",
    "meta": {"name": "Bitcoin"},
    "execution": {
        "type": "api_json",
        "url": "https://api.test/price",
        "interval": 30000,
        "extract": {"price": "data.price", "change": "data.change"},
        "process": [
            {"var": "trend", "source": "change", "function": "threshold_switch",
             "value_map": {"-1000": "down", "0": "up"}}
        ],
    },
    "outputs": [
        {"key": "price", "label": "BTC", "format": "{{price}}", "unit": "USD",
         "color": "{{trend}}"},
    ],
}


@pytest.fixture
def chain_template_data() -> dict:
    return copy.deepcopy(CHAIN_TEMPLATE)


@pytest.fixture
def json_template_data() -> dict:
    return copy.deepcopy(JSON_TEMPLATE)


@pytest.fixture
def chain_template(chain_template_data) -> PluginTemplate:
    return PluginTemplate.model_validate(chain_template_data)


@pytest.fixture
def json_template(json_template_data) -> PluginTemplate:
    return PluginTemplate.model_validate(json_template_data)


@pytest.fixture
def plugin_dir(tmp_path, chain_template_data, json_template_data):
    """A template directory holding the chain and api_json documents."""
    directory = tmp_path / "plugin_templates"
    directory.mkdir()
    (directory / "weather.json").write_text(json.dumps(chain_template_data), encoding="utf-8")
    (directory / "btc.json").write_text(json.dumps(json_template_data), encoding="utf-8")
    return directory


# ---------------------------------------------------------------------------
# Runtime fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_api() -> FakeApi:
    api = FakeApi()
    api.add_json("https://api.test/geo?q=Berlin", {"results": [{"lat": 52.52, "name": "Berlin Mitte"}]})
    api.add_json("https://api.test/geo?q=Paris", {"results": [{"lat": 48.85, "name": "Paris"}]})
    api.add_json("https://api.test/geo?q=Rome", {"results": [{"lat": 41.89, "name": "Roma"}]})
    api.add_json("https://api.test/now?lat=52.52&units=metric", {"current": {"temp": 21.5}})
    api.add_json("https://api.test/now?lat=48.85&units=metric", {"current": {"temp": 18.0}})
    api.add_json("https://api.test/now?lat=41.89&units=metric", {"current": {"temp": 25.25}})
    api.add_json("https://api.test/price", {"data": {"price": 64123.50, "change": -2.5}})
    return api


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> ConfigStore:
    """In-memory configuration store (save is a no-op)."""
    return ConfigStore()


@pytest.fixture
def registry() -> ValueRegistry:
    return ValueRegistry()


@pytest.fixture
def dashboard(store, registry) -> DashboardSync:
    return DashboardSync(store, registry)


@pytest_asyncio.fixture
async def http_client(fake_api) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_api.handler)) as client:
        yield client


@pytest_asyncio.fixture
async def executor(registry, dashboard, http_client, clock) -> PluginExecutor:
    return PluginExecutor(
        registry,
        dashboard,
        client=http_client,
        user_agent="PluginRuntime/test",
        target_stagger=0,
        clock=clock,
    )


@pytest_asyncio.fixture
async def scheduler(store, executor, dashboard) -> AsyncGenerator[PluginScheduler, None]:
    sched = PluginScheduler(store, executor, dashboard, min_interval_ms=1000)
    yield sched
    await sched.shutdown()


# ---------------------------------------------------------------------------
# App / HTTP client fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def app(scheduler, store, registry, dashboard, plugin_dir):
    """FastAPI app with runtime state wired in (the lifespan is not run)."""
    from app.main import create_app

    scheduler.load_templates(plugin_dir)

    test_app = create_app()
    test_app.state.store = store
    test_app.state.registry = registry
    test_app.state.dashboard = dashboard
    test_app.state.scheduler = scheduler
    yield test_app


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", follow_redirects=True) as ac:
        yield ac
