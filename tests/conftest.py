"""
Pytest configuration and fixtures for Act! billing sync tests.
"""

import re
import threading
import time
from datetime import datetime, timezone

import httpx
import pytest

from act_billing_sync.client import ActClient
from act_billing_sync.config import SyncSettings
from act_billing_sync.orchestrator import SyncOrchestrator
from act_billing_sync.store import SyncStore

BASE_URL = "https://act.test/act.web.api"
PRODUCTS_PATH = re.compile(r"^/api/opportunities/([^/]+)/products(?:/([^/]+))?$")


class FakeClock:
    """Manually advanced clock; sleep() moves time forward instead of blocking."""

    def __init__(self, start: datetime):
        self.now = start.timestamp()
        self.sleeps: list[float] = []

    def time(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(0.0, seconds)

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def datetime(self) -> datetime:
        return datetime.fromtimestamp(self.now, tz=timezone.utc)


class FakeActServer:
    """
    In-process stand-in for the Act! Web API, served through httpx.MockTransport.

    Tokens are issued as token-1, token-2, ... Tokens listed in
    `rejected_tokens` get 401 on data endpoints. `failures` maps a path to
    the status code it should return. `latency` holds each request open
    (outside the lock) so concurrent callers overlap; `max_in_flight`
    records the most requests seen at once.
    """

    def __init__(self):
        self.opportunities: list[dict] = []
        self.tasks: list[dict] = []
        self.products: dict[str, list[dict]] = {}

        self.auth_status = 200
        self.bad_databases: set[str] = set()
        self.auth_calls = 0
        self.rejected_tokens: set[str] = set()
        self.reject_all = False
        self.failures: dict[str, int] = {}
        self.transport_errors: dict[str, int] = {}

        self.latency = 0.0
        self.in_flight = 0
        self.max_in_flight = 0

        self.requests: list[httpx.Request] = []
        self.puts: list[dict] = []
        self._lock = threading.Lock()

    def handler(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.latency:
                time.sleep(self.latency)
            with self._lock:
                return self._respond(request)
        finally:
            with self._lock:
                self.in_flight -= 1

    def _respond(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/act.web.api")

        if path == "/authorize":
            self.auth_calls += 1
            if request.headers.get("Act-Database-Name") in self.bad_databases:
                return httpx.Response(401, text="Invalid credentials")
            if self.auth_status != 200:
                return httpx.Response(self.auth_status, text="Invalid credentials")
            return httpx.Response(200, json=f"token-{self.auth_calls}")

        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if self.reject_all or token in self.rejected_tokens:
            return httpx.Response(401, text="Unauthorized")

        if self.transport_errors.get(path, 0) > 0:
            self.transport_errors[path] -= 1
            raise httpx.ConnectError("connection reset", request=request)

        if path in self.failures:
            return httpx.Response(self.failures[path], text="Something went wrong")

        if path == "/api/opportunities":
            return httpx.Response(200, json=self.opportunities)
        if path == "/api/tasks":
            return httpx.Response(200, json=self.tasks)

        match = PRODUCTS_PATH.match(path)
        if match and request.method == "PUT":
            self.puts.append({"path": path, "body": request.content.decode()})
            return httpx.Response(200, json={"id": match.group(2)})
        if match:
            return httpx.Response(200, json=self.products.get(match.group(1), []))

        return httpx.Response(404, text="Not found")

    def data_requests(self, path: str | None = None) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if not r.url.path.endswith("/authorize")
            and (path is None or r.url.path.endswith(path))
        ]


@pytest.fixture
def clock():
    """Clock fixed at 2025-06-15 12:00 UTC."""
    return FakeClock(datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def epoch_clock():
    """Clock at the epoch so small interval arithmetic stays exact."""
    return FakeClock(datetime(1970, 1, 1, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    """Settings with all pacing delays removed."""
    return SyncSettings(
        default_api_base_url=BASE_URL,
        min_request_interval_seconds=0.0,
        inter_tenant_delay_seconds=0.0,
        product_settle_seconds=0.0,
        product_fetch_batch_delay_seconds=0.0,
        record_batch_delay_seconds=0.0,
        product_fetch_concurrency=2,
    )


@pytest.fixture
def store(clock):
    """In-memory store with tables created."""
    store = SyncStore.from_url("sqlite://", clock=clock.datetime)
    store.create_all()
    return store


@pytest.fixture
def act_server():
    return FakeActServer()


@pytest.fixture
def http_client(act_server):
    with httpx.Client(transport=httpx.MockTransport(act_server.handler)) as client:
        yield client


@pytest.fixture
def client(store, settings, http_client, clock):
    return ActClient(store, settings, http_client=http_client, clock=clock.time, sleep=clock.sleep)


@pytest.fixture
def orchestrator(store, client, settings, clock):
    return SyncOrchestrator(store, client, settings, clock=clock.datetime, sleep=clock.sleep)


@pytest.fixture
def connection(store):
    """Active connection for tenant-1."""
    return store.add_connection(
        "tenant-1",
        username="api-user",
        password_encrypted="s3cret",
        database_name="ACME",
        connection_name="Acme Law",
        api_base_url=BASE_URL,
    )


@pytest.fixture
def sample_opportunity_data():
    """Sample opportunity from the Act! API."""
    return {
        "id": "opp-1",
        "name": "Acme Retainer 2025",
        "contactNames": "Jane Doe",
        "productTotal": 30000,
        "weightedValue": 27000,
        "probability": 90,
        "stage": {"id": "s1", "name": "Active"},
        "actualCloseDate": None,
        "contacts": [
            {
                "id": "c-1",
                "displayName": "Jane Doe",
                "emailAddress": "jane@acme.test",
                "company": "Acme Corp",
            }
        ],
        "companies": [{"id": "co-1", "name": "Acme Corp"}],
        "customFields": {
            "opportunity_field_2": "2500",
            "opportunity_field_3": "2025-01-01T00:00:00",
            "opportunity_field_4": "2025-12-31T00:00:00",
        },
    }


@pytest.fixture
def sample_product_data():
    """Sample product attached to opp-1."""
    return {
        "id": "prod-1",
        "name": "Monthly Retainer",
        "price": 2500,
        "quantity": 1,
        "total": 2500,
        "itemNumber": "07/01/2025",
        "opportunityID": "opp-1",
        "productID": "p-100",
        "type": "Service",
    }


@pytest.fixture
def sample_task_data():
    """Sample billable task linked to opp-1."""
    return {
        "id": "task-1",
        "subject": "Project work - fee $1,200.50",
        "details": "Draft the services agreement",
        "activityTypeId": 5,
        "activityTypeName": "Project Work",
        "activityPriorityName": "High",
        "startTime": "2025-06-20T09:00:00Z",
        "endTime": "2025-06-20T17:00:00Z",
        "isCleared": False,
        "isAlarmed": True,
        "seriesID": None,
        "opportunities": [{"id": "opp-1", "name": "Acme Retainer 2025"}],
        "companies": [{"id": "co-1", "name": "Acme Corp"}],
        "contacts": [],
    }


@pytest.fixture
def seeded_server(act_server, sample_opportunity_data, sample_product_data, sample_task_data):
    """Act! server holding one opportunity with one product and one task."""
    act_server.opportunities = [sample_opportunity_data]
    act_server.products = {"opp-1": [sample_product_data]}
    act_server.tasks = [sample_task_data]
    return act_server
